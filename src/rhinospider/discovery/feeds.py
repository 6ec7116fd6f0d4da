from __future__ import annotations

import logging

import feedparser

from ..fetch import Fetcher, TransportError, fetch_url
from ..models import UrlCandidate
from ..utils import log_event

FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/xml, text/xml"


def looks_like_feed(body: str) -> bool:
    lowered = body.lower()
    return "<rss" in lowered or "<feed" in lowered


def parse_feed_links(body: bytes | str) -> list[UrlCandidate]:
    parsed = feedparser.parse(body)
    candidates: list[UrlCandidate] = []
    for entry in parsed.entries:
        link = entry.get("link")
        if not link:
            for item in entry.get("links") or []:
                if item.get("rel", "alternate") == "alternate" and item.get("href"):
                    link = item["href"]
                    break
        if not link:
            continue
        candidates.append(
            UrlCandidate(
                url=link.strip(),
                title=(entry.get("title") or "").strip() or None,
                description=(entry.get("summary") or "").strip() or None,
            )
        )
    return candidates


def discover_from_feeds(
    domains: list[str],
    *,
    paths: list[str],
    user_agent: str,
    timeout_seconds: int = 10,
    max_retries: int = 1,
    fetch: Fetcher = fetch_url,
    logger: logging.Logger | None = None,
) -> list[UrlCandidate]:
    logger = logger or logging.getLogger("rhinospider.discovery.feeds")
    headers = {"User-Agent": user_agent, "Accept": FEED_ACCEPT}
    for domain in domains:
        for path in paths:
            feed_url = f"https://{domain}{path}"
            try:
                response = fetch(
                    feed_url,
                    headers=headers,
                    timeout=timeout_seconds,
                    max_retries=max_retries,
                )
            except TransportError as exc:
                log_event(logger, logging.DEBUG, "feed_fetch_failed", url=feed_url, error=str(exc))
                continue
            if not response.ok:
                continue
            body = response.text()
            if not looks_like_feed(body):
                continue
            candidates = parse_feed_links(response.body)
            if candidates:
                log_event(
                    logger,
                    logging.INFO,
                    "feed_found",
                    url=feed_url,
                    items=len(candidates),
                )
                return candidates
    return []
