from __future__ import annotations

import logging

from bs4 import BeautifulSoup

from ..fetch import Fetcher, FetchResponse, TransportError, fetch_url
from ..models import UrlCandidate
from ..utils import log_event

SITEMAP_ACCEPT = "application/xml, text/xml"


def _get(fetch: Fetcher, url: str, headers: dict[str, str], timeout: int) -> FetchResponse | None:
    try:
        response = fetch(url, headers=headers, timeout=timeout, max_retries=0)
    except TransportError:
        return None
    if not response.ok:
        return None
    return response


def parse_sitemap(body: str) -> tuple[list[str], list[str]]:
    """Return ``(child_sitemaps, page_urls)`` for a sitemap or sitemap index body."""
    soup = BeautifulSoup(body, "html.parser")
    children = []
    for node in soup.find_all("sitemap"):
        loc = node.find("loc")
        if loc and loc.get_text(strip=True):
            children.append(loc.get_text(strip=True))
    pages = []
    for node in soup.find_all("url"):
        loc = node.find("loc")
        if loc and loc.get_text(strip=True):
            pages.append(loc.get_text(strip=True))
    return children, pages


def discover_from_sitemaps(
    domains: list[str],
    *,
    paths: list[str],
    user_agent: str,
    timeout_seconds: int = 10,
    max_urls: int = 20,
    fetch: Fetcher = fetch_url,
    logger: logging.Logger | None = None,
) -> list[UrlCandidate]:
    logger = logger or logging.getLogger("rhinospider.discovery.sitemaps")
    headers = {"User-Agent": user_agent, "Accept": SITEMAP_ACCEPT}
    for domain in domains:
        for path in paths:
            sitemap_url = f"https://{domain}{path}"
            response = _get(fetch, sitemap_url, headers, timeout_seconds)
            if response is None:
                continue
            body = response.text()
            lowered = body.lower()
            if "<urlset" not in lowered and "<sitemapindex" not in lowered:
                continue
            children, pages = parse_sitemap(body)
            if "<sitemapindex" in lowered and children:
                child = _get(fetch, children[0], headers, timeout_seconds)
                if child is None:
                    continue
                _, pages = parse_sitemap(child.text())
                log_event(
                    logger,
                    logging.DEBUG,
                    "sitemap_index_followed",
                    index=sitemap_url,
                    child=children[0],
                )
            if pages:
                log_event(logger, logging.INFO, "sitemap_found", url=sitemap_url, urls=len(pages))
                return [UrlCandidate(url=url) for url in pages[:max_urls]]
    return []
