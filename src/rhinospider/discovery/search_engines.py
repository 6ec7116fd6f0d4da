from __future__ import annotations

import logging
from urllib.parse import parse_qs, quote_plus, urljoin, urlsplit

from bs4 import BeautifulSoup

from ..fetch import Fetcher, RateLimitedError, TransportError, fetch_url, parse_retry_after
from ..models import Topic, UrlCandidate
from ..utils import log_event
from .patterns import is_search_engine_url, matches_any, topic_domains

DUCKDUCKGO_URL = "https://html.duckduckgo.com/html/?q="
GOOGLE_URL = "https://www.google.com/search?num=20&q="


class SearchEngineError(RuntimeError):
    pass


def build_query(topic: Topic, max_keywords: int = 3) -> str:
    parts = [topic.name]
    domains = topic_domains(topic, limit=3)
    if domains:
        parts.append("(" + " OR ".join(f"site:{domain}" for domain in domains) + ")")
    parts.extend(keyword for keyword in topic.keywords[:max_keywords] if keyword)
    return " ".join(part for part in parts if part).strip()


def _decode_duckduckgo_href(href: str) -> str | None:
    if href.startswith("//"):
        href = "https:" + href
    split = urlsplit(href)
    if split.path.startswith("/l/"):
        target = parse_qs(split.query).get("uddg")
        return target[0] if target else None
    if split.scheme in ("http", "https"):
        return href
    return None


def _decode_google_href(href: str) -> str | None:
    if href.startswith("/url?"):
        target = parse_qs(urlsplit(href).query).get("q")
        return target[0] if target else None
    if href.startswith(("http://", "https://")):
        return href
    return None


def parse_duckduckgo_results(html: str) -> list[UrlCandidate]:
    soup = BeautifulSoup(html, "html.parser")
    anchors = soup.select(".result .result__a") or soup.select("a.result__a")
    results = []
    for anchor in anchors:
        url = _decode_duckduckgo_href(anchor.get("href") or "")
        if not url:
            continue
        snippet = None
        container = anchor.find_parent(class_="result")
        if container is not None:
            node = container.select_one(".result__snippet")
            if node is not None:
                snippet = node.get_text(" ", strip=True)
        results.append(
            UrlCandidate(url=url, title=anchor.get_text(" ", strip=True) or None, description=snippet)
        )
    return results


def parse_google_results(html: str) -> list[UrlCandidate]:
    soup = BeautifulSoup(html, "html.parser")
    results = []
    for anchor in soup.find_all("a", href=True):
        url = _decode_google_href(anchor["href"])
        if not url:
            continue
        heading = anchor.find("h3")
        title = heading.get_text(" ", strip=True) if heading else anchor.get_text(" ", strip=True)
        results.append(UrlCandidate(url=url, title=title or None))
    return results


def parse_anchor_links(html: str, base_url: str) -> list[UrlCandidate]:
    soup = BeautifulSoup(html, "html.parser")
    results = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("#", "javascript:", "mailto:")):
            continue
        results.append(
            UrlCandidate(url=urljoin(base_url, href), title=anchor.get_text(" ", strip=True) or None)
        )
    return results


_ENGINES = {
    "duckduckgo": (DUCKDUCKGO_URL, parse_duckduckgo_results),
    "google": (GOOGLE_URL, parse_google_results),
}


def search_engine_urls(
    engine: str,
    topic: Topic,
    *,
    user_agent: str,
    timeout_seconds: int = 15,
    fetch: Fetcher = fetch_url,
    logger: logging.Logger | None = None,
) -> list[UrlCandidate]:
    logger = logger or logging.getLogger("rhinospider.discovery.search_engines")
    if engine not in _ENGINES:
        raise SearchEngineError(f"unsupported search engine {engine}")
    base, parser = _ENGINES[engine]
    query = build_query(topic)
    if not query:
        return []
    request_url = base + quote_plus(query)
    headers = {
        "User-Agent": user_agent,
        "Accept": "text/html,application/xhtml+xml",
        "Accept-Language": "en-US,en;q=0.9",
    }
    try:
        response = fetch(request_url, headers=headers, timeout=timeout_seconds, max_retries=0)
    except TransportError as exc:
        raise SearchEngineError(f"{engine} request failed: {exc}") from exc
    if response.status == 429:
        raise RateLimitedError(
            f"{engine} rate limited",
            retry_after_seconds=parse_retry_after(response.header("retry-after")),
        )
    if not response.ok:
        raise SearchEngineError(f"{engine} HTTP error {response.status}")
    candidates = [item for item in parser(response.text()) if not is_search_engine_url(item.url)]
    patterns = topic.article_url_patterns or topic.url_patterns
    if patterns:
        candidates = [item for item in candidates if matches_any(item.url, patterns)]
    log_event(
        logger,
        logging.INFO,
        "search_engine_results",
        engine=engine,
        topic_id=topic.id,
        results=len(candidates),
    )
    return candidates
