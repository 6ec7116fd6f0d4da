from __future__ import annotations

import re
from functools import lru_cache
from urllib.parse import urlsplit

from ..models import Topic
from ..urls import url_host, validate_url

SEARCH_ENGINE_HOSTS = (
    "duckduckgo.com",
    "google.com",
    "bing.com",
    "yahoo.com",
    "webcache.googleusercontent.com",
    "translate.google.com",
)


@lru_cache(maxsize=512)
def _compile(pattern: str) -> re.Pattern[str]:
    escaped = re.escape(pattern.strip()).replace(r"\*", ".*")
    return re.compile(escaped, re.IGNORECASE)


def matches_pattern(url: str, pattern: str) -> bool:
    if not pattern or not pattern.strip():
        return False
    return _compile(pattern).search(url) is not None


def matches_any(url: str, patterns: list[str]) -> bool:
    return any(matches_pattern(url, pattern) for pattern in patterns)


def _host_matches(host: str, domain: str) -> bool:
    domain = bare_domain(domain)
    if not domain or not host:
        return False
    return host == domain or host.endswith("." + domain)


def bare_domain(value: str) -> str:
    value = value.strip().lower()
    if "://" in value:
        value = url_host(value)
    value = value.split("/", 1)[0]
    value = value.lstrip("*.")
    if value.startswith("www."):
        value = value[4:]
    return value


def is_search_engine_url(url: str) -> bool:
    host = url_host(url)
    return any(_host_matches(host, engine) for engine in SEARCH_ENGINE_HOSTS)


def is_url_allowed(url: str, topic: Topic) -> bool:
    host = url_host(url)
    if any(_host_matches(host, domain) for domain in topic.exclude_domains):
        return False
    if topic.exclude_patterns and matches_any(url, topic.exclude_patterns):
        return False
    lowered = url.lower()
    if any(keyword.lower() in lowered for keyword in topic.exclude_keywords if keyword):
        return False
    return True


def relevance_score(
    url: str,
    topic: Topic,
    title: str | None = None,
    description: str | None = None,
) -> int:
    score = 0
    host = url_host(url)
    if any(_host_matches(host, domain) for domain in topic.preferred_domains):
        score += 10
    lowered_url = url.lower()
    lowered_title = (title or "").lower()
    lowered_desc = (description or "").lower()
    for keyword in topic.required_keywords:
        needle = keyword.lower().strip()
        if not needle:
            continue
        if needle in lowered_title:
            score += 5
        if needle in lowered_desc:
            score += 2
        if needle in lowered_url:
            score += 1
    return score + topic.priority


def topic_domains(topic: Topic, limit: int = 5) -> list[str]:
    domains: list[str] = []
    sources = list(topic.preferred_domains)
    sources.extend(_pattern_host(pattern) for pattern in topic.url_patterns)
    sources.extend(url_host(url) for url in topic.sample_article_urls)
    for value in sources:
        domain = bare_domain(value or "")
        if not domain or "*" in domain or domain in domains:
            continue
        if not validate_url(f"https://{domain}").accepted:
            continue
        if any(_host_matches(domain, excluded) for excluded in topic.exclude_domains):
            continue
        domains.append(domain)
        if len(domains) >= limit:
            break
    return domains


def _pattern_host(pattern: str) -> str:
    candidate = pattern.strip()
    if "://" not in candidate:
        candidate = "https://" + candidate.lstrip("/")
    try:
        host = urlsplit(candidate).hostname or ""
    except ValueError:
        return ""
    if "." not in host:
        return ""
    return host


def pattern_seed_urls(topic: Topic) -> list[str]:
    """Concrete listing URLs implied by wildcard patterns, e.g. ``https://a.com/news/*``."""
    seeds: list[str] = []
    domains = topic_domains(topic)
    for pattern in topic.url_patterns + topic.article_url_patterns:
        prefix = pattern.strip().split("*", 1)[0]
        if not prefix:
            continue
        if "://" in prefix:
            candidates = [prefix]
        elif prefix.startswith("/"):
            candidates = [f"https://{domain}{prefix}" for domain in domains]
        else:
            candidates = [f"https://{prefix}"]
        for candidate in candidates:
            if candidate not in seeds and validate_url(candidate).accepted:
                seeds.append(candidate)
    return seeds
