from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable

from ..config import Config
from ..fetch import Fetcher, RateLimitedError, TransportError, fetch_url
from ..history import ScrapeHistoryTracker
from ..models import DiscoveryStats, ScrapedUrlRecord, Topic, UrlCandidate
from ..ratelimit import RateLimitCoordinator
from ..search_proxy import SearchProxyClient
from ..storage import get_setting
from ..urls import normalize_url, url_host, validate_url
from ..utils import log_event, utc_now_iso
from .feeds import discover_from_feeds
from .patterns import (
    is_search_engine_url,
    is_url_allowed,
    matches_any,
    pattern_seed_urls,
    relevance_score,
    topic_domains,
)
from .search_engines import SearchEngineError, parse_anchor_links, search_engine_urls
from .sitemaps import discover_from_sitemaps

PREFETCH_KEY = "prefetchedUrls"
RECENT_KEY = "recentlyServedUrls"
SEARCH_PROXY_SOURCE = "search_proxy"


def records_from_setting(value: Any) -> list[ScrapedUrlRecord]:
    records = []
    if not isinstance(value, list):
        return records
    for item in value:
        if not isinstance(item, dict) or not item.get("url"):
            continue
        records.append(
            ScrapedUrlRecord(
                url=str(item["url"]),
                source=str(item.get("source") or "cached"),
                topic_id=str(item.get("topic_id") or ""),
                discovered_at=str(item.get("discovered_at") or ""),
                title=item.get("title"),
            )
        )
    return records


class _Batch:
    def __init__(self, topic: Topic, limit: int, scraped: set[str], skip: set[str]) -> None:
        self.topic = topic
        self.limit = limit
        self.records: list[ScrapedUrlRecord] = []
        self._seen = set(skip)
        self._scraped = scraped

    @property
    def full(self) -> bool:
        return len(self.records) >= self.limit

    def offer(self, candidate: UrlCandidate, source: str) -> bool:
        if self.full:
            return False
        verdict = validate_url(candidate.url)
        if not verdict.accepted or verdict.url is None:
            return False
        key = normalize_url(verdict.url)
        if key in self._seen or key in self._scraped:
            return False
        if not is_url_allowed(verdict.url, self.topic):
            return False
        self._seen.add(key)
        self.records.append(
            ScrapedUrlRecord(
                url=key,
                source=source,
                topic_id=self.topic.id,
                discovered_at=utc_now_iso(),
                title=candidate.title,
            )
        )
        return True


class UrlDiscoverer:
    """Produces fresh, valid, deduplicated URLs for a topic.

    Strategies run in a fixed order and stop as soon as the batch is full.
    A failing strategy is logged and skipped; ``discover`` itself never raises
    for strategy errors.
    """

    def __init__(
        self,
        conn: Any,
        config: Config,
        *,
        history: ScrapeHistoryTracker,
        rate_limits: RateLimitCoordinator,
        search_proxy: SearchProxyClient | None = None,
        fetch: Fetcher = fetch_url,
        logger: logging.Logger | None = None,
    ) -> None:
        self._conn = conn
        self._config = config
        self._history = history
        self._rate_limits = rate_limits
        self._search_proxy = search_proxy
        self._fetch = fetch
        self._logger = logger or logging.getLogger("rhinospider.discovery")

    def discover(
        self,
        topic: Topic,
        batch_size: int,
        *,
        stats: DiscoveryStats | None = None,
        include_cached: bool = True,
        exclude: set[str] | None = None,
    ) -> list[ScrapedUrlRecord]:
        if not topic.is_active or batch_size <= 0:
            return []
        scraped = set(self._history.scraped_urls(topic.id))
        batch = _Batch(topic, batch_size, scraped, exclude or set())
        strategies: list[tuple[str, str, Callable[..., list[UrlCandidate]]]] = [
            ("sample", "sample", self._sample_candidates),
            ("rss", "rss", self._feed_candidates),
            ("sitemap", "sitemap", self._sitemap_candidates),
            ("search_proxy", "search", self._search_proxy_candidates),
        ]
        if include_cached:
            strategies.append(("cached", "cached", self._cached_candidates))
        strategies.append(("search_engine", "duckduckgo", self._search_engine_candidates))
        strategies.append(("pattern", "pattern", self._pattern_candidates))

        for name, source, strategy in strategies:
            if batch.full:
                break
            try:
                candidates = strategy(topic, batch_size - len(batch.records), stats)
            except Exception as exc:  # noqa: BLE001
                if stats is not None:
                    stats.record_failure(name)
                log_event(
                    self._logger,
                    logging.WARNING,
                    "discovery_strategy_failed",
                    strategy=name,
                    topic_id=topic.id,
                    error=str(exc),
                )
                continue
            accepted = 0
            for candidate in candidates:
                if batch.offer(candidate, candidate.source or source):
                    accepted += 1
            if accepted and stats is not None:
                stats.record_hits(name, accepted)
            log_event(
                self._logger,
                logging.DEBUG,
                "discovery_strategy_done",
                strategy=name,
                topic_id=topic.id,
                candidates=len(candidates),
                accepted=accepted,
            )

        if stats is not None:
            stats.record_call(topic.id, len(batch.records))
        log_event(
            self._logger,
            logging.INFO,
            "discovery_complete",
            topic_id=topic.id,
            requested=batch_size,
            returned=len(batch.records),
        )
        return batch.records

    def _sample_candidates(
        self, topic: Topic, needed: int, stats: DiscoveryStats | None = None
    ) -> list[UrlCandidate]:
        if not topic.sample_article_urls:
            return []
        if self._history.is_topic_exhausted(topic):
            log_event(self._logger, logging.DEBUG, "sample_strategy_skipped", topic_id=topic.id)
            return []
        return [UrlCandidate(url=url) for url in self._history.remaining_sample_urls(topic)]

    def _feed_candidates(
        self, topic: Topic, needed: int, stats: DiscoveryStats | None = None
    ) -> list[UrlCandidate]:
        domains = topic_domains(topic)
        if not domains:
            return []
        cfg = self._config.discovery
        candidates = discover_from_feeds(
            domains,
            paths=cfg.feed_paths,
            user_agent=self._config.app.user_agent,
            timeout_seconds=cfg.feed_timeout_seconds,
            max_retries=cfg.feed_max_retries,
            fetch=self._fetch,
            logger=self._logger,
        )
        return self._rank(candidates, topic)

    def _sitemap_candidates(
        self, topic: Topic, needed: int, stats: DiscoveryStats | None = None
    ) -> list[UrlCandidate]:
        domains = topic_domains(topic)
        if not domains:
            return []
        cfg = self._config.discovery
        candidates = discover_from_sitemaps(
            domains,
            paths=cfg.sitemap_paths,
            user_agent=self._config.app.user_agent,
            timeout_seconds=cfg.feed_timeout_seconds,
            max_urls=cfg.sitemap_max_urls,
            fetch=self._fetch,
            logger=self._logger,
        )
        return self._rank(candidates, topic)

    def _search_proxy_candidates(
        self, topic: Topic, needed: int, stats: DiscoveryStats | None = None
    ) -> list[UrlCandidate]:
        if self._search_proxy is None or not self._config.search_proxy.enabled:
            return []
        if self._rate_limits.is_limited(SEARCH_PROXY_SOURCE):
            log_event(
                self._logger,
                logging.INFO,
                "rate_limited_skip",
                source=SEARCH_PROXY_SOURCE,
                topic_id=topic.id,
                remaining_ms=self._rate_limits.remaining_ms(SEARCH_PROXY_SOURCE),
            )
            if stats is not None:
                stats.record_rate_limited_skip(SEARCH_PROXY_SOURCE)
            return []
        if not self._search_proxy.health():
            return []
        try:
            results = self._search_proxy.search(
                [topic],
                batch_size=max(needed, self._config.search_proxy.batch_size),
            )
        except RateLimitedError as exc:
            self._rate_limits.record_rate_limited(SEARCH_PROXY_SOURCE, exc.retry_after_seconds)
            return []
        self._rate_limits.record_success(SEARCH_PROXY_SOURCE)
        return self._rank(results.get(topic.id, []), topic)

    def _cached_candidates(
        self, topic: Topic, needed: int, stats: DiscoveryStats | None = None
    ) -> list[UrlCandidate]:
        recent = get_setting(self._conn, f"{RECENT_KEY}.{topic.id}", [])
        recent_set = set(recent) if isinstance(recent, list) else set()
        cached = records_from_setting(get_setting(self._conn, f"{PREFETCH_KEY}.{topic.id}", []))
        return [
            UrlCandidate(url=record.url, title=record.title)
            for record in cached
            if normalize_url(record.url) not in recent_set
        ]

    def _search_engine_candidates(
        self, topic: Topic, needed: int, stats: DiscoveryStats | None = None
    ) -> list[UrlCandidate]:
        collected: list[UrlCandidate] = []
        for engine in self._config.discovery.search_engines:
            if self._rate_limits.is_limited(engine):
                log_event(self._logger, logging.INFO, "rate_limited_skip", source=engine, topic_id=topic.id)
                if stats is not None:
                    stats.record_rate_limited_skip(engine)
                continue
            try:
                results = search_engine_urls(
                    engine,
                    topic,
                    user_agent=self._config.app.user_agent,
                    timeout_seconds=self._config.discovery.search_timeout_seconds,
                    fetch=self._fetch,
                    logger=self._logger,
                )
            except RateLimitedError as exc:
                self._rate_limits.record_rate_limited(engine, exc.retry_after_seconds)
                continue
            except SearchEngineError as exc:
                log_event(self._logger, logging.WARNING, "search_engine_failed", engine=engine, error=str(exc))
                continue
            self._rate_limits.record_success(engine)
            collected.extend(replace(result, source=engine) for result in results)
            if len(collected) >= needed:
                break
        return self._rank(collected, topic)

    def _pattern_candidates(
        self, topic: Topic, needed: int, stats: DiscoveryStats | None = None
    ) -> list[UrlCandidate]:
        seeds = pattern_seed_urls(topic)
        patterns = topic.article_url_patterns or topic.url_patterns
        collected: list[UrlCandidate] = []
        for seed in seeds:
            try:
                response = self._fetch(
                    seed,
                    headers={"User-Agent": self._config.app.user_agent},
                    timeout=self._config.http.timeout_seconds,
                    max_retries=0,
                )
            except TransportError as exc:
                log_event(self._logger, logging.DEBUG, "pattern_seed_failed", url=seed, error=str(exc))
                continue
            if not response.ok:
                continue
            seed_host = url_host(seed)
            for link in parse_anchor_links(response.text(), seed):
                if url_host(link.url) != seed_host or is_search_engine_url(link.url):
                    continue
                if normalize_url(link.url) == normalize_url(seed):
                    continue
                if patterns and not matches_any(link.url, patterns):
                    continue
                collected.append(link)
            if len(collected) >= needed:
                break
        return self._rank(collected, topic)

    def _rank(self, candidates: list[UrlCandidate], topic: Topic) -> list[UrlCandidate]:
        return sorted(
            candidates,
            key=lambda item: relevance_score(item.url, topic, item.title, item.description),
            reverse=True,
        )
