from __future__ import annotations

import logging
from typing import Any

from .config import CacheConfig
from .discovery import PREFETCH_KEY, RECENT_KEY, UrlDiscoverer, records_from_setting
from .history import ScrapeHistoryTracker
from .models import DiscoveryStats, ScrapedUrlRecord, Topic
from .storage import get_setting, set_setting
from .urls import normalize_url
from .utils import log_event


class UrlCacheManager:
    def __init__(
        self,
        conn: Any,
        discoverer: UrlDiscoverer,
        history: ScrapeHistoryTracker,
        config: CacheConfig,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._conn = conn
        self._discoverer = discoverer
        self._history = history
        self._config = config
        self._logger = logger or logging.getLogger("rhinospider.cache")

    def cached(self, topic_id: str) -> list[ScrapedUrlRecord]:
        return records_from_setting(get_setting(self._conn, f"{PREFETCH_KEY}.{topic_id}", []))

    def cached_count(self, topic_id: str) -> int:
        return len(self.cached(topic_id))

    def recent(self, topic_id: str) -> list[str]:
        value = get_setting(self._conn, f"{RECENT_KEY}.{topic_id}", [])
        return [str(item) for item in value] if isinstance(value, list) else []

    def prefetch(
        self,
        topics: list[Topic],
        per_topic_count: int | None = None,
        *,
        stats: DiscoveryStats | None = None,
    ) -> dict[str, int]:
        count = per_topic_count or self._config.prefetch_per_topic
        added: dict[str, int] = {}
        for topic in topics:
            if not topic.is_active:
                continue
            cached = self.cached(topic.id)
            if len(cached) >= self._config.low_water_mark:
                continue
            discovered = self._discoverer.discover(
                topic,
                count,
                stats=stats,
                include_cached=False,
                exclude={normalize_url(record.url) for record in cached},
            )
            merged = self._merge(cached, discovered)
            self._save(topic.id, merged)
            added[topic.id] = len(merged) - len(cached)
            log_event(
                self._logger,
                logging.INFO,
                "prefetch_complete",
                topic_id=topic.id,
                cached_before=len(cached),
                cached_after=len(merged),
            )
        return added

    def take_one(self, topic: Topic, *, stats: DiscoveryStats | None = None) -> ScrapedUrlRecord | None:
        if not topic.is_active:
            return None
        cached = self.cached(topic.id)
        recent = set(self.recent(topic.id))
        scraped = set(self._history.scraped_urls(topic.id))
        chosen: ScrapedUrlRecord | None = None
        remaining: list[ScrapedUrlRecord] = []
        for record in cached:
            key = normalize_url(record.url)
            if key in scraped:
                continue
            if chosen is None and key not in recent:
                chosen = record
                continue
            remaining.append(record)
        if chosen is None:
            fresh = self._discoverer.discover(
                topic,
                1,
                stats=stats,
                include_cached=False,
                exclude=recent | {normalize_url(record.url) for record in remaining},
            )
            chosen = fresh[0] if fresh else None
        self._save(topic.id, remaining)
        if chosen is not None:
            self._remember(topic.id, chosen.url)
            log_event(
                self._logger,
                logging.DEBUG,
                "url_served",
                topic_id=topic.id,
                url=chosen.url,
                source=chosen.source,
                cached_left=len(remaining),
            )
        return chosen

    def _merge(
        self, cached: list[ScrapedUrlRecord], discovered: list[ScrapedUrlRecord]
    ) -> list[ScrapedUrlRecord]:
        merged = list(cached)
        seen = {normalize_url(record.url) for record in cached}
        for record in discovered:
            key = normalize_url(record.url)
            if key in seen:
                continue
            seen.add(key)
            merged.append(record)
        return merged[: self._config.max_per_topic]

    def _save(self, topic_id: str, records: list[ScrapedUrlRecord]) -> None:
        set_setting(self._conn, f"{PREFETCH_KEY}.{topic_id}", records[: self._config.max_per_topic])

    def _remember(self, topic_id: str, url: str) -> None:
        recent = self.recent(topic_id)
        recent.append(normalize_url(url))
        window = self._config.recent_window
        set_setting(self._conn, f"{RECENT_KEY}.{topic_id}", recent[-window:] if window > 0 else [])
