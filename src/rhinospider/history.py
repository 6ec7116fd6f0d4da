from __future__ import annotations

import logging
from typing import Any, Iterable

from .models import Topic
from .storage import get_setting, set_setting
from .urls import normalize_url
from .utils import log_event

SCRAPED_KEY = "successfullyScrapedUrls"
EXHAUSTED_KEY = "allSampleUrlsScraped"
REMAINING_KEY = "remainingUrls"


class ScrapeHistoryTracker:
    """Per-topic scraped-URL set plus the one-way sample exhaustion flag."""

    def __init__(self, conn: Any, *, max_urls: int = 100, logger: logging.Logger | None = None) -> None:
        self._conn = conn
        self._max_urls = max_urls
        self._logger = logger or logging.getLogger("rhinospider.history")

    def scraped_urls(self, topic_id: str) -> list[str]:
        value = get_setting(self._conn, f"{SCRAPED_KEY}.{topic_id}", [])
        if not isinstance(value, list):
            return []
        return [str(item) for item in value]

    def has_scraped(self, topic_id: str, url: str) -> bool:
        return normalize_url(url) in set(self.scraped_urls(topic_id))

    def record_success(self, topic_id: str, url: str, topic: Topic | None = None) -> bool:
        normalized = normalize_url(url)
        if not normalized:
            return False
        scraped = self.scraped_urls(topic_id)
        added = False
        if normalized not in scraped:
            scraped.append(normalized)
            if len(scraped) > self._max_urls:
                scraped = scraped[-self._max_urls :]
            set_setting(self._conn, f"{SCRAPED_KEY}.{topic_id}", scraped)
            added = True
        if topic is not None:
            self._refresh_exhaustion(topic, scraped)
        return added

    def is_exhausted(self, topic_id: str, topics: Iterable[Topic]) -> bool:
        if self._flag(topic_id):
            return True
        topic = next((item for item in topics if item.id == topic_id), None)
        if topic is None:
            return False
        return self._refresh_exhaustion(topic, self.scraped_urls(topic_id))

    def is_topic_exhausted(self, topic: Topic) -> bool:
        return self.is_exhausted(topic.id, [topic])

    def remaining_sample_urls(self, topic: Topic) -> list[str]:
        if self._flag(topic.id):
            return []
        scraped = set(self.scraped_urls(topic.id))
        return [url for url in topic.sample_article_urls if normalize_url(url) not in scraped]

    def _flag(self, topic_id: str) -> bool:
        return get_setting(self._conn, f"{EXHAUSTED_KEY}.{topic_id}", False) is True

    def _refresh_exhaustion(self, topic: Topic, scraped: list[str]) -> bool:
        if self._flag(topic.id):
            return True
        samples = {normalize_url(url) for url in topic.sample_article_urls if url}
        samples.discard("")
        scraped_set = set(scraped)
        remaining = sorted(samples - scraped_set)
        remaining_key = f"{REMAINING_KEY}.{topic.id}"
        if get_setting(self._conn, remaining_key, None) != remaining:
            set_setting(self._conn, remaining_key, remaining)
        if not samples or remaining:
            return False
        set_setting(self._conn, f"{EXHAUSTED_KEY}.{topic.id}", True)
        log_event(
            self._logger,
            logging.INFO,
            "topic_samples_exhausted",
            topic_id=topic.id,
            samples=len(samples),
        )
        return True
