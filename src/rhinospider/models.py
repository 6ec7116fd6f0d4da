from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum

URL_SOURCES = ("sample", "rss", "sitemap", "search", "duckduckgo", "google", "cached", "pattern")


@dataclass(frozen=True)
class ContentIdentifiers:
    selectors: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Topic:
    id: str
    name: str
    status: str = "active"
    description: str = ""
    sample_article_urls: list[str] = field(default_factory=list)
    url_patterns: list[str] = field(default_factory=list)
    article_url_patterns: list[str] = field(default_factory=list)
    exclude_patterns: list[str] = field(default_factory=list)
    pagination_patterns: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    required_keywords: list[str] = field(default_factory=list)
    exclude_keywords: list[str] = field(default_factory=list)
    preferred_domains: list[str] = field(default_factory=list)
    exclude_domains: list[str] = field(default_factory=list)
    priority: int = 5
    content_identifiers: ContentIdentifiers = field(default_factory=ContentIdentifiers)
    max_urls_per_batch: int | None = None
    created_at: int | None = None

    @property
    def is_active(self) -> bool:
        return self.status.lower() == "active"


@dataclass(frozen=True)
class ScrapedUrlRecord:
    url: str
    source: str
    topic_id: str
    discovered_at: str
    title: str | None = None


@dataclass(frozen=True)
class RateLimitWindow:
    started_at_ms: int
    backoff_ms: int
    next_attempt_at_ms: int
    count: int


class FailureKind(str, Enum):
    CORS = "CORS"
    HTTP_ERROR = "HTTP_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"


@dataclass(frozen=True)
class ScrapeFailure:
    kind: FailureKind
    message: str
    status: int | None = None

    def describe(self) -> str:
        if self.kind == FailureKind.HTTP_ERROR and self.status is not None:
            return f"{self.kind.value}({self.status}): {self.message}"
        return f"{self.kind.value}: {self.message}"


@dataclass(frozen=True)
class ScrapeOutcome:
    url: str
    duration_ms: int
    content: str | None = None
    title: str | None = None
    failure: ScrapeFailure | None = None
    ai_fallback: bool = False

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass(frozen=True)
class SubmissionRecord:
    id: str
    url: str
    topic_id: str
    content: str
    status: str
    device_id: str
    timestamp: int
    scraping_time_ms: int
    source: str = "extension"
    principal_id: str = ""
    ai_fallback: bool = False


class AckOutcome(str, Enum):
    SUBMITTED = "submitted"
    ACCEPTED_WITH_WARNING = "accepted_with_warning"
    DUPLICATE = "duplicate"
    QUEUED_LOCALLY = "queued_locally"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass(frozen=True)
class SubmissionAck:
    record_id: str
    outcome: AckOutcome
    endpoint: str | None = None
    attempts: int = 0
    has_auth_warning: bool = False
    error: str | None = None

    @property
    def delivered(self) -> bool:
        return self.outcome in (
            AckOutcome.SUBMITTED,
            AckOutcome.ACCEPTED_WITH_WARNING,
            AckOutcome.DUPLICATE,
        )

    @property
    def durable(self) -> bool:
        return self.delivered or self.outcome in (AckOutcome.QUEUED_LOCALLY, AckOutcome.REJECTED)


@dataclass(frozen=True)
class PendingSubmission:
    id: str
    record: SubmissionRecord
    status: str
    retry_count: int
    queued_at: str
    next_retry_at: str
    last_error: str | None


@dataclass(frozen=True)
class UrlCandidate:
    url: str
    title: str | None = None
    description: str | None = None
    source: str | None = None


@dataclass
class DiscoveryStats:
    calls: int = 0
    strategy_hits: dict[str, int] = field(default_factory=dict)
    strategy_failures: dict[str, int] = field(default_factory=dict)
    rate_limited_skips: dict[str, int] = field(default_factory=dict)
    consecutive_empty: dict[str, int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_call(self, topic_id: str, returned: int) -> None:
        with self._lock:
            self.calls += 1
            if returned:
                self.consecutive_empty[topic_id] = 0
            else:
                self.consecutive_empty[topic_id] = self.consecutive_empty.get(topic_id, 0) + 1

    def record_hits(self, strategy: str, count: int) -> None:
        with self._lock:
            self.strategy_hits[strategy] = self.strategy_hits.get(strategy, 0) + count

    def record_failure(self, strategy: str) -> None:
        with self._lock:
            self.strategy_failures[strategy] = self.strategy_failures.get(strategy, 0) + 1

    def record_rate_limited_skip(self, source: str) -> None:
        with self._lock:
            self.rate_limited_skips[source] = self.rate_limited_skips.get(source, 0) + 1

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            return {
                "calls": self.calls,
                "strategy_hits": dict(self.strategy_hits),
                "strategy_failures": dict(self.strategy_failures),
                "rate_limited_skips": dict(self.rate_limited_skips),
                "consecutive_empty": dict(self.consecutive_empty),
            }
