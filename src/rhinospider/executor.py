from __future__ import annotations

import json
import logging
import re
import time
import uuid
from typing import Any, Callable

from bs4 import BeautifulSoup

from .ai import SummarizerError
from .fetch import Fetcher, TransportError, fetch_url
from .models import FailureKind, ScrapeFailure, ScrapeOutcome, SubmissionRecord, Topic
from .utils import log_event

Summarizer = Callable[[str], dict[str, Any]]

_CORS_HEADER_PREFIXES = ("access-control-", "cross-origin-")


class ScrapeExecutor:
    def __init__(
        self,
        *,
        user_agent: str,
        timeout_seconds: int = 20,
        fetch: Fetcher = fetch_url,
        summarizer: Summarizer | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._user_agent = user_agent
        self._timeout = timeout_seconds
        self._fetch = fetch
        self._summarizer = summarizer
        self._logger = logger or logging.getLogger("rhinospider.executor")

    def execute(self, url: str) -> ScrapeOutcome:
        started = time.monotonic()
        headers = {
            "User-Agent": self._user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Cache-Control": "no-cache",
        }
        try:
            response = self._fetch(url, headers=headers, timeout=self._timeout, max_retries=0)
        except TransportError as exc:
            return self._failed(url, started, ScrapeFailure(FailureKind.NETWORK_ERROR, str(exc)))
        if not response.ok:
            return self._failed(url, started, classify_http_failure(response.status, response.headers))

        html = response.text()
        title, text = extract_title_and_text(html)
        content = text
        ai_fallback = False
        if self._summarizer is not None and text:
            try:
                summary = self._summarizer(text)
                content = json.dumps(summary, sort_keys=True)
            except (SummarizerError, ValueError) as exc:
                ai_fallback = True
                log_event(self._logger, logging.WARNING, "ai_fallback_raw_content", url=url, error=str(exc))
        duration_ms = int((time.monotonic() - started) * 1000)
        log_event(
            self._logger,
            logging.INFO,
            "scrape_succeeded",
            url=url,
            duration_ms=duration_ms,
            chars=len(content),
            ai_fallback=ai_fallback,
        )
        return ScrapeOutcome(
            url=url,
            duration_ms=duration_ms,
            content=content,
            title=title,
            ai_fallback=ai_fallback,
        )

    def _failed(self, url: str, started: float, failure: ScrapeFailure) -> ScrapeOutcome:
        duration_ms = int((time.monotonic() - started) * 1000)
        log_event(
            self._logger,
            logging.WARNING,
            "scrape_failed",
            url=url,
            kind=failure.kind.value,
            status=failure.status,
            error=failure.message,
        )
        return ScrapeOutcome(url=url, duration_ms=duration_ms, failure=failure)


def classify_http_failure(status: int, headers: dict[str, str]) -> ScrapeFailure:
    if status == 403 and any(key.startswith(_CORS_HEADER_PREFIXES) for key in headers):
        return ScrapeFailure(FailureKind.CORS, "blocked by cross-origin policy", status=status)
    return ScrapeFailure(FailureKind.HTTP_ERROR, f"HTTP {status}", status=status)


def extract_title_and_text(html: str) -> tuple[str | None, str]:
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else None
    for tag in soup(["script", "style", "nav", "footer", "header", "aside", "noscript"]):
        tag.decompose()
    article = soup.find("article") or soup.find("main")
    if article:
        return title or None, _normalize_text(article.get_text(" ", strip=True))
    best = None
    best_len = 0
    for div in soup.find_all("div"):
        text = div.get_text(" ", strip=True)
        if len(text) > best_len:
            best_len = len(text)
            best = text
    if best:
        return title or None, _normalize_text(best)
    return title or None, _normalize_text(soup.get_text(" ", strip=True))


def _normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def build_submission_record(
    topic: Topic,
    outcome: ScrapeOutcome,
    *,
    device_id: str,
    principal_id: str,
    url: str | None = None,
    record_id: str | None = None,
) -> SubmissionRecord:
    if outcome.ok:
        status = "completed"
        content = outcome.content or ""
    else:
        status = "failed"
        content = outcome.failure.describe() if outcome.failure else "unknown failure"
    return SubmissionRecord(
        id=record_id or f"{topic.id}-{uuid.uuid4().hex}",
        url=url or outcome.url,
        topic_id=topic.id,
        content=content,
        status=status,
        device_id=device_id,
        timestamp=int(time.time()),
        scraping_time_ms=outcome.duration_ms,
        principal_id=principal_id,
        ai_fallback=outcome.ai_fallback,
    )
