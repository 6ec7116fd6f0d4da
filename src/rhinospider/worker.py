from __future__ import annotations

import argparse
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace
from typing import Any, Callable

from .ai import ai_configured, summarize
from .backend import ProxyBackendClient
from .cache import UrlCacheManager
from .config import Config, ConfigError, load_config, load_topics_file
from .discovery import UrlDiscoverer
from .executor import ScrapeExecutor, build_submission_record
from .fetch import Fetcher, RateLimitedError, TransportError, fetch_url
from .history import ScrapeHistoryTracker
from .models import AckOutcome, DiscoveryStats, Topic
from .ratelimit import RateLimitCoordinator
from .search_proxy import SearchProxyClient
from .storage import get_or_create_device_id, init_db, list_topics, upsert_topic
from .submission import SubmissionPipeline
from .urls import add_uniqueness_token
from .utils import configure_logging, log_event


@dataclass
class ScrapeSession:
    conn: Any
    device_id: str
    history: ScrapeHistoryTracker
    rate_limits: RateLimitCoordinator
    discoverer: UrlDiscoverer
    cache: UrlCacheManager
    executor: ScrapeExecutor
    backend: ProxyBackendClient
    pipeline: SubmissionPipeline

    def close(self) -> None:
        self.conn.close()


def build_session(
    conn: Any,
    config: Config,
    *,
    principal_id: str,
    password: str | None,
    fetch: Fetcher = fetch_url,
    summarizer: Callable[[str], dict[str, Any]] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    use_search_proxy: bool = True,
    logger: logging.Logger | None = None,
) -> ScrapeSession:
    logger = logger or logging.getLogger("rhinospider.worker")
    device_id = get_or_create_device_id(conn)
    history = ScrapeHistoryTracker(conn, max_urls=config.history.max_scraped_urls)
    rate_limits = RateLimitCoordinator(
        conn,
        base_backoff_ms=config.rate_limit.base_backoff_ms,
        max_backoff_ms=config.rate_limit.max_backoff_ms,
    )
    search_proxy = None
    if use_search_proxy and config.search_proxy.enabled and config.search_proxy.url:
        search_proxy = SearchProxyClient(
            config.search_proxy.url,
            extension_id=device_id,
            timeout_s=config.search_proxy.timeout_seconds,
            user_agent=config.app.user_agent,
            fetch=fetch,
        )
    discoverer = UrlDiscoverer(
        conn,
        config,
        history=history,
        rate_limits=rate_limits,
        search_proxy=search_proxy,
        fetch=fetch,
    )
    cache = UrlCacheManager(conn, discoverer, history, config.cache)
    executor = ScrapeExecutor(
        user_agent=config.app.user_agent,
        timeout_seconds=config.http.timeout_seconds,
        fetch=fetch,
        summarizer=summarizer,
    )
    backend = ProxyBackendClient(
        config.backend.proxy_url,
        password=password,
        principal_id=principal_id,
        device_id=device_id,
        timeout_s=config.backend.timeout_seconds,
        fetch=fetch,
    )
    pipeline = SubmissionPipeline(
        conn,
        backend,
        config.submission,
        primary_endpoint=config.backend.primary_endpoint,
        alternate_endpoints=config.backend.alternate_endpoints,
        rate_limits=rate_limits,
        sleep=sleep,
    )
    log_event(logger, logging.DEBUG, "session_ready", device_id=device_id)
    return ScrapeSession(
        conn=conn,
        device_id=device_id,
        history=history,
        rate_limits=rate_limits,
        discoverer=discoverer,
        cache=cache,
        executor=executor,
        backend=backend,
        pipeline=pipeline,
    )


class ScrapeOrchestrator:
    def __init__(
        self,
        config: Config,
        *,
        db_path: str,
        principal_id: str,
        password: str | None = None,
        topics: list[Topic] | None = None,
        fetch: Fetcher = fetch_url,
        summarizer: Callable[[str], dict[str, Any]] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._db_path = db_path
        self._principal_id = principal_id
        self._password = password
        self._static_topics = topics
        self._fetch = fetch
        self._summarizer = summarizer
        self._sleep = sleep
        self._logger = logger or logging.getLogger("rhinospider.worker")
        self._stop = threading.Event()
        self._topic_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._counters_lock = threading.Lock()
        self._counters = {
            "iterations": 0,
            "scraped": 0,
            "failed": 0,
            "submitted": 0,
            "auth_warnings": 0,
            "queued_locally": 0,
            "rejected": 0,
        }
        self._running_topics: set[str] = set()
        self.stats = DiscoveryStats()

    def open_session(self) -> ScrapeSession:
        conn = init_db(self._db_path)
        return build_session(
            conn,
            self._config,
            principal_id=self._principal_id,
            password=self._password,
            fetch=self._fetch,
            summarizer=self._summarizer,
            sleep=self._sleep,
        )

    def stop(self) -> None:
        self._stop.set()
        log_event(self._logger, logging.INFO, "orchestrator_stop_requested")

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def status(self) -> dict[str, object]:
        with self._counters_lock:
            counters = dict(self._counters)
            running = sorted(self._running_topics)
        return {
            "stopped": self.stopped,
            "running_topics": running,
            "counters": counters,
            "discovery": self.stats.snapshot(),
        }

    def load_topics(self, session: ScrapeSession) -> list[Topic]:
        if self._static_topics is not None:
            return list(self._static_topics)
        try:
            result = session.backend.get_topics()
        except (TransportError, RateLimitedError) as exc:
            log_event(self._logger, logging.WARNING, "topics_fetch_failed", error=str(exc))
            return list_topics(session.conn)
        if not result.ok:
            log_event(
                self._logger,
                logging.WARNING,
                "topics_fetch_rejected",
                error=result.error.kind.value if result.error else "unknown",
            )
            return list_topics(session.conn)
        topics = result.value or []
        for topic in topics:
            upsert_topic(session.conn, topic)
        return topics

    def run_iteration(self) -> dict[str, object]:
        session = self.open_session()
        try:
            topics = self.load_topics(session)
            active = sorted(
                (topic for topic in topics if topic.is_active),
                key=lambda topic: topic.priority,
                reverse=True,
            )
            if not self.stopped:
                session.cache.prefetch(active, stats=self.stats)
                session.pipeline.reconcile_pending()
        finally:
            session.close()

        results: dict[str, object] = {}
        workers = max(1, self._config.scraping.concurrency)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(self.run_topic_batch, topic): topic for topic in active}
            for future in as_completed(futures):
                topic = futures[future]
                try:
                    results[topic.id] = future.result()
                except Exception as exc:  # noqa: BLE001
                    log_event(self._logger, logging.ERROR, "topic_thread_error", topic_id=topic.id, error=str(exc))
                    results[topic.id] = {"error": str(exc)}
        with self._counters_lock:
            self._counters["iterations"] += 1
            counters = dict(self._counters)
        log_event(self._logger, logging.INFO, "iteration_complete", topics=len(active), **counters)
        return results

    def run_topic_batch(self, topic: Topic) -> dict[str, int]:
        lock = self._lock_for(topic.id)
        if not lock.acquire(blocking=False):
            log_event(self._logger, logging.INFO, "topic_busy_skipped", topic_id=topic.id)
            return {"skipped": 1}
        with self._counters_lock:
            self._running_topics.add(topic.id)
        session = self.open_session()
        summary = {"scraped": 0, "failed": 0}
        try:
            limit = topic.max_urls_per_batch or self._config.scraping.urls_per_topic
            for index in range(limit):
                if self.stopped:
                    log_event(self._logger, logging.INFO, "topic_batch_stopped", topic_id=topic.id, done=index)
                    break
                record = session.cache.take_one(topic, stats=self.stats)
                if record is None:
                    log_event(self._logger, logging.INFO, "topic_no_urls", topic_id=topic.id)
                    break
                ok = self._scrape_one(session, topic, record.url)
                summary["scraped" if ok else "failed"] += 1
                if index < limit - 1 and self._config.scraping.delay_between_urls_seconds > 0:
                    self._stop.wait(self._config.scraping.delay_between_urls_seconds)
        finally:
            session.close()
            with self._counters_lock:
                self._running_topics.discard(topic.id)
            lock.release()
        log_event(self._logger, logging.INFO, "topic_batch_complete", topic_id=topic.id, **summary)
        return summary

    def _scrape_one(self, session: ScrapeSession, topic: Topic, url: str) -> bool:
        outcome = session.executor.execute(add_uniqueness_token(url))
        record = build_submission_record(
            topic,
            outcome,
            device_id=session.device_id,
            principal_id=self._principal_id,
            url=url,
        )
        ack = session.pipeline.submit(record)
        success = outcome.ok and ack.durable
        if success:
            session.history.record_success(topic.id, url, topic)
        with self._counters_lock:
            self._counters["scraped" if success else "failed"] += 1
            if ack.outcome in (AckOutcome.SUBMITTED, AckOutcome.DUPLICATE):
                self._counters["submitted"] += 1
            elif ack.outcome == AckOutcome.ACCEPTED_WITH_WARNING:
                self._counters["submitted"] += 1
                self._counters["auth_warnings"] += 1
            elif ack.outcome == AckOutcome.QUEUED_LOCALLY:
                self._counters["queued_locally"] += 1
            elif ack.outcome == AckOutcome.REJECTED:
                self._counters["rejected"] += 1
        return success

    def run_loop(self, sleep_seconds: int | None = None) -> int:
        pause = self._config.scraping.loop_sleep_seconds if sleep_seconds is None else sleep_seconds
        while not self.stopped:
            try:
                self.run_iteration()
            except Exception as exc:  # noqa: BLE001
                log_event(self._logger, logging.ERROR, "iteration_error", error=str(exc))
            self._stop.wait(pause)
        return 0

    def _lock_for(self, topic_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._topic_locks.get(topic_id)
            if lock is None:
                lock = threading.Lock()
                self._topic_locks[topic_id] = lock
            return lock


def _setup_logging() -> logging.Logger:
    return configure_logging("rhinospider.worker")


def build_orchestrator(
    config: Config,
    *,
    topics_file: str | None = None,
    concurrency: int | None = None,
) -> ScrapeOrchestrator:
    if concurrency:
        config = replace(config, scraping=replace(config.scraping, concurrency=concurrency))
    topics = load_topics_file(topics_file) if topics_file else None
    summarizer = summarize if config.scraping.ai_enabled and ai_configured() else None
    return ScrapeOrchestrator(
        config,
        db_path=config.paths.state_db,
        principal_id=os.environ.get("RS_PRINCIPAL_ID", "anonymous"),
        password=os.environ.get("RS_PROXY_PASSWORD"),
        topics=topics,
        summarizer=summarizer,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rhinospider-worker")
    parser.add_argument("--config", default=None, help="Path to config.yml (defaults to RS_CONFIG_PATH)")
    parser.add_argument("--once", action="store_true", help="Run a single iteration and exit")
    parser.add_argument("--sleep", type=int, default=None, help="Sleep seconds between iterations")
    parser.add_argument("--topics-file", default=os.environ.get("RS_TOPICS_FILE"))
    parser.add_argument(
        "--concurrency",
        type=int,
        default=int(os.environ.get("RS_WORKER_CONCURRENCY", "0")) or None,
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = _setup_logging()
    try:
        config = load_config(args.config)
        orchestrator = build_orchestrator(
            config,
            topics_file=args.topics_file,
            concurrency=args.concurrency,
        )
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    if args.once:
        orchestrator.run_iteration()
        return 0
    try:
        return orchestrator.run_loop(args.sleep)
    except KeyboardInterrupt:
        orchestrator.stop()
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
