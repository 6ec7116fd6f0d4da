from __future__ import annotations

import logging
import time
from typing import Any, Callable

from .backend import BackendErrorKind, BackendResult, ProxyBackendClient, is_auth_lag
from .config import SubmissionConfig
from .fetch import RateLimitedError, TransportError
from .models import AckOutcome, SubmissionAck, SubmissionRecord
from .ratelimit import RateLimitCoordinator
from .retry import backoff_delay, retry_call
from .storage import (
    count_pending_submissions,
    delete_pending_submission,
    enqueue_pending_submission,
    list_pending_submissions,
    reschedule_pending_submission,
)
from .utils import log_event, utc_now_iso, utc_now_iso_offset

BACKEND_SOURCE = "backend"


class SubmissionPipeline:
    """Delivers scrape results to the backend and never raises to the caller.

    Order: primary endpoint, then alternate aliases with linear backoff on
    transport errors, then the local ``pending_submissions`` table. While the
    backend is inside a rate-limit window no request is sent at all.
    """

    def __init__(
        self,
        conn: Any,
        backend: ProxyBackendClient,
        config: SubmissionConfig,
        *,
        primary_endpoint: str,
        alternate_endpoints: list[str],
        rate_limits: RateLimitCoordinator | None = None,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._conn = conn
        self._rate_limits = rate_limits
        self._backend = backend
        self._config = config
        self._primary = primary_endpoint
        self._alternates = list(alternate_endpoints) or [primary_endpoint]
        self._sleep = sleep
        self._logger = logger or logging.getLogger("rhinospider.submission")

    def backend_limited(self) -> bool:
        return self._rate_limits is not None and self._rate_limits.is_limited(BACKEND_SOURCE)

    def submit(self, record: SubmissionRecord) -> SubmissionAck:
        if self.backend_limited():
            log_event(
                self._logger,
                logging.INFO,
                "rate_limited_skip",
                source=BACKEND_SOURCE,
                record_id=record.id,
                remaining_ms=self._rate_limits.remaining_ms(BACKEND_SOURCE),
            )
            return self._queue_locally(record, "backend rate limited")
        try:
            ack = self._deliver(record)
        except RateLimitedError as exc:
            self._note_rate_limited(exc)
            return self._queue_locally(record, str(exc))
        except TransportError as exc:
            return self._queue_locally(record, str(exc))
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.ERROR,
                "submission_unexpected_error",
                record_id=record.id,
                error=repr(exc),
            )
            return self._queue_locally(record, repr(exc))
        if ack.outcome == AckOutcome.REJECTED:
            self._keep_rejected(record, ack.error)
        elif self._rate_limits is not None:
            self._rate_limits.record_success(BACKEND_SOURCE)
        return ack

    def _note_rate_limited(self, exc: RateLimitedError) -> None:
        if self._rate_limits is not None:
            self._rate_limits.record_rate_limited(BACKEND_SOURCE, exc.retry_after_seconds)

    def _deliver(self, record: SubmissionRecord) -> SubmissionAck:
        try:
            result = self._send(record, self._primary)
            return self._interpret(record, result, self._primary, attempts=1)
        except RateLimitedError:
            raise
        except TransportError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "submission_primary_failed",
                record_id=record.id,
                endpoint=self._primary,
                error=str(exc),
            )

        def _attempt(attempt: int) -> SubmissionAck:
            endpoint = self._alternates[(attempt - 1) % len(self._alternates)]
            result = self._send(record, endpoint)
            return self._interpret(record, result, endpoint, attempts=attempt + 1)

        return retry_call(
            _attempt,
            max_attempts=self._config.max_attempts,
            base_delay=self._config.base_delay_ms / 1000.0,
            is_retryable=lambda exc: isinstance(exc, TransportError) and not isinstance(exc, RateLimitedError),
            sleep=self._sleep,
            logger=self._logger,
            label=f"submit:{record.id}",
        )

    def _send(self, record: SubmissionRecord, endpoint: str) -> BackendResult[Any]:
        result = self._backend.submit_scraped_data(record, endpoint=endpoint)
        if (
            result.error is not None
            and result.error.kind == BackendErrorKind.INVALID_INPUT
            and len(record.content) > self._config.max_content_chars
        ):
            log_event(
                self._logger,
                logging.INFO,
                "submission_retry_truncated",
                record_id=record.id,
                endpoint=endpoint,
                chars=self._config.max_content_chars,
            )
            result = self._backend.submit_scraped_data(
                record,
                endpoint=endpoint,
                max_content_chars=self._config.max_content_chars,
            )
        return result

    def _interpret(
        self,
        record: SubmissionRecord,
        result: BackendResult[Any],
        endpoint: str,
        *,
        attempts: int,
    ) -> SubmissionAck:
        if result.ok:
            log_event(
                self._logger,
                logging.INFO,
                "submission_delivered",
                record_id=record.id,
                endpoint=endpoint,
                attempts=attempts,
            )
            return SubmissionAck(record.id, AckOutcome.SUBMITTED, endpoint=endpoint, attempts=attempts)
        if is_auth_lag(result):
            log_event(
                self._logger,
                logging.WARNING,
                "submission_auth_warning",
                record_id=record.id,
                endpoint=endpoint,
                has_auth_warning=True,
            )
            return SubmissionAck(
                record.id,
                AckOutcome.ACCEPTED_WITH_WARNING,
                endpoint=endpoint,
                attempts=attempts,
                has_auth_warning=True,
            )
        error = result.error
        if error is not None and error.kind == BackendErrorKind.ALREADY_EXISTS:
            log_event(self._logger, logging.INFO, "submission_duplicate", record_id=record.id, endpoint=endpoint)
            return SubmissionAck(record.id, AckOutcome.DUPLICATE, endpoint=endpoint, attempts=attempts)
        if error is not None and error.kind == BackendErrorKind.SYSTEM_ERROR:
            # Backend-side failures are transient; only NotFound and InvalidInput are final.
            raise TransportError(f"{endpoint} returned SystemError: {error.message}")
        message = f"{error.kind.value}: {error.message}".rstrip(": ") if error else "unknown error"
        log_event(
            self._logger,
            logging.ERROR,
            "submission_rejected",
            record_id=record.id,
            endpoint=endpoint,
            error=message,
        )
        return SubmissionAck(
            record.id,
            AckOutcome.REJECTED,
            endpoint=endpoint,
            attempts=attempts,
            error=message,
        )

    def _queue_locally(self, record: SubmissionRecord, error: str) -> SubmissionAck:
        try:
            enqueue_pending_submission(
                self._conn,
                record,
                error=error,
                delay_seconds=self._config.reconcile_base_delay_seconds,
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.CRITICAL,
                "submission_local_fallback_failed",
                record_id=record.id,
                url=record.url,
                error=repr(exc),
            )
            return SubmissionAck(record.id, AckOutcome.FAILED, error=f"{error}; local store: {exc!r}")
        log_event(
            self._logger,
            logging.WARNING,
            "submission_queued_locally",
            record_id=record.id,
            error=error,
        )
        return SubmissionAck(record.id, AckOutcome.QUEUED_LOCALLY, error=error)

    def _keep_rejected(self, record: SubmissionRecord, error: str | None) -> None:
        try:
            enqueue_pending_submission(self._conn, record, error=error, status="rejected")
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.CRITICAL,
                "submission_reject_store_failed",
                record_id=record.id,
                error=repr(exc),
            )

    def reconcile_pending(self, limit: int | None = None) -> dict[str, int]:
        """Resubmit locally queued records whose retry time has come."""
        due = list_pending_submissions(
            self._conn,
            status="pending",
            due_before=utc_now_iso(),
            limit=limit or self._config.reconcile_batch_size,
        )
        processed = 0
        succeeded = 0
        failed = 0
        for pending in due:
            if self.backend_limited():
                log_event(
                    self._logger,
                    logging.INFO,
                    "reconcile_paused",
                    source=BACKEND_SOURCE,
                    skipped=len(due) - processed,
                )
                break
            processed += 1
            try:
                ack = self._deliver(pending.record)
            except RateLimitedError as exc:
                self._note_rate_limited(exc)
                ack = None
                error = str(exc)
            except TransportError as exc:
                ack = None
                error = str(exc)
            except Exception as exc:  # noqa: BLE001
                ack = None
                error = repr(exc)
            if ack is not None and ack.outcome != AckOutcome.REJECTED:
                delete_pending_submission(self._conn, pending.id)
                if self._rate_limits is not None:
                    self._rate_limits.record_success(BACKEND_SOURCE)
                succeeded += 1
                continue
            failed += 1
            retry_count = pending.retry_count + 1
            if ack is not None:
                reschedule_pending_submission(
                    self._conn,
                    pending.id,
                    retry_count=retry_count,
                    next_retry_at=utc_now_iso(),
                    error=ack.error,
                    status="rejected",
                )
                continue
            delay = backoff_delay(
                retry_count,
                float(self._config.reconcile_base_delay_seconds),
                strategy="exponential",
                max_delay=float(self._config.reconcile_max_delay_seconds),
            )
            reschedule_pending_submission(
                self._conn,
                pending.id,
                retry_count=retry_count,
                next_retry_at=utc_now_iso_offset(seconds=int(delay)),
                error=error,
            )
        summary = {
            "processed": processed,
            "succeeded": succeeded,
            "failed": failed,
            "remaining": count_pending_submissions(self._conn),
        }
        log_event(self._logger, logging.INFO, "pending_reconciled", **summary)
        return summary
