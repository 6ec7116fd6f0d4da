import logging

from rhinospider.backend import BackendErrorKind, BackendResult
from rhinospider.config import SubmissionConfig
from rhinospider.fetch import RateLimitedError, TransportError
from rhinospider.models import AckOutcome, SubmissionRecord
from rhinospider.ratelimit import RateLimitCoordinator
from rhinospider.storage import (
    count_pending_submissions,
    list_pending_submissions,
    reschedule_pending_submission,
)
from rhinospider.submission import SubmissionPipeline

PRIMARY = "/api/consumer-submit"
ALTERNATES = ["/api/submit", "/api/submit-scraped-content"]


class FakeBackend:
    """Replays scripted results per endpoint; a script entry may be an exception."""

    def __init__(self, script=None, default=None):
        self.script = {key: list(value) for key, value in (script or {}).items()}
        self.default = default if default is not None else BackendResult.success({"dataSubmitted": True})
        self.calls = []

    def submit_scraped_data(self, record, *, endpoint, max_content_chars=None):
        self.calls.append((endpoint, max_content_chars))
        queue = self.script.get(endpoint)
        outcome = queue.pop(0) if queue else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    @property
    def endpoints(self):
        return [endpoint for endpoint, _ in self.calls]


def _config(**overrides):
    values = dict(
        max_attempts=3,
        base_delay_ms=1000,
        max_content_chars=10,
        reconcile_batch_size=20,
        reconcile_base_delay_seconds=60,
        reconcile_max_delay_seconds=86400,
    )
    values.update(overrides)
    return SubmissionConfig(**values)


def _record(record_id="ai-1", content="short"):
    return SubmissionRecord(
        id=record_id,
        url="https://news.acme.org/a1",
        topic_id="ai",
        content=content,
        status="completed",
        device_id="ext_1",
        timestamp=1700000000,
        scraping_time_ms=100,
        principal_id="principal-1",
    )


def _pipeline(conn, backend, sleeps=None, rate_limits=None, **config):
    sleeps = sleeps if sleeps is not None else []
    return SubmissionPipeline(
        conn,
        backend,
        _config(**config),
        primary_endpoint=PRIMARY,
        alternate_endpoints=ALTERNATES,
        rate_limits=rate_limits,
        sleep=sleeps.append,
        logger=logging.getLogger("tests.submission"),
    )


def _failure(kind, message=""):
    return BackendResult.failure(kind, message)


def test_submit_success_on_primary(conn):
    backend = FakeBackend()
    ack = _pipeline(conn, backend).submit(_record())
    assert ack.outcome == AckOutcome.SUBMITTED
    assert ack.endpoint == PRIMARY
    assert ack.attempts == 1
    assert ack.delivered
    assert backend.endpoints == [PRIMARY]
    assert count_pending_submissions(conn) == 0


def test_not_authorized_is_accepted_with_warning(conn, caplog):
    caplog.set_level(logging.WARNING, logger="tests.submission")
    backend = FakeBackend(default=_failure(BackendErrorKind.NOT_AUTHORIZED))
    ack = _pipeline(conn, backend).submit(_record())
    assert ack.outcome == AckOutcome.ACCEPTED_WITH_WARNING
    assert ack.has_auth_warning
    assert ack.delivered
    assert "event=submission_auth_warning" in caplog.text
    assert count_pending_submissions(conn, status=None) == 0


def test_already_exists_counts_as_duplicate(conn):
    backend = FakeBackend(default=_failure(BackendErrorKind.ALREADY_EXISTS))
    ack = _pipeline(conn, backend).submit(_record())
    assert ack.outcome == AckOutcome.DUPLICATE
    assert ack.delivered


def test_transport_failure_falls_through_aliases(conn):
    sleeps = []
    backend = FakeBackend(
        script={
            PRIMARY: [TransportError("down")],
            ALTERNATES[0]: [TransportError("down")],
        }
    )
    ack = _pipeline(conn, backend, sleeps).submit(_record())
    assert ack.outcome == AckOutcome.SUBMITTED
    assert ack.endpoint == ALTERNATES[1]
    assert ack.attempts == 3
    assert backend.endpoints == [PRIMARY, ALTERNATES[0], ALTERNATES[1]]
    assert sleeps == [1.0]


def test_exhausted_aliases_queue_locally(conn):
    sleeps = []
    backend = FakeBackend(script={endpoint: [TransportError("down")] * 3 for endpoint in [PRIMARY, *ALTERNATES]})
    ack = _pipeline(conn, backend, sleeps).submit(_record())
    assert ack.outcome == AckOutcome.QUEUED_LOCALLY
    assert ack.durable
    assert not ack.delivered
    assert backend.endpoints == [PRIMARY, ALTERNATES[0], ALTERNATES[1], ALTERNATES[0]]
    assert sleeps == [1.0, 2.0]

    [pending] = list_pending_submissions(conn, status="pending")
    assert pending.id == "ai-1"
    assert pending.record == _record()
    assert pending.retry_count == 0
    assert pending.last_error == "down"


def test_rate_limited_queues_without_aliases(conn):
    backend = FakeBackend(script={PRIMARY: [RateLimitedError("slow down", retry_after_seconds=30)]})
    ack = _pipeline(conn, backend).submit(_record())
    assert ack.outcome == AckOutcome.QUEUED_LOCALLY
    assert backend.endpoints == [PRIMARY]
    assert count_pending_submissions(conn) == 1


def test_unexpected_error_is_queued(conn):
    backend = FakeBackend(script={PRIMARY: [ValueError("bad payload")]})
    ack = _pipeline(conn, backend).submit(_record())
    assert ack.outcome == AckOutcome.QUEUED_LOCALLY
    assert "bad payload" in ack.error


def test_local_store_failure_reports_failed(tmp_path):
    from rhinospider.storage import init_db

    closed = init_db(str(tmp_path / "closed.sqlite3"))
    closed.close()
    backend = FakeBackend(script={endpoint: [TransportError("down")] * 3 for endpoint in [PRIMARY, *ALTERNATES]})
    ack = _pipeline(closed, backend).submit(_record())
    assert ack.outcome == AckOutcome.FAILED
    assert not ack.durable


def test_oversized_content_is_retried_truncated(conn):
    backend = FakeBackend(script={PRIMARY: [_failure(BackendErrorKind.INVALID_INPUT, "content too large")]})
    ack = _pipeline(conn, backend).submit(_record(content="x" * 50))
    assert ack.outcome == AckOutcome.SUBMITTED
    assert backend.calls == [(PRIMARY, None), (PRIMARY, 10)]


def test_invalid_input_on_small_content_is_rejected(conn):
    backend = FakeBackend(default=_failure(BackendErrorKind.INVALID_INPUT, "bad url"))
    ack = _pipeline(conn, backend).submit(_record())
    assert ack.outcome == AckOutcome.REJECTED
    assert backend.calls == [(PRIMARY, None)]


def test_not_found_is_kept_as_rejected(conn):
    backend = FakeBackend(default=_failure(BackendErrorKind.NOT_FOUND))
    ack = _pipeline(conn, backend).submit(_record())
    assert ack.outcome == AckOutcome.REJECTED
    assert ack.error == "NotFound"
    assert ack.durable
    assert count_pending_submissions(conn) == 0
    [kept] = list_pending_submissions(conn, status="rejected")
    assert kept.last_error == "NotFound"


def test_system_error_is_retried_then_queued(conn):
    sleeps = []
    backend = FakeBackend(default=_failure(BackendErrorKind.SYSTEM_ERROR, "canister trapped"))
    ack = _pipeline(conn, backend, sleeps).submit(_record())
    assert ack.outcome == AckOutcome.QUEUED_LOCALLY
    assert backend.endpoints == [PRIMARY, ALTERNATES[0], ALTERNATES[1], ALTERNATES[0]]
    assert sleeps == [1.0, 2.0]
    assert count_pending_submissions(conn) == 1
    assert list_pending_submissions(conn, status="rejected") == []


def test_rejected_credentials_are_queued_not_rejected(conn):
    rejected = TransportError("proxy rejected credentials", status=401)
    backend = FakeBackend(script={endpoint: [rejected] * 3 for endpoint in [PRIMARY, *ALTERNATES]})
    ack = _pipeline(conn, backend).submit(_record())
    assert ack.outcome == AckOutcome.QUEUED_LOCALLY
    [pending] = list_pending_submissions(conn, status="pending")
    assert pending.last_error == "proxy rejected credentials"
    assert list_pending_submissions(conn, status="rejected") == []


def test_rate_limit_window_short_circuits_submission(conn):
    clock = [1_000_000]
    limits = RateLimitCoordinator(conn, clock=lambda: clock[0])
    backend = FakeBackend(script={PRIMARY: [RateLimitedError("slow down", retry_after_seconds=60)]})
    pipeline = _pipeline(conn, backend, rate_limits=limits)

    assert pipeline.submit(_record("ai-1")).outcome == AckOutcome.QUEUED_LOCALLY
    assert pipeline.submit(_record("ai-2")).outcome == AckOutcome.QUEUED_LOCALLY
    assert len(backend.calls) == 1
    assert limits.is_limited("backend")
    assert count_pending_submissions(conn) == 2

    clock[0] += 61_000
    ack = pipeline.submit(_record("ai-3"))
    assert ack.outcome == AckOutcome.SUBMITTED
    assert len(backend.calls) == 2
    assert not limits.is_limited("backend")
    assert limits.window("backend").count == 0


def _queue(conn, record_id="ai-1"):
    backend = FakeBackend(script={endpoint: [TransportError("down")] * 3 for endpoint in [PRIMARY, *ALTERNATES]})
    _pipeline(conn, backend).submit(_record(record_id))
    reschedule_pending_submission(
        conn,
        record_id,
        retry_count=0,
        next_retry_at="2000-01-01T00:00:00+00:00",
        error="down",
    )


def test_reconcile_skips_records_not_yet_due(conn):
    backend = FakeBackend(script={endpoint: [TransportError("down")] * 3 for endpoint in [PRIMARY, *ALTERNATES]})
    _pipeline(conn, backend).submit(_record())
    summary = _pipeline(conn, FakeBackend()).reconcile_pending()
    assert summary == {"processed": 0, "succeeded": 0, "failed": 0, "remaining": 1}


def test_reconcile_delivers_due_records(conn):
    _queue(conn)
    backend = FakeBackend()
    summary = _pipeline(conn, backend).reconcile_pending()
    assert summary == {"processed": 1, "succeeded": 1, "failed": 0, "remaining": 0}
    assert backend.endpoints == [PRIMARY]


def test_reconcile_failure_reschedules_with_backoff(conn):
    _queue(conn)
    backend = FakeBackend(default=None, script={endpoint: [TransportError("still down")] * 3 for endpoint in [PRIMARY, *ALTERNATES]})
    summary = _pipeline(conn, backend).reconcile_pending()
    assert summary == {"processed": 1, "succeeded": 0, "failed": 1, "remaining": 1}

    [pending] = list_pending_submissions(conn, status="pending")
    assert pending.retry_count == 1
    assert pending.last_error == "still down"
    assert pending.next_retry_at > "2000-01-01T00:00:00+00:00"
    assert list_pending_submissions(conn, status="pending", due_before="2000-01-02T00:00:00+00:00") == []


def test_reconcile_rejection_moves_record_out_of_queue(conn):
    _queue(conn)
    backend = FakeBackend(default=_failure(BackendErrorKind.NOT_FOUND))
    summary = _pipeline(conn, backend).reconcile_pending()
    assert summary["failed"] == 1
    assert summary["remaining"] == 0
    [kept] = list_pending_submissions(conn, status="rejected")
    assert kept.retry_count == 1


def test_reconcile_system_error_stays_pending(conn):
    _queue(conn)
    backend = FakeBackend(default=_failure(BackendErrorKind.SYSTEM_ERROR, "canister trapped"))
    summary = _pipeline(conn, backend).reconcile_pending()
    assert summary == {"processed": 1, "succeeded": 0, "failed": 1, "remaining": 1}
    [pending] = list_pending_submissions(conn, status="pending")
    assert pending.retry_count == 1
    assert "SystemError" in pending.last_error
    assert list_pending_submissions(conn, status="rejected") == []


def test_reconcile_waits_out_rate_limit_window(conn):
    _queue(conn, "ai-1")
    _queue(conn, "ai-2")
    clock = [1_000_000]
    limits = RateLimitCoordinator(conn, clock=lambda: clock[0])
    limits.record_rate_limited("backend", 60)
    backend = FakeBackend()
    pipeline = _pipeline(conn, backend, rate_limits=limits)

    summary = pipeline.reconcile_pending()
    assert summary == {"processed": 0, "succeeded": 0, "failed": 0, "remaining": 2}
    assert backend.calls == []

    clock[0] += 61_000
    summary = pipeline.reconcile_pending()
    assert summary == {"processed": 2, "succeeded": 2, "failed": 0, "remaining": 0}


def test_reconcile_stops_after_rate_limited_record(conn):
    _queue(conn, "ai-1")
    _queue(conn, "ai-2")
    limits = RateLimitCoordinator(conn, clock=lambda: 1_000_000)
    backend = FakeBackend(script={PRIMARY: [RateLimitedError("slow down", retry_after_seconds=60)]})
    summary = _pipeline(conn, backend, rate_limits=limits).reconcile_pending()
    assert summary == {"processed": 1, "succeeded": 0, "failed": 1, "remaining": 2}
    assert len(backend.calls) == 1
    assert limits.is_limited("backend")
