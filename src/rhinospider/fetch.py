from __future__ import annotations

import json
import socket
import time
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .retry import retry_call


class TransportError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class RateLimitedError(TransportError):
    def __init__(self, message: str, *, retry_after_seconds: float | None = None) -> None:
        super().__init__(message, status=429)
        self.retry_after_seconds = retry_after_seconds


@dataclass(frozen=True)
class FetchResponse:
    url: str
    status: int
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.text())

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


Fetcher = Callable[..., FetchResponse]


def fetch_url(
    url: str,
    *,
    method: str = "GET",
    headers: dict[str, str] | None = None,
    data: bytes | None = None,
    timeout: float = 20,
    max_retries: int = 0,
    backoff_seconds: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> FetchResponse:
    """Perform one HTTP request. Non-2xx statuses are returned, not raised.

    Connection failures and timeouts are retried up to ``max_retries`` times
    and then raised as ``TransportError``.
    """

    def _attempt(_: int) -> FetchResponse:
        started = time.monotonic()
        request = Request(url, data=data, method=method, headers=headers or {})
        try:
            with urlopen(request, timeout=timeout) as response:
                status = response.getcode()
                body = response.read()
                response_headers = {k.lower(): v for k, v in response.headers.items()}
        except HTTPError as exc:
            body = exc.read() if exc.fp is not None else b""
            response_headers = {k.lower(): v for k, v in (exc.headers or {}).items()}
            return FetchResponse(
                url=url,
                status=exc.code,
                body=body,
                headers=response_headers,
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )
        except (URLError, socket.timeout, TimeoutError, ConnectionError) as exc:
            raise TransportError(f"{method} {url} failed: {exc}") from exc
        return FetchResponse(
            url=url,
            status=status,
            body=body,
            headers=response_headers,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )

    return retry_call(
        _attempt,
        max_attempts=max_retries + 1,
        base_delay=backoff_seconds,
        is_retryable=lambda exc: isinstance(exc, TransportError),
        sleep=sleep,
    )


def post_json(
    url: str,
    payload: dict[str, Any],
    *,
    headers: dict[str, str] | None = None,
    timeout: float = 30,
    fetch: Fetcher = fetch_url,
) -> FetchResponse:
    merged = {"Content-Type": "application/json", "Accept": "application/json"}
    merged.update(headers or {})
    return fetch(
        url,
        method="POST",
        headers=merged,
        data=json.dumps(payload).encode("utf-8"),
        timeout=timeout,
    )


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if seconds < 0:
        return None
    return seconds
