from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from .models import RateLimitWindow
from .storage import get_setting, set_setting
from .utils import log_event, now_ms

RATE_LIMIT_KEY = "rateLimitInfo"

_LOCK = threading.Lock()


class RateLimitCoordinator:
    def __init__(
        self,
        conn: Any,
        *,
        base_backoff_ms: int = 5000,
        max_backoff_ms: int = 120000,
        clock: Callable[[], int] = now_ms,
        logger: logging.Logger | None = None,
    ) -> None:
        self._conn = conn
        self._base = base_backoff_ms
        self._max = max_backoff_ms
        self._clock = clock
        self._logger = logger or logging.getLogger("rhinospider.ratelimit")

    def window(self, source: str) -> RateLimitWindow | None:
        raw = get_setting(self._conn, f"{RATE_LIMIT_KEY}.{source}", None)
        if not isinstance(raw, dict):
            return None
        try:
            return RateLimitWindow(
                started_at_ms=int(raw["started_at_ms"]),
                backoff_ms=int(raw["backoff_ms"]),
                next_attempt_at_ms=int(raw["next_attempt_at_ms"]),
                count=int(raw["count"]),
            )
        except (KeyError, TypeError, ValueError):
            return None

    def is_limited(self, source: str) -> bool:
        window = self.window(source)
        if window is None or window.count == 0:
            return False
        return self._clock() < window.next_attempt_at_ms

    def remaining_ms(self, source: str) -> int:
        window = self.window(source)
        if window is None:
            return 0
        return max(0, window.next_attempt_at_ms - self._clock())

    def record_rate_limited(self, source: str, retry_after_seconds: float | None = None) -> RateLimitWindow:
        with _LOCK:
            now = self._clock()
            previous = self.window(source)
            count = (previous.count if previous else 0) + 1
            backoff = min(self._base * (2 ** (count - 1)), self._max)
            if retry_after_seconds is not None:
                wait_ms = int(retry_after_seconds * 1000)
            else:
                wait_ms = backoff
            started = previous.started_at_ms if previous and previous.count else now
            window = RateLimitWindow(
                started_at_ms=started,
                backoff_ms=backoff,
                next_attempt_at_ms=now + wait_ms,
                count=count,
            )
            set_setting(self._conn, f"{RATE_LIMIT_KEY}.{source}", window)
        log_event(
            self._logger,
            logging.WARNING,
            "rate_limited",
            source=source,
            count=count,
            backoff_ms=backoff,
            wait_ms=wait_ms,
            retry_after=retry_after_seconds,
        )
        return window

    def record_success(self, source: str) -> None:
        with _LOCK:
            previous = self.window(source)
            if previous is None or previous.count == 0:
                return
            set_setting(
                self._conn,
                f"{RATE_LIMIT_KEY}.{source}",
                RateLimitWindow(
                    started_at_ms=0,
                    backoff_ms=self._base,
                    next_attempt_at_ms=0,
                    count=0,
                ),
            )
        log_event(self._logger, logging.INFO, "rate_limit_reset", source=source)
