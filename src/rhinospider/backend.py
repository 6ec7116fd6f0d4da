from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from .fetch import Fetcher, FetchResponse, RateLimitedError, TransportError, fetch_url, parse_retry_after, post_json
from .models import SubmissionRecord, Topic
from .topics import TopicDecodeError, decode_topics
from .utils import log_event, truncate

T = TypeVar("T")


class BackendErrorKind(str, Enum):
    NOT_AUTHORIZED = "NotAuthorized"
    NOT_FOUND = "NotFound"
    INVALID_INPUT = "InvalidInput"
    ALREADY_EXISTS = "AlreadyExists"
    SYSTEM_ERROR = "SystemError"


@dataclass(frozen=True)
class BackendError:
    kind: BackendErrorKind
    message: str = ""


@dataclass(frozen=True)
class BackendResult(Generic[T]):
    value: T | None = None
    error: BackendError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "BackendResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: BackendErrorKind, message: str = "") -> "BackendResult[T]":
        return cls(error=BackendError(kind, message))


def decode_error(raw: Any) -> BackendError:
    if isinstance(raw, dict) and raw:
        name, detail = next(iter(raw.items()))
        for kind in BackendErrorKind:
            if kind.value.lower() == str(name).lower():
                return BackendError(kind, "" if detail is None else str(detail))
        return BackendError(BackendErrorKind.SYSTEM_ERROR, f"{name}: {detail}")
    if isinstance(raw, str):
        for kind in BackendErrorKind:
            if kind.value.lower() in raw.lower():
                return BackendError(kind, raw)
        return BackendError(BackendErrorKind.SYSTEM_ERROR, raw)
    return BackendError(BackendErrorKind.SYSTEM_ERROR, json.dumps(raw, default=str))


def decode_result(raw: Any) -> BackendResult[Any]:
    """Decode ``{ok: ...}`` / ``{err: ...}`` replies, including a nested ``ok.result.err``."""
    if not isinstance(raw, dict):
        return BackendResult.failure(BackendErrorKind.SYSTEM_ERROR, "malformed backend response")
    if "err" in raw and raw["err"] is not None:
        return BackendResult(error=decode_error(raw["err"]))
    if "error" in raw and raw["error"]:
        return BackendResult(error=decode_error(raw["error"]))
    if "ok" not in raw:
        return BackendResult.failure(BackendErrorKind.SYSTEM_ERROR, "response has neither ok nor err")
    value = raw["ok"]
    if isinstance(value, dict):
        nested = value.get("result")
        if isinstance(nested, dict) and nested.get("err") is not None:
            return BackendResult(error=decode_error(nested["err"]))
    return BackendResult.success(value)


def is_auth_lag(result: BackendResult[Any]) -> bool:
    return result.error is not None and result.error.kind == BackendErrorKind.NOT_AUTHORIZED


def scraped_data_payload(record: SubmissionRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "url": record.url,
        "topic": record.topic_id,
        "content": record.content,
        "source": record.source,
        "timestamp": int(record.timestamp),
        "client_id": record.principal_id,
        "status": record.status,
        "scraping_time": int(record.scraping_time_ms),
    }


class ProxyBackendClient:
    """RPC boundary reached through the IC proxy HTTP API."""

    def __init__(
        self,
        base_url: str,
        *,
        password: str | None,
        principal_id: str,
        device_id: str,
        timeout_s: int = 30,
        fetch: Fetcher = fetch_url,
        logger: logging.Logger | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._password = password
        self.principal_id = principal_id
        self.device_id = device_id
        self._timeout = timeout_s
        self._fetch = fetch
        self._logger = logger or logging.getLogger("rhinospider.backend")

    def _headers(self) -> dict[str, str]:
        headers = {"X-Device-Id": self.device_id}
        if self._password:
            headers["Authorization"] = f"Bearer {self._password}"
        return headers

    def _post(self, path: str, payload: dict[str, Any]) -> FetchResponse:
        response = post_json(
            self._base_url + path,
            payload,
            headers=self._headers(),
            timeout=self._timeout,
            fetch=self._fetch,
        )
        if response.status == 429:
            raise RateLimitedError(
                f"{path} rate limited",
                retry_after_seconds=parse_retry_after(response.header("retry-after")),
            )
        if response.status in (401, 403):
            raise TransportError(f"proxy rejected credentials on {path} ({response.status})", status=response.status)
        if response.status >= 500 or response.status == 404:
            raise TransportError(f"{path} returned HTTP {response.status}", status=response.status)
        return response

    def _decode(self, path: str, response: FetchResponse) -> BackendResult[Any]:
        try:
            data = response.json()
        except json.JSONDecodeError:
            if response.status >= 400:
                return BackendResult.failure(
                    BackendErrorKind.INVALID_INPUT, f"{path} returned HTTP {response.status}"
                )
            raise TransportError(f"{path} returned invalid JSON", status=response.status)
        if response.status >= 400 and isinstance(data, dict) and "err" not in data:
            message = str(data.get("error") or data.get("detail") or response.status)
            return BackendResult.failure(BackendErrorKind.INVALID_INPUT, message)
        return decode_result(data)

    def health(self) -> bool:
        try:
            response = self._fetch(self._base_url + "/api/health", headers=self._headers(), timeout=10)
            return response.ok and (response.json() or {}).get("status") == "ok"
        except (TransportError, ValueError, AttributeError) as exc:
            log_event(self._logger, logging.WARNING, "backend_health_failed", error=str(exc))
            return False

    def get_topics(self) -> BackendResult[list[Topic]]:
        response = self._post("/api/topics", {"principalId": self.principal_id})
        result = self._decode("/api/topics", response)
        if not result.ok:
            return result
        try:
            return BackendResult.success(decode_topics(result.value))
        except TopicDecodeError as exc:
            return BackendResult.failure(BackendErrorKind.SYSTEM_ERROR, f"undecodable topics: {exc}")

    def get_profile(self) -> BackendResult[dict[str, Any]]:
        response = self._post("/api/profile", {"principalId": self.principal_id})
        return self._decode("/api/profile", response)

    def submit_scraped_data(
        self,
        record: SubmissionRecord,
        *,
        endpoint: str = "/api/submit",
        max_content_chars: int | None = None,
    ) -> BackendResult[Any]:
        data = scraped_data_payload(record)
        content = record.content
        if max_content_chars is not None:
            content = truncate(content, max_content_chars)
        payload = {
            "principalId": self.principal_id,
            "url": record.url,
            "content": content,
            "topicId": record.topic_id,
            "deviceId": record.device_id,
            "scrapedData": dict(data, content=content),
        }
        response = self._post(endpoint, payload)
        return self._decode(endpoint, response)
