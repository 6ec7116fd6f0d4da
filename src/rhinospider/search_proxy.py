from __future__ import annotations

import json
import logging
import time
from typing import Any

from .fetch import Fetcher, RateLimitedError, TransportError, fetch_url, parse_retry_after, post_json
from .models import Topic, UrlCandidate
from .topics import topic_search_payload
from .utils import log_event

HEALTH_TTL_SECONDS = 60


class SearchProxyError(RuntimeError):
    pass


class SearchProxyClient:
    def __init__(
        self,
        base_url: str,
        *,
        extension_id: str,
        timeout_s: int = 30,
        user_agent: str = "RhinoSpider/1.0",
        fetch: Fetcher = fetch_url,
        logger: logging.Logger | None = None,
    ) -> None:
        if not base_url:
            raise SearchProxyError("search proxy url not set")
        self._base_url = base_url.rstrip("/")
        self._extension_id = extension_id
        self._timeout = timeout_s
        self._user_agent = user_agent
        self._fetch = fetch
        self._logger = logger or logging.getLogger("rhinospider.search_proxy")
        self._healthy_until = 0.0

    def health(self) -> bool:
        if time.monotonic() < self._healthy_until:
            return True
        try:
            response = self._fetch(
                self._base_url + "/api/health",
                headers={"User-Agent": self._user_agent, "Accept": "application/json"},
                timeout=min(self._timeout, 10),
            )
            healthy = response.ok and (response.json() or {}).get("status") == "ok"
        except (TransportError, ValueError, AttributeError) as exc:
            log_event(self._logger, logging.WARNING, "search_proxy_unhealthy", error=str(exc))
            return False
        if healthy:
            self._healthy_until = time.monotonic() + HEALTH_TTL_SECONDS
        return healthy

    def search(
        self,
        topics: list[Topic],
        *,
        batch_size: int,
        reset: bool = False,
    ) -> dict[str, list[UrlCandidate]]:
        payload = {
            "extensionId": self._extension_id,
            "topics": [topic_search_payload(topic) for topic in topics],
            "batchSize": batch_size,
            "reset": reset,
        }
        try:
            response = post_json(
                self._base_url + "/api/search",
                payload,
                headers={"User-Agent": self._user_agent},
                timeout=self._timeout,
                fetch=self._fetch,
            )
        except TransportError as exc:
            raise SearchProxyError(f"search proxy connection error: {exc}") from exc
        if response.status == 429:
            raise RateLimitedError(
                "search proxy rate limited",
                retry_after_seconds=parse_retry_after(response.header("retry-after")),
            )
        if not response.ok:
            raise SearchProxyError(f"search proxy HTTP error {response.status}")
        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            raise SearchProxyError("search proxy returned invalid JSON") from exc
        return _decode_urls(data)


def _decode_urls(data: Any) -> dict[str, list[UrlCandidate]]:
    if not isinstance(data, dict) or not isinstance(data.get("urls"), dict):
        raise SearchProxyError("search proxy response missing urls")
    results: dict[str, list[UrlCandidate]] = {}
    for topic_id, items in data["urls"].items():
        candidates = []
        for item in items or []:
            if isinstance(item, str):
                candidates.append(UrlCandidate(url=item))
            elif isinstance(item, dict) and item.get("url"):
                candidates.append(
                    UrlCandidate(
                        url=str(item["url"]),
                        title=item.get("title"),
                        description=item.get("snippet") or item.get("description"),
                    )
                )
        results[str(topic_id)] = candidates
    return results
