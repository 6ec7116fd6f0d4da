from __future__ import annotations

import logging
import math
import os
import sqlite3
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import ConfigError, bootstrap_runtime_config, get_state_db_path, load_runtime_config
from .discovery import UrlDiscoverer
from .fetch import fetch_url
from .history import ScrapeHistoryTracker
from .ratelimit import RateLimitCoordinator
from .storage import (
    DuplicateRecordError,
    count_scraped_data,
    delete_settings_with_prefix,
    get_setting,
    get_topic,
    init_db,
    insert_scraped_data,
    list_topics,
    set_setting,
)
from .topics import TopicDecodeError, topic_from_wire, topic_to_wire
from .urls import UrlValidationError, normalize_url, require_valid_url
from .utils import configure_logging, log_event

app = FastAPI(title="RhinoSpider Proxy API")

SERVED_KEY = "searchServed"
DEFAULT_SEARCH_LIMIT_PER_MINUTE = 30

_logger = logging.getLogger("rhinospider.proxy")
_search_windows: dict[str, deque[float]] = {}
_search_lock = threading.Lock()


def _require_password(request: Request) -> None:
    password = os.environ.get("RS_PROXY_PASSWORD")
    if not password:
        return
    header = request.headers.get("Authorization", "")
    if header != f"Bearer {password}":
        raise HTTPException(status_code=401, detail="unauthorized")


def _get_conn() -> sqlite3.Connection:
    conn = init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn


class PrincipalRequest(BaseModel):
    principalId: str | None = None


class ScrapedDataBody(BaseModel):
    id: str | None = None
    source: str | None = None
    status: str | None = None
    timestamp: int | None = None
    scraping_time: int | None = None


class SubmitRequest(BaseModel):
    principalId: str | None = None
    url: str | None = None
    content: str | None = None
    topicId: str | None = None
    deviceId: str | None = None
    scrapedData: ScrapedDataBody | None = None


class SearchRequest(BaseModel):
    extensionId: str | None = None
    topics: list[dict] = []
    batchSize: int = 10
    reset: bool = False


@app.get("/api/health")
def health() -> dict[str, object]:
    return {
        "status": "ok",
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.post("/api/topics", dependencies=[Depends(_require_password)])
def topics_list(payload: PrincipalRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        topics = list_topics(conn)
    except (sqlite3.Error, TopicDecodeError) as exc:
        log_event(_logger, logging.ERROR, "topics_list_failed", error=str(exc))
        return {"ok": []}
    finally:
        conn.close()
    return {"ok": [topic_to_wire(topic) for topic in topics]}


@app.post("/api/profile", dependencies=[Depends(_require_password)])
def profile(payload: PrincipalRequest) -> dict[str, object]:
    if not payload.principalId:
        raise HTTPException(status_code=400, detail="principalId is required")
    conn = _get_conn()
    try:
        submissions = count_scraped_data(conn, payload.principalId)
    finally:
        conn.close()
    return {"ok": {"principalId": payload.principalId, "submissions": submissions}}


def _submit(payload: SubmitRequest) -> JSONResponse:
    missing = [
        name
        for name in ("principalId", "url", "content", "topicId")
        if not getattr(payload, name)
    ]
    if missing:
        return JSONResponse(
            {"err": {"InvalidInput": f"missing {', '.join(missing)}"}},
            status_code=400,
        )
    try:
        require_valid_url(payload.url)
    except UrlValidationError as exc:
        return JSONResponse({"err": {"InvalidInput": str(exc)}}, status_code=400)
    extra = payload.scrapedData or ScrapedDataBody()
    submission_id = extra.id or f"{payload.topicId}-{uuid.uuid4().hex}"
    timestamp = extra.timestamp or int(time.time())
    data = {
        "id": submission_id,
        "url": payload.url,
        "topic": payload.topicId,
        "content": payload.content,
        "source": extra.source or "extension",
        "status": extra.status or "new",
        "client_id": payload.principalId,
        "device_id": payload.deviceId,
        "scraping_time": extra.scraping_time or 0,
        "timestamp": timestamp,
    }
    conn = _get_conn()
    try:
        if list_topics(conn) and get_topic(conn, str(payload.topicId)) is None:
            return JSONResponse({"err": {"NotFound": None}, "details": f"unknown topic {payload.topicId}"})
        insert_scraped_data(conn, data)
    except DuplicateRecordError:
        return JSONResponse({"err": {"AlreadyExists": None}})
    except sqlite3.Error as exc:
        log_event(_logger, logging.ERROR, "submit_store_failed", id=submission_id, error=str(exc))
        return JSONResponse({"err": {"SystemError": str(exc)}, "details": "storage failure"})
    finally:
        conn.close()
    log_event(
        _logger,
        logging.INFO,
        "submission_stored",
        id=submission_id,
        topic_id=payload.topicId,
        principal_id=payload.principalId,
    )
    return JSONResponse(
        {
            "ok": {
                "dataSubmitted": True,
                "url": payload.url,
                "topicId": payload.topicId,
                "submissionId": submission_id,
                "timestamp": timestamp,
                "result": {"ok": None},
            }
        }
    )


@app.post("/api/submit", dependencies=[Depends(_require_password)])
def submit(payload: SubmitRequest) -> JSONResponse:
    return _submit(payload)


@app.post("/api/consumer-submit", dependencies=[Depends(_require_password)])
def consumer_submit(payload: SubmitRequest) -> JSONResponse:
    return _submit(payload)


@app.post("/api/submit-scraped-content", dependencies=[Depends(_require_password)])
def submit_scraped_content(payload: SubmitRequest) -> JSONResponse:
    return _submit(payload)


def _search_limit() -> int:
    try:
        return max(1, int(os.environ.get("RS_SEARCH_RATE_LIMIT", DEFAULT_SEARCH_LIMIT_PER_MINUTE)))
    except ValueError:
        return DEFAULT_SEARCH_LIMIT_PER_MINUTE


def _check_search_rate(extension_id: str) -> int | None:
    now = time.monotonic()
    limit = _search_limit()
    with _search_lock:
        for key in list(_search_windows):
            stale = _search_windows[key]
            while stale and now - stale[0] >= 60:
                stale.popleft()
            if not stale:
                del _search_windows[key]
        window = _search_windows.setdefault(extension_id, deque())
        if len(window) >= limit:
            return max(1, math.ceil(60 - (now - window[0])))
        window.append(now)
    return None


def reset_search_limits() -> None:
    with _search_lock:
        _search_windows.clear()


@app.post("/api/search")
def search(payload: SearchRequest, request: Request) -> JSONResponse:
    if not payload.extensionId:
        return JSONResponse({"error": "extensionId is required"}, status_code=400)
    retry_after = _check_search_rate(payload.extensionId)
    if retry_after is not None:
        log_event(_logger, logging.WARNING, "search_rate_limited", extension_id=payload.extensionId)
        return JSONResponse(
            {"error": "rate limited"},
            status_code=429,
            headers={"Retry-After": str(retry_after)},
        )
    conn = _get_conn()
    try:
        try:
            config = load_runtime_config(conn)
        except ConfigError as exc:
            return JSONResponse({"error": str(exc)}, status_code=500)
        if payload.reset:
            delete_settings_with_prefix(conn, f"{SERVED_KEY}.{payload.extensionId}.")
        history = ScrapeHistoryTracker(conn, max_urls=config.history.max_scraped_urls)
        discoverer = UrlDiscoverer(
            conn,
            config,
            history=history,
            rate_limits=RateLimitCoordinator(
                conn,
                base_backoff_ms=config.rate_limit.base_backoff_ms,
                max_backoff_ms=config.rate_limit.max_backoff_ms,
            ),
            search_proxy=None,
            fetch=getattr(request.app.state, "fetch", fetch_url),
        )
        batch_size = max(1, min(payload.batchSize, 50))
        urls: dict[str, list[dict[str, object]]] = {}
        for raw_topic in payload.topics:
            try:
                topic = topic_from_wire(raw_topic)
            except TopicDecodeError:
                continue
            key = f"{SERVED_KEY}.{payload.extensionId}.{topic.id}"
            served = get_setting(conn, key, [])
            served_list = [str(item) for item in served] if isinstance(served, list) else []
            records = discoverer.discover(
                topic,
                batch_size,
                include_cached=False,
                exclude={normalize_url(url) for url in served_list},
            )
            served_list.extend(record.url for record in records)
            set_setting(conn, key, served_list[-500:])
            urls[topic.id] = [
                {
                    "url": record.url,
                    "title": record.title,
                    "source": record.source,
                    "discoveredAt": record.discovered_at,
                }
                for record in records
            ]
    finally:
        conn.close()
    log_event(
        _logger,
        logging.INFO,
        "search_served",
        extension_id=payload.extensionId,
        topics=len(urls),
        urls=sum(len(items) for items in urls.values()),
    )
    return JSONResponse({"urls": urls})


def _setup_logging() -> None:
    configure_logging("rhinospider.proxy")


_setup_logging()
