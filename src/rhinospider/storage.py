from __future__ import annotations

import json
import sqlite3
import uuid
from typing import Any

from .db import connect_db
from .models import PendingSubmission, SubmissionRecord, Topic
from .topics import topic_from_wire, topic_to_wire
from .utils import json_dumps, utc_now_iso, utc_now_iso_offset


class DuplicateRecordError(RuntimeError):
    pass


def init_db(path: str | None = None) -> sqlite3.Connection:
    if path is None:
        from .config import get_state_db_path

        path = get_state_db_path()
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


DEVICE_ID_KEY = "deviceId"


def get_or_create_device_id(conn: Any) -> str:
    value = get_setting(conn, DEVICE_ID_KEY, None)
    if isinstance(value, str) and value:
        return value
    device_id = f"ext_{uuid.uuid4().hex[:16]}"
    set_setting(conn, DEVICE_ID_KEY, device_id)
    return device_id


def delete_settings_with_prefix(conn: Any, prefix: str) -> int:
    cursor = conn.execute("DELETE FROM settings WHERE key LIKE ?", (prefix + "%",))
    conn.commit()
    return cursor.rowcount


def enqueue_pending_submission(
    conn: Any,
    record: SubmissionRecord,
    *,
    error: str | None,
    status: str = "pending",
    delay_seconds: int = 60,
) -> None:
    now = utc_now_iso()
    next_retry = utc_now_iso_offset(seconds=delay_seconds)
    conn.execute(
        """
        INSERT INTO pending_submissions
            (id, record_json, status, retry_count, queued_at, next_retry_at, last_error, updated_at)
        VALUES (?, ?, ?, 0, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            record_json = excluded.record_json,
            status = excluded.status,
            next_retry_at = excluded.next_retry_at,
            last_error = excluded.last_error,
            updated_at = excluded.updated_at
        """,
        (
            record.id,
            json_dumps(record),
            status,
            now,
            next_retry,
            error,
            now,
        ),
    )
    conn.commit()


def list_pending_submissions(
    conn: Any,
    *,
    status: str | None = None,
    due_before: str | None = None,
    limit: int = 100,
) -> list[PendingSubmission]:
    clauses = []
    params: list[object] = []
    if status:
        clauses.append("status = ?")
        params.append(status)
    if due_before:
        clauses.append("next_retry_at <= ?")
        params.append(due_before)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    rows = conn.execute(
        f"""
        SELECT id, record_json, status, retry_count, queued_at, next_retry_at, last_error
        FROM pending_submissions
        {where}
        ORDER BY next_retry_at ASC, queued_at ASC
        LIMIT ?
        """,
        params,
    ).fetchall()
    return [_row_to_pending(row) for row in rows]


def count_pending_submissions(conn: Any, status: str | None = "pending") -> int:
    if status is None:
        row = conn.execute("SELECT COUNT(*) FROM pending_submissions").fetchone()
    else:
        row = conn.execute(
            "SELECT COUNT(*) FROM pending_submissions WHERE status = ?", (status,)
        ).fetchone()
    return int(row[0]) if row else 0


def delete_pending_submission(conn: Any, record_id: str) -> None:
    conn.execute("DELETE FROM pending_submissions WHERE id = ?", (record_id,))
    conn.commit()


def reschedule_pending_submission(
    conn: Any,
    record_id: str,
    *,
    retry_count: int,
    next_retry_at: str,
    error: str | None,
    status: str = "pending",
) -> None:
    conn.execute(
        """
        UPDATE pending_submissions
        SET retry_count = ?, next_retry_at = ?, last_error = ?, status = ?, updated_at = ?
        WHERE id = ?
        """,
        (retry_count, next_retry_at, error, status, utc_now_iso(), record_id),
    )
    conn.commit()


def _row_to_pending(row: tuple) -> PendingSubmission:
    record = SubmissionRecord(**json.loads(row[1]))
    return PendingSubmission(
        id=row[0],
        record=record,
        status=row[2],
        retry_count=int(row[3]),
        queued_at=row[4],
        next_retry_at=row[5],
        last_error=row[6],
    )


def upsert_topic(conn: Any, topic: Topic) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO topics (id, name, status, topic_json, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            status = excluded.status,
            topic_json = excluded.topic_json,
            updated_at = excluded.updated_at
        """,
        (topic.id, topic.name, topic.status, json_dumps(topic_to_wire(topic)), now, now),
    )
    conn.commit()


def list_topics(conn: Any, *, active_only: bool = False) -> list[Topic]:
    if active_only:
        rows = conn.execute(
            "SELECT topic_json FROM topics WHERE status = 'active' ORDER BY id"
        ).fetchall()
    else:
        rows = conn.execute("SELECT topic_json FROM topics ORDER BY id").fetchall()
    return [topic_from_wire(json.loads(row[0])) for row in rows]


def get_topic(conn: Any, topic_id: str) -> Topic | None:
    row = conn.execute("SELECT topic_json FROM topics WHERE id = ?", (topic_id,)).fetchone()
    if not row:
        return None
    return topic_from_wire(json.loads(row[0]))


def insert_scraped_data(conn: Any, data: dict[str, Any]) -> None:
    try:
        conn.execute(
            """
            INSERT INTO scraped_data
                (id, url, topic_id, content, source, status, client_id, device_id,
                 scraping_time, timestamp, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                data["id"],
                data["url"],
                data["topic"],
                data["content"],
                data.get("source") or "extension",
                data.get("status") or "new",
                data["client_id"],
                data.get("device_id"),
                int(data.get("scraping_time") or 0),
                int(data["timestamp"]),
                utc_now_iso(),
            ),
        )
    except sqlite3.IntegrityError as exc:
        conn.rollback()
        raise DuplicateRecordError(data["id"]) from exc
    conn.commit()


def count_scraped_data(conn: Any, client_id: str | None = None) -> int:
    if client_id:
        row = conn.execute(
            "SELECT COUNT(*) FROM scraped_data WHERE client_id = ?", (client_id,)
        ).fetchone()
    else:
        row = conn.execute("SELECT COUNT(*) FROM scraped_data").fetchone()
    return int(row[0]) if row else 0
