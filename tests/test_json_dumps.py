from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from uuid import UUID

import json
from pydantic import BaseModel

from rhinospider.models import AckOutcome, RateLimitWindow, ScrapedUrlRecord
from rhinospider.storage import get_setting, init_db, set_setting
from rhinospider.utils import json_dumps


class Color(Enum):
    RED = "red"


@dataclass
class Payload:
    value: str


class PayloadModel(BaseModel):
    name: str


def test_json_dumps_handles_supported_types():
    payload = {
        "dataclass": Payload(value="ok"),
        "window": RateLimitWindow(started_at_ms=1, backoff_ms=5000, next_attempt_at_ms=6, count=1),
        "enum": Color.RED,
        "outcome": AckOutcome.QUEUED_LOCALLY,
        "datetime": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "date": date(2025, 1, 2),
        "path": Path("/tmp/rhinospider"),
        "uuid": UUID("12345678-1234-5678-1234-567812345678"),
        "model": PayloadModel(name="example"),
        "set": {"a", "b"},
        "tuple": ("x", "y"),
    }
    encoded = json_dumps(payload)
    decoded = json.loads(encoded)
    assert decoded["dataclass"]["value"] == "ok"
    assert decoded["window"]["backoff_ms"] == 5000
    assert decoded["enum"] == "red"
    assert decoded["outcome"] == "queued_locally"
    assert decoded["datetime"].startswith("2025-01-01T00:00:00")
    assert decoded["date"] == "2025-01-02"
    assert decoded["path"] == "/tmp/rhinospider"
    assert decoded["uuid"] == "12345678-1234-5678-1234-567812345678"
    assert decoded["model"]["name"] == "example"
    assert sorted(decoded["set"]) == ["a", "b"]
    assert decoded["tuple"] == ["x", "y"]


def test_settings_store_dataclass_lists(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    records = [
        ScrapedUrlRecord(
            url="https://news.acme.org/a1",
            source="sample",
            topic_id="ai",
            discovered_at="2025-01-01T00:00:00+00:00",
        )
    ]
    set_setting(conn, "prefetchedUrls.ai", records)
    stored = get_setting(conn, "prefetchedUrls.ai", [])
    assert stored == [
        {
            "url": "https://news.acme.org/a1",
            "source": "sample",
            "topic_id": "ai",
            "discovered_at": "2025-01-01T00:00:00+00:00",
            "title": None,
        }
    ]
