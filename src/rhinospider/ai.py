from __future__ import annotations

import json
import logging
import os
import urllib.request
from typing import Any

import jsonschema

from .utils import log_event

SUMMARY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["summary", "keywords", "category", "sentiment"],
    "properties": {
        "summary": {"type": "string"},
        "keywords": {"type": "array", "items": {"type": "string"}},
        "category": {"type": "string"},
        "sentiment": {"type": "string", "enum": ["positive", "negative", "neutral"]},
    },
}

MAX_INPUT_CHARS = 4000


class SummarizerError(RuntimeError):
    pass


def ai_configured() -> bool:
    return bool(os.environ.get("RS_AI_BASE_URL", "").strip() and os.environ.get("RS_AI_API_KEY", "").strip())


def summarize(text: str, *, logger: logging.Logger | None = None) -> dict[str, Any]:
    logger = logger or logging.getLogger("rhinospider.ai")
    base_url = os.environ.get("RS_AI_BASE_URL", "").strip()
    api_key = os.environ.get("RS_AI_API_KEY", "").strip()
    model = os.environ.get("RS_AI_MODEL", "gpt-3.5-turbo").strip()
    timeout = float(os.environ.get("RS_AI_TIMEOUT_SECONDS", "30"))
    if not base_url:
        raise SummarizerError("RS_AI_BASE_URL not set")
    if not api_key:
        raise SummarizerError("RS_AI_API_KEY not set")
    endpoint = f"{base_url.rstrip('/')}/chat/completions"

    system = (
        "You analyze scraped web articles. "
        "Return JSON with keys: summary (max 3 sentences), keywords (up to 10), "
        "category, sentiment (positive, negative or neutral)."
    )
    payload = {
        "model": model,
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": text[:MAX_INPUT_CHARS] + "\n\nRespond with JSON only."},
        ],
        "temperature": 0.2,
        "max_tokens": 400,
    }
    request = urllib.request.Request(
        endpoint,
        data=json.dumps(payload).encode("utf-8"),
        method="POST",
        headers={
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        },
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.WARNING, "ai_call_failed", error=str(exc))
        raise SummarizerError(f"summarizer request failed: {exc}") from exc
    try:
        content_text = json.loads(raw)["choices"][0]["message"]["content"]
        parsed = json.loads(content_text)
    except (KeyError, IndexError, TypeError, json.JSONDecodeError) as exc:
        raise SummarizerError("summarizer returned an unexpected payload") from exc
    return validate_summary(parsed)


def validate_summary(payload: Any) -> dict[str, Any]:
    try:
        jsonschema.validate(payload, SUMMARY_SCHEMA)
    except jsonschema.ValidationError as exc:
        raise SummarizerError(f"summary failed validation: {exc.message}") from exc
    return {
        "summary": payload["summary"],
        "keywords": list(payload["keywords"])[:10],
        "category": payload["category"],
        "sentiment": payload["sentiment"],
    }
