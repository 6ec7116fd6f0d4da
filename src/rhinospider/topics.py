from __future__ import annotations

from typing import Any

from .models import ContentIdentifiers, Topic

_LIST_FIELDS = {
    "sample_article_urls": "sampleArticleUrls",
    "url_patterns": "urlPatterns",
    "article_url_patterns": "articleUrlPatterns",
    "exclude_patterns": "excludePatterns",
    "pagination_patterns": "paginationPatterns",
    "keywords": "keywords",
    "required_keywords": "requiredKeywords",
    "exclude_keywords": "excludeKeywords",
    "preferred_domains": "preferredDomains",
    "exclude_domains": "excludeDomains",
}


class TopicDecodeError(ValueError):
    pass


def unwrap_optional(value: Any) -> list[Any]:
    """Return the list behind a candid optional wrapped zero, one or two times.

    ``None``, ``[]`` and ``[[]]`` decode to ``[]``; ``["a"]``, ``[["a"]]`` and
    ``[[["a"]]]`` decode to ``["a"]``.
    """
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise TopicDecodeError(f"expected list, got {type(value).__name__}")
    current = list(value)
    for _ in range(2):
        if len(current) == 1 and isinstance(current[0], (list, tuple)):
            current = list(current[0])
        else:
            break
    return current


def unwrap_optional_scalar(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        if not value:
            return None
        return unwrap_optional_scalar(value[0])
    return value


def _string_list(raw: dict[str, Any], key: str) -> list[str]:
    return [str(item) for item in unwrap_optional(raw.get(key)) if item is not None and str(item).strip()]


def _decode_status(value: Any) -> str:
    value = unwrap_optional_scalar(value)
    if isinstance(value, dict) and value:
        value = next(iter(value))
    if not value:
        return "active"
    return str(value).lower()


def _decode_int(value: Any, default: int | None) -> int | None:
    value = unwrap_optional_scalar(value)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _decode_identifiers(value: Any) -> ContentIdentifiers:
    value = unwrap_optional_scalar(value)
    if not isinstance(value, dict):
        return ContentIdentifiers()
    return ContentIdentifiers(
        selectors=_string_list(value, "selectors"),
        keywords=_string_list(value, "keywords"),
    )


def topic_from_wire(raw: dict[str, Any]) -> Topic:
    if not isinstance(raw, dict):
        raise TopicDecodeError("topic must be an object")
    topic_id = str(raw.get("id") or "").strip()
    if not topic_id:
        raise TopicDecodeError("topic id is required")
    values: dict[str, Any] = {
        field: _string_list(raw, key) for field, key in _LIST_FIELDS.items()
    }
    if not values["preferred_domains"] and raw.get("domains"):
        values["preferred_domains"] = _string_list(raw, "domains")
    return Topic(
        id=topic_id,
        name=str(raw.get("name") or topic_id),
        status=_decode_status(raw.get("status")),
        description=str(unwrap_optional_scalar(raw.get("description")) or ""),
        priority=_decode_int(raw.get("priority"), 5) or 0,
        content_identifiers=_decode_identifiers(raw.get("contentIdentifiers")),
        max_urls_per_batch=_decode_int(raw.get("maxUrlsPerBatch"), None),
        created_at=_decode_int(raw.get("createdAt"), None),
        **values,
    )


def topic_to_wire(topic: Topic) -> dict[str, Any]:
    wire: dict[str, Any] = {
        "id": topic.id,
        "name": topic.name,
        "status": topic.status,
        "description": topic.description,
        "priority": topic.priority,
        "contentIdentifiers": {
            "selectors": list(topic.content_identifiers.selectors),
            "keywords": list(topic.content_identifiers.keywords),
        },
    }
    for field, key in _LIST_FIELDS.items():
        wire[key] = list(getattr(topic, field))
    if topic.max_urls_per_batch is not None:
        wire["maxUrlsPerBatch"] = topic.max_urls_per_batch
    if topic.created_at is not None:
        wire["createdAt"] = topic.created_at
    return wire


def decode_topics(raw: Any) -> list[Topic]:
    topics = []
    for item in unwrap_optional(raw):
        topics.append(topic_from_wire(item))
    return topics


def topic_search_payload(topic: Topic) -> dict[str, Any]:
    return {
        "id": topic.id,
        "name": topic.name,
        "description": topic.description,
        "urlPatterns": list(topic.url_patterns),
        "domains": list(topic.preferred_domains),
        "keywords": list(topic.keywords),
        "excludeKeywords": list(topic.exclude_keywords),
    }
