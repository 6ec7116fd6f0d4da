from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .models import Topic
from .storage import get_setting, set_setting
from .topics import TopicDecodeError, topic_from_wire


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    user_agent: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    max_retries: int
    backoff_seconds: int


@dataclass(frozen=True)
class BackendConfig:
    proxy_url: str
    timeout_seconds: int
    primary_endpoint: str
    alternate_endpoints: list[str]


@dataclass(frozen=True)
class SearchProxyConfig:
    enabled: bool
    url: str
    timeout_seconds: int
    batch_size: int


@dataclass(frozen=True)
class DiscoveryConfig:
    batch_size: int
    feed_timeout_seconds: int
    feed_max_retries: int
    feed_paths: list[str]
    sitemap_paths: list[str]
    sitemap_max_urls: int
    search_engines: list[str]
    search_timeout_seconds: int


@dataclass(frozen=True)
class CacheConfig:
    low_water_mark: int
    max_per_topic: int
    prefetch_per_topic: int
    recent_window: int


@dataclass(frozen=True)
class HistoryConfig:
    max_scraped_urls: int


@dataclass(frozen=True)
class RateLimitConfig:
    base_backoff_ms: int
    max_backoff_ms: int


@dataclass(frozen=True)
class SubmissionConfig:
    max_attempts: int
    base_delay_ms: int
    max_content_chars: int
    reconcile_batch_size: int
    reconcile_base_delay_seconds: int
    reconcile_max_delay_seconds: int


@dataclass(frozen=True)
class ScrapingConfig:
    urls_per_topic: int
    concurrency: int
    delay_between_urls_seconds: float
    loop_sleep_seconds: int
    ai_enabled: bool


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    http: HttpConfig
    backend: BackendConfig
    search_proxy: SearchProxyConfig
    discovery: DiscoveryConfig
    cache: CacheConfig
    history: HistoryConfig
    rate_limit: RateLimitConfig
    submission: SubmissionConfig
    scraping: ScrapingConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "RhinoSpider",
        "user_agent": "Mozilla/5.0 (compatible; RhinoSpider/1.0)",
    },
    "paths": {
        "data_dir": "/data",
        "state_db": "/data/state.sqlite3",
    },
    "http": {
        "timeout_seconds": 20,
        "max_retries": 1,
        "backoff_seconds": 2,
    },
    "backend": {
        "proxy_url": "https://ic-proxy.rhinospider.com",
        "timeout_seconds": 30,
        "primary_endpoint": "/api/consumer-submit",
        "alternate_endpoints": [
            "/api/submit",
            "/api/submit-scraped-content",
        ],
    },
    "search_proxy": {
        "enabled": True,
        "url": "https://search-proxy.rhinospider.com",
        "timeout_seconds": 30,
        "batch_size": 15,
    },
    "discovery": {
        "batch_size": 5,
        "feed_timeout_seconds": 10,
        "feed_max_retries": 1,
        "feed_paths": [
            "/feed",
            "/rss",
            "/feed/atom",
            "/atom",
            "/feeds/posts/default",
            "/rss.xml",
            "/feed.xml",
            "/atom.xml",
        ],
        "sitemap_paths": [
            "/sitemap.xml",
            "/sitemap_index.xml",
            "/sitemap",
            "/sitemaps.xml",
        ],
        "sitemap_max_urls": 20,
        "search_engines": ["duckduckgo", "google"],
        "search_timeout_seconds": 15,
    },
    "cache": {
        "low_water_mark": 5,
        "max_per_topic": 50,
        "prefetch_per_topic": 15,
        "recent_window": 5,
    },
    "history": {
        "max_scraped_urls": 100,
    },
    "rate_limit": {
        "base_backoff_ms": 5000,
        "max_backoff_ms": 120000,
    },
    "submission": {
        "max_attempts": 3,
        "base_delay_ms": 1000,
        "max_content_chars": 10000,
        "reconcile_batch_size": 20,
        "reconcile_base_delay_seconds": 60,
        "reconcile_max_delay_seconds": 86400,
    },
    "scraping": {
        "urls_per_topic": 5,
        "concurrency": 1,
        "delay_between_urls_seconds": 3.0,
        "loop_sleep_seconds": 60,
        "ai_enabled": False,
    },
}

CONFIG_KEY = "config.runtime"


def get_state_db_path() -> str:
    data_dir = os.environ.get("RS_DATA_DIR", DEFAULT_CONFIG["paths"]["data_dir"])
    return os.path.join(data_dir, "state.sqlite3")


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return _build_config(cfg)


def load_config(path: str | None = None) -> Config:
    cfg_path = path or os.environ.get("RS_CONFIG_PATH")
    cfg = _deep_copy(DEFAULT_CONFIG)
    if cfg_path:
        if not os.path.exists(cfg_path):
            raise ConfigError(f"config file not found: {cfg_path}")
        with open(cfg_path, "r", encoding="utf-8") as handle:
            try:
                overrides = yaml.safe_load(handle) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"invalid YAML in {cfg_path}: {exc}") from exc
        if not isinstance(overrides, dict):
            raise ConfigError("config file must contain a mapping")
        cfg = _merge(cfg, overrides)
    elif os.environ.get("RS_DATA_DIR"):
        data_dir = os.environ["RS_DATA_DIR"]
        cfg["paths"] = {"data_dir": data_dir, "state_db": os.path.join(data_dir, "state.sqlite3")}
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def load_topics_file(path: str) -> list[Topic]:
    if not os.path.exists(path):
        raise ConfigError(f"topics file not found: {path}")
    with open(path, "r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    items = data.get("topics") if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise ConfigError("topics file must contain a list under 'topics'")
    topics: list[Topic] = []
    seen: set[str] = set()
    for index, item in enumerate(items):
        try:
            topic = topic_from_wire(item)
        except TopicDecodeError as exc:
            raise ConfigError(f"topics[{index}]: {exc}") from exc
        if topic.id in seen:
            raise ConfigError(f"duplicate topic id {topic.id}")
        seen.add(topic.id)
        topics.append(topic)
    return topics


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if not errors:
        _validate_ranges(cfg, errors)
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        for item in value:
            if not isinstance(item, str):
                errors.append(f"{path} must be a list of strings")
                break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")


def _validate_ranges(cfg: dict[str, Any], errors: list[str]) -> None:
    if cfg["submission"]["max_attempts"] < 1:
        errors.append("config.runtime.submission.max_attempts must be >= 1")
    if cfg["rate_limit"]["base_backoff_ms"] > cfg["rate_limit"]["max_backoff_ms"]:
        errors.append("config.runtime.rate_limit.base_backoff_ms must not exceed max_backoff_ms")
    if cfg["cache"]["low_water_mark"] > cfg["cache"]["max_per_topic"]:
        errors.append("config.runtime.cache.low_water_mark must not exceed max_per_topic")
    if cfg["scraping"]["concurrency"] < 1:
        errors.append("config.runtime.scraping.concurrency must be >= 1")


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg["app"]
    paths_cfg = cfg["paths"]
    http_cfg = cfg["http"]
    backend_cfg = cfg["backend"]
    search_cfg = cfg["search_proxy"]
    discovery_cfg = cfg["discovery"]
    cache_cfg = cfg["cache"]
    submission_cfg = cfg["submission"]
    scraping_cfg = cfg["scraping"]

    return Config(
        app=AppConfig(name=str(app_cfg["name"]), user_agent=str(app_cfg["user_agent"])),
        paths=PathsConfig(
            data_dir=str(paths_cfg["data_dir"]),
            state_db=str(paths_cfg["state_db"]),
        ),
        http=HttpConfig(
            timeout_seconds=int(http_cfg["timeout_seconds"]),
            max_retries=int(http_cfg["max_retries"]),
            backoff_seconds=int(http_cfg["backoff_seconds"]),
        ),
        backend=BackendConfig(
            proxy_url=os.environ.get("RS_PROXY_URL") or str(backend_cfg["proxy_url"]),
            timeout_seconds=int(backend_cfg["timeout_seconds"]),
            primary_endpoint=str(backend_cfg["primary_endpoint"]),
            alternate_endpoints=list(backend_cfg["alternate_endpoints"]),
        ),
        search_proxy=SearchProxyConfig(
            enabled=bool(search_cfg["enabled"]),
            url=os.environ.get("RS_SEARCH_PROXY_URL") or str(search_cfg["url"]),
            timeout_seconds=int(search_cfg["timeout_seconds"]),
            batch_size=int(search_cfg["batch_size"]),
        ),
        discovery=DiscoveryConfig(
            batch_size=int(discovery_cfg["batch_size"]),
            feed_timeout_seconds=int(discovery_cfg["feed_timeout_seconds"]),
            feed_max_retries=int(discovery_cfg["feed_max_retries"]),
            feed_paths=list(discovery_cfg["feed_paths"]),
            sitemap_paths=list(discovery_cfg["sitemap_paths"]),
            sitemap_max_urls=int(discovery_cfg["sitemap_max_urls"]),
            search_engines=list(discovery_cfg["search_engines"]),
            search_timeout_seconds=int(discovery_cfg["search_timeout_seconds"]),
        ),
        cache=CacheConfig(
            low_water_mark=int(cache_cfg["low_water_mark"]),
            max_per_topic=int(cache_cfg["max_per_topic"]),
            prefetch_per_topic=int(cache_cfg["prefetch_per_topic"]),
            recent_window=int(cache_cfg["recent_window"]),
        ),
        history=HistoryConfig(max_scraped_urls=int(cfg["history"]["max_scraped_urls"])),
        rate_limit=RateLimitConfig(
            base_backoff_ms=int(cfg["rate_limit"]["base_backoff_ms"]),
            max_backoff_ms=int(cfg["rate_limit"]["max_backoff_ms"]),
        ),
        submission=SubmissionConfig(
            max_attempts=int(submission_cfg["max_attempts"]),
            base_delay_ms=int(submission_cfg["base_delay_ms"]),
            max_content_chars=int(submission_cfg["max_content_chars"]),
            reconcile_batch_size=int(submission_cfg["reconcile_batch_size"]),
            reconcile_base_delay_seconds=int(submission_cfg["reconcile_base_delay_seconds"]),
            reconcile_max_delay_seconds=int(submission_cfg["reconcile_max_delay_seconds"]),
        ),
        scraping=ScrapingConfig(
            urls_per_topic=int(scraping_cfg["urls_per_topic"]),
            concurrency=int(os.environ.get("RS_WORKER_CONCURRENCY") or scraping_cfg["concurrency"]),
            delay_between_urls_seconds=float(scraping_cfg["delay_between_urls_seconds"]),
            loop_sleep_seconds=int(scraping_cfg["loop_sleep_seconds"]),
            ai_enabled=bool(scraping_cfg["ai_enabled"]),
        ),
    )


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
