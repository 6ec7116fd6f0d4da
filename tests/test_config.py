import copy

import pytest
import yaml

from rhinospider.config import (
    DEFAULT_CONFIG,
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    load_config,
    load_runtime_config,
    load_topics_file,
    set_runtime_config,
)
from rhinospider.storage import init_db


def test_bootstrap_creates_runtime_config(tmp_path):
    conn = init_db()
    cfg = bootstrap_runtime_config(conn)
    assert cfg == DEFAULT_CONFIG
    assert (tmp_path / "data" / "state.sqlite3").exists()


def test_get_runtime_config_after_set(tmp_path):
    conn = init_db()
    custom = copy.deepcopy(DEFAULT_CONFIG)
    custom["app"]["name"] = "Test"
    set_runtime_config(conn, custom)
    cfg = get_runtime_config(conn)
    assert cfg["app"]["name"] == "Test"
    assert load_runtime_config(conn).app.name == "Test"


def test_set_runtime_config_rejects_invalid(tmp_path):
    conn = init_db()
    invalid = {"app": {"name": "Bad"}}
    try:
        set_runtime_config(conn, invalid)
    except Exception as exc:  # noqa: BLE001
        assert "Invalid config.runtime" in str(exc)
    else:
        raise AssertionError("Expected validation error")


def test_set_runtime_config_rejects_bad_ranges(tmp_path):
    conn = init_db()
    custom = copy.deepcopy(DEFAULT_CONFIG)
    custom["cache"]["low_water_mark"] = 80
    with pytest.raises(ConfigError, match="low_water_mark"):
        set_runtime_config(conn, custom)


def test_load_config_merges_yaml_over_defaults(tmp_path, monkeypatch):
    cfg_path = tmp_path / "config.yml"
    cfg_path.write_text(
        yaml.safe_dump(
            {
                "backend": {"proxy_url": "https://proxy.acme.net"},
                "scraping": {"delay_between_urls_seconds": 0, "concurrency": 2},
            }
        ),
        encoding="utf-8",
    )
    config = load_config(str(cfg_path))
    assert config.backend.proxy_url == "https://proxy.acme.net"
    assert config.backend.primary_endpoint == "/api/consumer-submit"
    assert config.scraping.delay_between_urls_seconds == 0.0
    assert config.scraping.concurrency == 2
    assert config.cache.max_per_topic == 50

    monkeypatch.setenv("RS_PROXY_URL", "https://other-proxy.acme.net")
    monkeypatch.setenv("RS_WORKER_CONCURRENCY", "4")
    config = load_config(str(cfg_path))
    assert config.backend.proxy_url == "https://other-proxy.acme.net"
    assert config.scraping.concurrency == 4


def test_load_config_uses_data_dir_without_file(tmp_path):
    config = load_config()
    assert config.paths.state_db == str(tmp_path / "data" / "state.sqlite3")


def test_load_config_errors(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(str(tmp_path / "missing.yml"))

    bad = tmp_path / "bad.yml"
    bad.write_text(yaml.safe_dump({"cache": {"recent_window": "five"}}), encoding="utf-8")
    with pytest.raises(ConfigError, match="recent_window must be an integer"):
        load_config(str(bad))

    unknown = tmp_path / "unknown.yml"
    unknown.write_text(yaml.safe_dump({"crawler": {}}), encoding="utf-8")
    with pytest.raises(ConfigError, match="unknown config.runtime.crawler"):
        load_config(str(unknown))


def test_load_topics_file(tmp_path):
    path = tmp_path / "topics.yml"
    path.write_text(
        yaml.safe_dump(
            {
                "topics": [
                    {
                        "id": "ai",
                        "name": "AI",
                        "sampleArticleUrls": ["https://news.acme.org/a1"],
                        "priority": 8,
                    },
                    {"id": "rust", "name": "Rust", "status": "inactive"},
                ]
            }
        ),
        encoding="utf-8",
    )
    topics = load_topics_file(str(path))
    assert [topic.id for topic in topics] == ["ai", "rust"]
    assert topics[0].priority == 8
    assert topics[0].is_active
    assert not topics[1].is_active


def test_load_topics_file_rejects_duplicates(tmp_path):
    path = tmp_path / "topics.yml"
    path.write_text(
        yaml.safe_dump([{"id": "ai", "name": "AI"}, {"id": "ai", "name": "Again"}]),
        encoding="utf-8",
    )
    with pytest.raises(ConfigError, match="duplicate topic id ai"):
        load_topics_file(str(path))

    missing_id = tmp_path / "missing.yml"
    missing_id.write_text(yaml.safe_dump({"topics": [{"name": "No id"}]}), encoding="utf-8")
    with pytest.raises(ConfigError, match="topics\\[0\\]"):
        load_topics_file(str(missing_id))
