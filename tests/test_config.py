import copy

import pytest

from newsintake.config import (
    DEFAULT_CONFIG,
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    load_config,
    load_runtime_config,
    load_sources_file,
    set_runtime_config,
)


def test_load_config_defaults(config):
    assert config.youtube.quota_limit == 10000
    assert config.youtube.quota_buffer == 500
    assert config.youtube.api_key is None
    assert config.ingest.downstream_task == "fetch_content"
    assert config.retry.max_retries == 3


def test_load_config_merges_yaml_file(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("youtube:\n  quota_limit: 2000\ningest:\n  concurrency: 2\n", encoding="utf-8")
    config = load_config(str(path))
    assert config.youtube.quota_limit == 2000
    assert config.youtube.quota_buffer == 500
    assert config.ingest.concurrency == 2


def test_load_config_rejects_unknown_keys(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("youtube:\n  quota_limt: 2000\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="unknown config.youtube.quota_limt"):
        load_config(str(path))


def test_load_config_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(str(tmp_path / "absent.yml"))


def test_env_overrides_quota_settings(monkeypatch):
    monkeypatch.setenv("YOUTUBE_API_KEY", "key-1")
    monkeypatch.setenv("YOUTUBE_QUOTA_LIMIT", "5000")
    monkeypatch.setenv("YOUTUBE_RATE_LIMIT_BUFFER", "50")
    monkeypatch.setenv("YOUTUBE_QUOTA_RESET_HOUR", "8")
    config = load_config()
    assert config.youtube.api_key == "key-1"
    assert config.youtube.quota_limit == 5000
    assert config.youtube.quota_buffer == 50
    assert config.youtube.quota_reset_hour == 8


def test_env_override_must_be_integer(monkeypatch):
    monkeypatch.setenv("YOUTUBE_QUOTA_LIMIT", "lots")
    with pytest.raises(ConfigError, match="YOUTUBE_QUOTA_LIMIT"):
        load_config()


def test_reset_hour_out_of_range(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("youtube:\n  quota_reset_hour: 24\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="quota_reset_hour"):
        load_config(str(path))


def test_bootstrap_creates_runtime_config(conn):
    cfg = bootstrap_runtime_config(conn)
    assert cfg == DEFAULT_CONFIG
    assert load_runtime_config(conn).app.name == "newsintake"


def test_get_runtime_config_after_set(conn):
    custom = copy.deepcopy(DEFAULT_CONFIG)
    custom["app"]["name"] = "Test"
    set_runtime_config(conn, custom)
    assert get_runtime_config(conn)["app"]["name"] == "Test"


def test_set_runtime_config_rejects_invalid(conn):
    with pytest.raises(ConfigError, match="Invalid config.runtime"):
        set_runtime_config(conn, {"app": {"name": "Bad"}})


def test_load_sources_file(tmp_path):
    path = tmp_path / "sources.yml"
    path.write_text(
        "sources:\n"
        "  - id: example\n"
        "    kind: rss\n"
        "    url: https://example.com/feed.xml\n"
        "  - id: talks\n"
        "    kind: youtube_search\n"
        "    metadata:\n"
        "      query: conference talks\n",
        encoding="utf-8",
    )
    sources = load_sources_file(str(path))
    assert [source["id"] for source in sources] == ["example", "talks"]
    assert sources[1]["metadata"]["query"] == "conference talks"


def test_load_sources_file_requires_ids(tmp_path):
    path = tmp_path / "sources.yml"
    path.write_text("sources:\n  - kind: rss\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="missing id"):
        load_sources_file(str(path))
