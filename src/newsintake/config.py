from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .errors import ConfigError
from .storage import get_setting, set_setting


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: float
    user_agent: str
    max_retries: int
    backoff_seconds: float
    max_bytes: int


@dataclass(frozen=True)
class ScheduleConfig:
    rss_minutes: int
    youtube_minutes: int


@dataclass(frozen=True)
class IngestConfig:
    http: HttpConfig
    schedule: ScheduleConfig
    concurrency: int
    downstream_task: str
    error_max_length: int


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int
    base_delay_seconds: float
    jitter: bool


@dataclass(frozen=True)
class YouTubeConfig:
    api_base: str
    api_key: str | None
    timeout_seconds: float
    quota_limit: int
    quota_buffer: int
    quota_reset_hour: int
    shared_quota: bool
    max_videos_per_run: int
    max_search_results: int
    default_lookback_days: int


@dataclass(frozen=True)
class JobsConfig:
    lock_timeout_seconds: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    ingest: IngestConfig
    retry: RetryConfig
    youtube: YouTubeConfig
    jobs: JobsConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "newsintake",
        "timezone": "UTC",
    },
    "paths": {
        "data_dir": "/data",
        "state_db": "/data/state.sqlite3",
    },
    "ingest": {
        "http": {
            "timeout_seconds": 15.0,
            "user_agent": "newsintake/0.1",
            "max_retries": 1,
            "backoff_seconds": 1.0,
            "max_bytes": 10_000_000,
        },
        "schedule": {
            "rss_minutes": 5,
            "youtube_minutes": 360,
        },
        "concurrency": 4,
        "downstream_task": "fetch_content",
        "error_max_length": 512,
    },
    "retry": {
        "max_retries": 3,
        "base_delay_seconds": 1.0,
        "jitter": True,
    },
    "youtube": {
        "api_base": "https://www.googleapis.com/youtube/v3",
        "timeout_seconds": 15.0,
        "quota_limit": 10000,
        "quota_buffer": 500,
        "quota_reset_hour": 0,
        "shared_quota": False,
        "max_videos_per_run": 10,
        "max_search_results": 10,
        "default_lookback_days": 7,
    },
    "jobs": {
        "lock_timeout_seconds": 600,
    },
}

CONFIG_KEY = "config.runtime"

_ENV_OVERRIDES: list[tuple[str, tuple[str, str], type]] = [
    ("YOUTUBE_QUOTA_LIMIT", ("youtube", "quota_limit"), int),
    ("YOUTUBE_RATE_LIMIT_BUFFER", ("youtube", "quota_buffer"), int),
    ("YOUTUBE_QUOTA_RESET_HOUR", ("youtube", "quota_reset_hour"), int),
]


def get_state_db_path() -> str:
    data_dir = os.environ.get("NI_DATA_DIR", DEFAULT_CONFIG["paths"]["data_dir"])
    return os.path.join(data_dir, "state.sqlite3")


def load_config(path: str | None = None) -> Config:
    """Load a YAML config file merged over the defaults.

    Without ``path`` the ``NI_CONFIG_PATH`` environment variable is used; a
    missing path yields the defaults.
    """
    path = path or os.environ.get("NI_CONFIG_PATH")
    cfg = _deep_copy(DEFAULT_CONFIG)
    if path:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
        except FileNotFoundError as exc:
            raise ConfigError(f"Config file not found: {path}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigError("Config file must contain a mapping")
        cfg = _deep_merge(cfg, loaded)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def load_sources_file(path: str) -> list[dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Sources file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    sources = data.get("sources") if isinstance(data, dict) else data
    if not isinstance(sources, list):
        raise ConfigError("Sources file must contain a list under 'sources'")
    result: list[dict[str, Any]] = []
    for index, item in enumerate(sources):
        if not isinstance(item, dict):
            raise ConfigError(f"sources[{index}] must be a mapping")
        if not item.get("id"):
            raise ConfigError(f"sources[{index}] is missing id")
        result.append(item)
    return result


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


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    if not errors:
        reset_hour = cfg["youtube"]["quota_reset_hour"]
        if not 0 <= int(reset_hour) <= 23:
            errors.append("config.youtube.quota_reset_hour must be between 0 and 23")
        if int(cfg["ingest"]["concurrency"]) < 1:
            errors.append("config.ingest.concurrency must be at least 1")
        if int(cfg["retry"]["max_retries"]) < 1:
            errors.append("config.retry.max_retries must be at least 1")
        if int(cfg["ingest"]["http"]["max_retries"]) < 1:
            errors.append("config.ingest.http.max_retries must be at least 1")
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
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
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
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _apply_env_overrides(cfg: dict[str, Any]) -> dict[str, Any]:
    for env_name, (section, key), cast in _ENV_OVERRIDES:
        raw = os.environ.get(env_name)
        if raw is None or raw.strip() == "":
            continue
        try:
            cfg[section][key] = cast(raw)
        except ValueError as exc:
            raise ConfigError(f"{env_name} must be {cast.__name__}") from exc
    return cfg


def _build_config(cfg: dict[str, Any]) -> Config:
    cfg = _apply_env_overrides(_deep_copy(cfg))
    app_cfg = cfg["app"]
    paths_cfg = cfg["paths"]
    ingest_cfg = cfg["ingest"]
    http_cfg = ingest_cfg["http"]
    schedule_cfg = ingest_cfg["schedule"]
    retry_cfg = cfg["retry"]
    youtube_cfg = cfg["youtube"]

    http = HttpConfig(
        timeout_seconds=float(http_cfg["timeout_seconds"]),
        user_agent=str(http_cfg["user_agent"]),
        max_retries=int(http_cfg["max_retries"]),
        backoff_seconds=float(http_cfg["backoff_seconds"]),
        max_bytes=int(http_cfg["max_bytes"]),
    )
    ingest = IngestConfig(
        http=http,
        schedule=ScheduleConfig(
            rss_minutes=int(schedule_cfg["rss_minutes"]),
            youtube_minutes=int(schedule_cfg["youtube_minutes"]),
        ),
        concurrency=int(ingest_cfg["concurrency"]),
        downstream_task=str(ingest_cfg["downstream_task"]),
        error_max_length=int(ingest_cfg["error_max_length"]),
    )
    retry = RetryConfig(
        max_retries=int(retry_cfg["max_retries"]),
        base_delay_seconds=float(retry_cfg["base_delay_seconds"]),
        jitter=bool(retry_cfg["jitter"]),
    )
    youtube = YouTubeConfig(
        api_base=str(youtube_cfg["api_base"]),
        api_key=os.environ.get("YOUTUBE_API_KEY") or None,
        timeout_seconds=float(youtube_cfg["timeout_seconds"]),
        quota_limit=int(youtube_cfg["quota_limit"]),
        quota_buffer=int(youtube_cfg["quota_buffer"]),
        quota_reset_hour=int(youtube_cfg["quota_reset_hour"]),
        shared_quota=bool(youtube_cfg["shared_quota"]),
        max_videos_per_run=int(youtube_cfg["max_videos_per_run"]),
        max_search_results=int(youtube_cfg["max_search_results"]),
        default_lookback_days=int(youtube_cfg["default_lookback_days"]),
    )
    return Config(
        app=AppConfig(name=str(app_cfg["name"]), timezone=str(app_cfg["timezone"])),
        paths=PathsConfig(
            data_dir=str(paths_cfg["data_dir"]),
            state_db=str(paths_cfg["state_db"]),
        ),
        ingest=ingest,
        retry=retry,
        youtube=youtube,
        jobs=JobsConfig(lock_timeout_seconds=int(cfg["jobs"]["lock_timeout_seconds"])),
    )


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
