from __future__ import annotations

import pytest

from newsintake.config import load_config
from newsintake.storage import init_db


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("NI_DATA_DIR", str(tmp_path / "data"))
    for name in (
        "NI_DB_URL",
        "NI_CONFIG_PATH",
        "NI_ADMIN_TOKEN",
        "NI_LOG_FILE",
        "YOUTUBE_API_KEY",
        "YOUTUBE_QUOTA_LIMIT",
        "YOUTUBE_RATE_LIMIT_BUFFER",
        "YOUTUBE_QUOTA_RESET_HOUR",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def conn():
    conn = init_db()
    yield conn
    conn.close()


@pytest.fixture
def config():
    return load_config()
