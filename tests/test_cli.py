import json
import logging

from newsintake import cli
from newsintake.storage import get_source, init_db, list_jobs

from helpers import fake_http, numbered_entries, rss_document

FEED_URL = "https://example.com/feed.xml"
LOGGER = logging.getLogger("newsintake.tests")


def _write_config(tmp_path):
    state_db = tmp_path / "cli" / "state.sqlite3"
    path = tmp_path / "config.yml"
    path.write_text(
        "paths:\n"
        f"  data_dir: {tmp_path / 'cli'}\n"
        f"  state_db: {state_db}\n",
        encoding="utf-8",
    )
    return path, state_db


def _run(argv):
    args = cli.build_parser().parse_args(argv)
    return args.func(args, LOGGER)


def _write_sources(tmp_path):
    path = tmp_path / "sources.yml"
    path.write_text(
        "sources:\n"
        "  - id: example\n"
        "    kind: rss\n"
        f"    url: {FEED_URL}\n"
        "  - id: talks\n"
        "    kind: youtube_search\n"
        "    enabled: false\n"
        "    metadata:\n"
        "      query: pycon\n",
        encoding="utf-8",
    )
    return path


def test_sources_import_and_list(tmp_path):
    config_path, state_db = _write_config(tmp_path)
    sources_path = _write_sources(tmp_path)

    assert _run(["--config", str(config_path), "sources", "import", str(sources_path)]) == 0
    assert _run(["--config", str(config_path), "sources", "list"]) == 0

    conn = init_db(str(state_db))
    try:
        talks = get_source(conn, "talks")
        assert talks.enabled is False
        assert talks.metadata.query == "pycon"
    finally:
        conn.close()


def test_sources_list_without_sources_fails(tmp_path):
    config_path, _ = _write_config(tmp_path)
    assert _run(["--config", str(config_path), "sources", "list"]) == 1


def test_ingest_source_prints_summary(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(
        "newsintake.http.http_get",
        fake_http({FEED_URL: (200, rss_document(numbered_entries(2)))}),
    )
    config_path, _ = _write_config(tmp_path)
    _run(["--config", str(config_path), "sources", "import", str(_write_sources(tmp_path))])
    capsys.readouterr()

    assert _run(["--config", str(config_path), "ingest-source", "example"]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["new"] == 2
    assert summary["status"] == "ok"


def test_sweep_exit_code_reflects_failures(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr("newsintake.http.http_get", fake_http({FEED_URL: (503, b"")}))
    config_path, _ = _write_config(tmp_path)
    _run(["--config", str(config_path), "sources", "import", str(_write_sources(tmp_path))])
    capsys.readouterr()

    assert _run(["--config", str(config_path), "sweep", "rss"]) == 2
    summary = json.loads(capsys.readouterr().out)
    assert summary["sources_failed"] == 1


def test_jobs_enqueue_validates_payload(tmp_path):
    config_path, state_db = _write_config(tmp_path)
    assert _run(["--config", str(config_path), "jobs", "enqueue", "ingest_source"]) == 1
    assert (
        _run(["--config", str(config_path), "jobs", "enqueue", "ingest_sweep", "--kind", "rss"])
        == 0
    )
    conn = init_db(str(state_db))
    try:
        jobs = list_jobs(conn)
        assert len(jobs) == 1
        assert jobs[0].payload == {"kind": "rss"}
    finally:
        conn.close()


def test_invalid_config_exits_nonzero(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("retry:\n  max_retries: 0\n", encoding="utf-8")
    assert _run(["--config", str(path), "db", "migrate"]) == 1


def test_preview_source_failure_prints_error(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr("newsintake.http.http_get", fake_http({FEED_URL: (503, b"")}))
    config_path, state_db = _write_config(tmp_path)
    _run(["--config", str(config_path), "sources", "import", str(_write_sources(tmp_path))])
    capsys.readouterr()

    assert _run(["--config", str(config_path), "preview-source", "example"]) == 2
    payload = json.loads(capsys.readouterr().out)
    assert payload["ok"] is False
    assert "503" in payload["error"]

    conn = init_db(str(state_db))
    try:
        assert list_jobs(conn) == []
    finally:
        conn.close()


def test_preview_source_prints_items(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(
        "newsintake.http.http_get",
        fake_http({FEED_URL: (200, rss_document(numbered_entries(3)))}),
    )
    config_path, _ = _write_config(tmp_path)
    _run(["--config", str(config_path), "sources", "import", str(_write_sources(tmp_path))])
    capsys.readouterr()

    assert _run(["--config", str(config_path), "preview-source", "example", "--limit", "2"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["ok"] is True
    assert len(payload["items"]) == 2


def test_sources_enable_disable_and_show(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(
        "newsintake.http.http_get",
        fake_http({FEED_URL: (200, rss_document(numbered_entries(2)))}),
    )
    config_path, state_db = _write_config(tmp_path)
    _run(["--config", str(config_path), "sources", "import", str(_write_sources(tmp_path))])

    assert _run(["--config", str(config_path), "sources", "enable", "talks"]) == 0
    assert _run(["--config", str(config_path), "sources", "disable", "example"]) == 0
    assert _run(["--config", str(config_path), "sources", "disable", "missing"]) == 1

    conn = init_db(str(state_db))
    try:
        assert get_source(conn, "talks").enabled is True
        assert get_source(conn, "example").enabled is False
    finally:
        conn.close()

    _run(["--config", str(config_path), "ingest-source", "example"])
    capsys.readouterr()
    assert _run(["--config", str(config_path), "sources", "show", "example"]) == 0
    shown = json.loads(capsys.readouterr().out)
    assert shown["items"] == 2
    assert len(shown["runs"]) == 1
