from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Iterator

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    get_state_db_path,
    load_runtime_config,
    set_runtime_config,
)
from .errors import IngestError
from .ingest import preview_source, run_source, run_sweep
from .models import SWEEP_KINDS
from .storage import (
    cancel_job,
    count_raw_items,
    enqueue_job,
    get_job,
    get_raw_item,
    get_source,
    get_source_health,
    init_db,
    list_jobs,
    list_source_runs,
    list_sources,
    upsert_source,
)
from .utils import json_dumps, log_event
from .worker import get_quota_tracker, run_summary, sweep_summary

app = FastAPI(title="newsintake Admin API")
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("NI_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


def _get_conn() -> Iterator[Any]:
    conn = init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    try:
        yield conn
    finally:
        conn.close()


def _to_json(value: Any) -> Any:
    return json.loads(json_dumps(value))


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("newsintake")
    except Exception:  # noqa: BLE001
        return "unknown"


class SourceRequest(BaseModel):
    id: str
    kind: str = "rss"
    name: str | None = None
    url: str | None = None
    enabled: bool = True
    metadata: dict = {}


class IngestRequest(BaseModel):
    inline: bool = False


class RuntimeConfigRequest(BaseModel):
    config: dict


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "newsintake Admin API"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_get(conn=Depends(_get_conn)) -> dict[str, object]:
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"config": cfg}


@app.put("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_set(payload: RuntimeConfigRequest, conn=Depends(_get_conn)) -> dict[str, object]:
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok"}


@app.get("/sources")
def sources_list(kind: str | None = None, conn=Depends(_get_conn)) -> list[dict[str, object]]:
    kinds = None
    if kind:
        if kind not in SWEEP_KINDS:
            raise HTTPException(status_code=400, detail="unknown_kind")
        kinds = SWEEP_KINDS[kind]
    rows = []
    for source in list_sources(conn, kinds=kinds, enabled_only=False):
        item = _to_json(source)
        health = get_source_health(conn, source.id)
        item["health"] = _to_json(health) if health else None
        rows.append(item)
    return rows


@app.post("/sources", dependencies=[Depends(_require_admin_token)])
def sources_upsert(payload: SourceRequest, conn=Depends(_get_conn)) -> dict[str, object]:
    try:
        source = upsert_source(conn, payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _to_json(source)


@app.get("/sources/{source_id}")
def sources_read(source_id: str, conn=Depends(_get_conn)) -> dict[str, object]:
    source = get_source(conn, source_id)
    if not source:
        raise HTTPException(status_code=404, detail="source_not_found")
    item = _to_json(source)
    item["item_count"] = count_raw_items(conn, source_id)
    return item


@app.get("/sources/{source_id}/health")
def sources_health(source_id: str, conn=Depends(_get_conn)) -> dict[str, object]:
    if not get_source(conn, source_id):
        raise HTTPException(status_code=404, detail="source_not_found")
    health = get_source_health(conn, source_id)
    if not health:
        return {"source_id": source_id, "status": None, "last_error": None, "last_run_at": None}
    return _to_json(health)


@app.get("/sources/{source_id}/runs")
def sources_runs(source_id: str, limit: int = 20, conn=Depends(_get_conn)) -> list[dict[str, object]]:
    if not get_source(conn, source_id):
        raise HTTPException(status_code=404, detail="source_not_found")
    return list_source_runs(conn, source_id, limit=limit)


@app.post("/sources/{source_id}/ingest", dependencies=[Depends(_require_admin_token)])
def sources_ingest(
    source_id: str,
    payload: IngestRequest | None = None,
    conn=Depends(_get_conn),
) -> dict[str, object]:
    logger = logging.getLogger("newsintake.admin")
    source = get_source(conn, source_id)
    if not source:
        raise HTTPException(status_code=404, detail="source_not_found")
    if payload is None or not payload.inline:
        job_id = enqueue_job(conn, "ingest_source", {"source_id": source_id})
        log_event(logger, logging.INFO, "job_enqueued", job_id=job_id, job_type="ingest_source")
        return {"status": "queued", "job_id": job_id}
    config = _load_config(conn)
    run = run_source(
        conn,
        source,
        config,
        quota=get_quota_tracker(config),
        logger=logging.getLogger("newsintake.ingest"),
    )
    summary = run_summary(run)
    summary["ok"] = run.ok
    return summary


@app.post("/sources/{source_id}/preview", dependencies=[Depends(_require_admin_token)])
def sources_preview(source_id: str, limit: int = 10, conn=Depends(_get_conn)) -> dict[str, object]:
    source = get_source(conn, source_id)
    if not source:
        raise HTTPException(status_code=404, detail="source_not_found")
    config = _load_config(conn)
    try:
        collected = preview_source(
            source, config, quota=get_quota_tracker(config), limit=limit
        )
    except IngestError as exc:
        return {"ok": False, "error": str(exc), "kind": exc.kind.value, "items": []}
    return {
        "ok": True,
        "items": _to_json(collected.items),
        "skipped": len(collected.skipped),
        "warnings": collected.warnings,
    }


@app.post("/ingest/{kind}", dependencies=[Depends(_require_admin_token)])
def ingest_kind(
    kind: str,
    payload: IngestRequest | None = None,
    conn=Depends(_get_conn),
) -> dict[str, object]:
    if kind not in SWEEP_KINDS:
        raise HTTPException(status_code=404, detail="unknown_kind")
    if payload is None or not payload.inline:
        job_id = enqueue_job(conn, "ingest_sweep", {"kind": kind})
        log_event(
            logging.getLogger("newsintake.admin"),
            logging.INFO,
            "job_enqueued",
            job_id=job_id,
            job_type="ingest_sweep",
        )
        return {"status": "queued", "job_id": job_id}
    config = _load_config(conn)
    sweep = run_sweep(
        kind,
        config,
        connect=init_db,
        quota=get_quota_tracker(config) if kind == "youtube" else None,
        logger=logging.getLogger("newsintake.ingest"),
    )
    summary = sweep_summary(sweep)
    summary["ok"] = sweep.sources_failed == 0
    return summary


@app.get("/items/{item_id}")
def items_read(item_id: str, conn=Depends(_get_conn)) -> dict[str, object]:
    item = get_raw_item(conn, item_id)
    if not item:
        raise HTTPException(status_code=404, detail="item_not_found")
    return item


@app.get("/jobs")
def jobs(
    limit: int = 20,
    job_type: str | None = None,
    status: str | None = None,
    conn=Depends(_get_conn),
) -> list[dict[str, object]]:
    return [_to_json(job) for job in list_jobs(conn, limit=limit, job_type=job_type, status=status)]


@app.get("/jobs/{job_id}")
def jobs_read(job_id: str, conn=Depends(_get_conn)) -> dict[str, object]:
    job = get_job(conn, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="job_not_found")
    return _to_json(job)


@app.post("/jobs/{job_id}/cancel", dependencies=[Depends(_require_admin_token)])
def jobs_cancel(job_id: str, conn=Depends(_get_conn)) -> dict[str, object]:
    if not cancel_job(conn, job_id):
        raise HTTPException(status_code=409, detail="job_not_cancelable")
    return {"status": "canceled", "job_id": job_id}


@app.get("/quota")
def quota(conn=Depends(_get_conn)) -> dict[str, object]:
    config = _load_config(conn)
    tracker = get_quota_tracker(config)
    return {
        "status": _to_json(tracker.status()),
        "allocation": _to_json(tracker.allocation()),
        "breakdown": tracker.usage_breakdown(),
        "shared": config.youtube.shared_quota,
    }


def _load_config(conn):
    try:
        return load_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
