from __future__ import annotations

import json
import uuid
from typing import Any, Iterable

from .db import connect_db
from .models import (
    HealthStatus,
    Job,
    RawItem,
    Source,
    SourceHealth,
    SourceKind,
    parse_source_metadata,
)
from .utils import isoformat_utc, json_dumps, utc_now_iso, utc_now_iso_offset

_SOURCE_COLUMNS = "id, kind, name, url, enabled, metadata_json"
_JOB_COLUMNS = (
    "id, job_type, status, payload_json, result_json, requested_at, started_at, "
    "finished_at, locked_by, locked_at, error"
)


def init_db(path: str | None = None):
    return connect_db(path)


def upsert_source(conn: Any, source_dict: dict[str, object]) -> Source:
    source_id = str(source_dict.get("id") or "").strip()
    if not source_id:
        raise ValueError("source id is required")
    kind = SourceKind(str(source_dict.get("kind") or SourceKind.RSS.value))
    name = str(source_dict.get("name") or source_id)
    url = source_dict.get("url")
    enabled = source_dict.get("enabled", True)
    metadata = source_dict.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValueError("source metadata must be a mapping")
    cursor = conn.execute("SELECT created_at FROM sources WHERE id = ?", (source_id,))
    row = cursor.fetchone()
    created_at = row[0] if row else utc_now_iso()
    conn.execute(
        """
        INSERT INTO sources
            (id, kind, name, url, enabled, metadata_json, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            kind=excluded.kind,
            name=excluded.name,
            url=excluded.url,
            enabled=excluded.enabled,
            metadata_json=excluded.metadata_json,
            updated_at=excluded.updated_at
        """,
        (
            source_id,
            kind.value,
            name,
            str(url) if url else None,
            1 if enabled else 0,
            json_dumps(metadata),
            created_at,
            utc_now_iso(),
        ),
    )
    conn.commit()
    return Source(
        id=source_id,
        kind=kind,
        name=name,
        url=str(url) if url else None,
        enabled=bool(enabled),
        metadata=parse_source_metadata(kind, metadata),
    )


def set_source_enabled(conn: Any, source_id: str, enabled: bool) -> bool:
    cursor = conn.execute(
        "UPDATE sources SET enabled = ?, updated_at = ? WHERE id = ?",
        (1 if enabled else 0, utc_now_iso(), source_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def get_source(conn: Any, source_id: str) -> Source | None:
    cursor = conn.execute(
        f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE id = ?",
        (source_id,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_source(row)


def list_sources(
    conn: Any,
    kinds: Iterable[SourceKind] | None = None,
    enabled_only: bool = True,
) -> list[Source]:
    clauses: list[str] = []
    params: list[object] = []
    if enabled_only:
        clauses.append("enabled = 1")
    if kinds is not None:
        kind_values = [SourceKind(kind).value for kind in kinds]
        if not kind_values:
            return []
        clauses.append(f"kind IN ({','.join(['?'] * len(kind_values))})")
        params.extend(kind_values)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    cursor = conn.execute(
        f"SELECT {_SOURCE_COLUMNS} FROM sources {where} ORDER BY id",
        tuple(params),
    )
    return [_row_to_source(row) for row in cursor.fetchall()]


def update_source_metadata(conn: Any, source_id: str, updates: dict[str, object]) -> bool:
    """Merge ``updates`` into the stored metadata of one source.

    Keys not present in ``updates`` are preserved; the read-merge-write runs
    in one write transaction so concurrent writers cannot lose each other's
    keys.
    """
    with conn.transaction():
        row = conn.execute(
            "SELECT metadata_json FROM sources WHERE id = ?", (source_id,)
        ).fetchone()
        if not row:
            return False
        merged = _load_json_object(row[0])
        merged.update(updates)
        conn.execute(
            "UPDATE sources SET metadata_json = ?, updated_at = ? WHERE id = ?",
            (json_dumps(merged), utc_now_iso(), source_id),
        )
    return True


def upsert_raw_item(conn: Any, item: RawItem) -> str | None:
    """Insert ``item`` unless its ``(source_id, external_id)`` is already stored.

    Returns the new row id when this call inserted the row and ``None`` when
    the item was already known.
    """
    item_id = uuid.uuid4().hex
    cursor = conn.execute(
        """
        INSERT INTO raw_items
            (id, source_id, external_id, url, title, kind, published_at,
             metadata_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(source_id, external_id) DO NOTHING
        """,
        (
            item_id,
            item.source_id,
            item.external_id,
            item.url,
            item.title,
            item.kind.value,
            isoformat_utc(item.published_at) if item.published_at else None,
            json_dumps(item.metadata),
            utc_now_iso(),
        ),
    )
    conn.commit()
    if cursor.rowcount == 1:
        return item_id
    return None


def get_raw_item(conn: Any, item_id: str) -> dict[str, object] | None:
    row = conn.execute(
        """
        SELECT id, source_id, external_id, url, title, kind, published_at,
               metadata_json, created_at
        FROM raw_items
        WHERE id = ?
        """,
        (item_id,),
    ).fetchone()
    if not row:
        return None
    return {
        "id": row[0],
        "source_id": row[1],
        "external_id": row[2],
        "url": row[3],
        "title": row[4],
        "kind": row[5],
        "published_at": row[6],
        "metadata": _load_json_object(row[7]),
        "created_at": row[8],
    }


def count_raw_items(conn: Any, source_id: str | None = None) -> int:
    if source_id:
        row = conn.execute(
            "SELECT COUNT(*) FROM raw_items WHERE source_id = ?", (source_id,)
        ).fetchone()
    else:
        row = conn.execute("SELECT COUNT(*) FROM raw_items").fetchone()
    return int(row[0]) if row else 0


def update_source_health(
    conn: Any,
    source_id: str,
    status: HealthStatus,
    last_error: str | None,
    last_run_at: str | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO source_health (source_id, status, last_error, last_run_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(source_id) DO UPDATE SET
            status=excluded.status,
            last_error=excluded.last_error,
            last_run_at=excluded.last_run_at
        """,
        (source_id, HealthStatus(status).value, last_error, last_run_at or utc_now_iso()),
    )
    conn.commit()


def get_source_health(conn: Any, source_id: str) -> SourceHealth | None:
    row = conn.execute(
        """
        SELECT source_id, status, last_error, last_run_at
        FROM source_health
        WHERE source_id = ?
        """,
        (source_id,),
    ).fetchone()
    if not row:
        return None
    return SourceHealth(
        source_id=row[0],
        status=HealthStatus(row[1]),
        last_error=row[2],
        last_run_at=row[3],
    )


def record_source_run(
    conn: Any,
    source_id: str,
    started_at: str,
    finished_at: str,
    status: str,
    items_found: int,
    items_skipped: int,
    items_new: int,
    items_known: int,
    items_enqueued: int,
    error: str | None,
) -> None:
    conn.execute(
        """
        INSERT INTO source_runs
            (source_id, started_at, finished_at, status, items_found, items_skipped,
             items_new, items_known, items_enqueued, error)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            source_id,
            started_at,
            finished_at,
            status,
            items_found,
            items_skipped,
            items_new,
            items_known,
            items_enqueued,
            error,
        ),
    )
    conn.commit()


def list_source_runs(conn: Any, source_id: str, limit: int = 20) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT started_at, finished_at, status, items_found, items_skipped, items_new,
               items_known, items_enqueued, error
        FROM source_runs
        WHERE source_id = ?
        ORDER BY started_at DESC, id DESC
        LIMIT ?
        """,
        (source_id, limit),
    )
    runs = []
    for row in cursor.fetchall():
        runs.append(
            {
                "started_at": row[0],
                "finished_at": row[1],
                "status": row[2],
                "items_found": row[3],
                "items_skipped": row[4],
                "items_new": row[5],
                "items_known": row[6],
                "items_enqueued": row[7],
                "error": row[8],
            }
        )
    return runs


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, json_dumps(value), utc_now_iso()),
    )
    conn.commit()


def enqueue_job(
    conn: Any,
    job_type: str,
    payload: dict[str, object] | None,
) -> str:
    job_id = _new_job_id()
    conn.execute(
        f"""
        INSERT INTO jobs ({_JOB_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job_id,
            job_type,
            "queued",
            json_dumps(payload) if payload else None,
            None,
            utc_now_iso(),
            None,
            None,
            None,
            None,
            None,
        ),
    )
    conn.commit()
    return job_id


def list_jobs(
    conn: Any,
    limit: int = 50,
    job_type: str | None = None,
    status: str | None = None,
) -> list[Job]:
    clauses: list[str] = []
    params: list[object] = []
    if job_type:
        clauses.append("job_type = ?")
        params.append(job_type)
    if status:
        clauses.append("status = ?")
        params.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    cursor = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM jobs
        {where}
        ORDER BY requested_at DESC
        LIMIT ?
        """,
        tuple(params),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def get_job(conn: Any, job_id: str) -> Job | None:
    row = conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_job(row)


def claim_next_job(
    conn: Any,
    worker_id: str,
    allowed_types: list[str] | None = None,
    lock_timeout_seconds: int | None = None,
) -> Job | None:
    lock_clause = "FOR UPDATE SKIP LOCKED" if conn.backend == "postgres" else ""
    with conn.transaction():
        if lock_timeout_seconds is not None:
            cutoff = utc_now_iso_offset(seconds=-lock_timeout_seconds)
            conn.execute(
                """
                UPDATE jobs
                SET status = 'queued',
                    locked_by = NULL,
                    locked_at = NULL,
                    started_at = NULL,
                    error = 'stale_lock_requeued'
                WHERE status = 'running' AND locked_at IS NOT NULL AND locked_at < ?
                """,
                (cutoff,),
            )
        params: list[object] = []
        type_clause = ""
        if allowed_types:
            type_clause = f" AND job_type IN ({','.join(['?'] * len(allowed_types))})"
            params.extend(allowed_types)
        row = conn.execute(
            f"""
            SELECT id
            FROM jobs
            WHERE status = 'queued' AND locked_by IS NULL {type_clause}
            ORDER BY requested_at ASC
            LIMIT 1
            {lock_clause}
            """,
            tuple(params),
        ).fetchone()
        if not row:
            return None
        now = utc_now_iso()
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = 'running', started_at = ?, locked_by = ?, locked_at = ?
            WHERE id = ? AND status = 'queued' AND locked_by IS NULL
            """,
            (now, worker_id, now, row[0]),
        )
        if cursor.rowcount != 1:
            return None
        claimed = conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (row[0],)
        ).fetchone()
    return _row_to_job(claimed)


def complete_job(
    conn: Any, job_id: str, result: dict[str, object] | None = None
) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'succeeded', finished_at = ?, error = NULL, result_json = ?
        WHERE id = ? AND status = 'running'
        """,
        (utc_now_iso(), json_dumps(result) if result else None, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_job(conn: Any, job_id: str, error: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'failed', finished_at = ?, error = ?
        WHERE id = ? AND status = 'running'
        """,
        (utc_now_iso(), error, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def cancel_job(conn: Any, job_id: str, reason: str = "canceled_by_admin") -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'canceled',
            finished_at = ?,
            error = ?,
            locked_by = NULL,
            locked_at = NULL
        WHERE id = ? AND status IN ('queued', 'running')
        """,
        (utc_now_iso(), reason, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def is_job_canceled(conn: Any, job_id: str) -> bool:
    row = conn.execute("SELECT status FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return bool(row and row[0] == "canceled")


def quota_add_usage(conn: Any, api: str, window_start: str, units: int) -> int:
    """Atomically add ``units`` to the shared usage counter and return the total."""
    conn.execute(
        """
        INSERT INTO quota_usage (api, window_start, used, updated_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(api, window_start) DO UPDATE SET
            used = quota_usage.used + excluded.used,
            updated_at = excluded.updated_at
        """,
        (api, window_start, int(units), utc_now_iso()),
    )
    conn.commit()
    return quota_get_usage(conn, api, window_start)


def quota_get_usage(conn: Any, api: str, window_start: str) -> int:
    row = conn.execute(
        "SELECT used FROM quota_usage WHERE api = ? AND window_start = ?",
        (api, window_start),
    ).fetchone()
    conn.commit()
    return int(row[0]) if row else 0


def _row_to_source(row: tuple) -> Source:
    source_id, kind, name, url, enabled, metadata_json = row
    source_kind = SourceKind(kind)
    return Source(
        id=source_id,
        kind=source_kind,
        name=name,
        url=url,
        enabled=bool(enabled),
        metadata=parse_source_metadata(source_kind, _load_json_object(metadata_json)),
    )


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        job_type,
        status,
        payload_json,
        result_json,
        requested_at,
        started_at,
        finished_at,
        locked_by,
        locked_at,
        error,
    ) = row
    try:
        payload = json.loads(payload_json) if payload_json else {}
    except json.JSONDecodeError:
        payload = {}
    try:
        result = json.loads(result_json) if result_json else None
    except json.JSONDecodeError:
        result = None
    return Job(
        id=job_id,
        job_type=job_type,
        status=status,
        payload=payload,
        result=result,
        requested_at=requested_at,
        started_at=started_at,
        finished_at=finished_at,
        locked_by=locked_by,
        locked_at=locked_at,
        error=error,
    )


def _load_json_object(value: str | None) -> dict[str, object]:
    if not value:
        return {}
    try:
        loaded = json.loads(value)
    except json.JSONDecodeError:
        return {}
    return loaded if isinstance(loaded, dict) else {}


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"
