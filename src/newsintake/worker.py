from __future__ import annotations

import argparse
import logging
import os
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from datetime import timedelta
from typing import Callable

from .config import Config, load_runtime_config
from .errors import ConfigError
from .ingest import SourceRunResult, SweepResult, run_source, run_sweep
from .models import SWEEP_KINDS, Job
from .quota import QuotaTracker, build_quota_tracker
from .storage import (
    claim_next_job,
    complete_job,
    enqueue_job,
    fail_job,
    get_setting,
    get_source,
    init_db,
    is_job_canceled,
    list_jobs,
    set_setting,
)
from .utils import configure_logging, log_event, parse_iso, utc_now, utc_now_iso

WORKER_JOB_TYPES = [
    "ingest_sweep",
    "ingest_source",
]

_QUOTA_LOCK = threading.Lock()
_QUOTA_TRACKER: QuotaTracker | None = None


def _setup_logging() -> logging.Logger:
    return configure_logging("newsintake.worker")


def get_quota_tracker(config: Config) -> QuotaTracker:
    """Process-wide YouTube quota tracker so every sweep draws on one budget."""
    global _QUOTA_TRACKER
    with _QUOTA_LOCK:
        if _QUOTA_TRACKER is None:
            _QUOTA_TRACKER = build_quota_tracker(config.youtube, init_db)
        return _QUOTA_TRACKER


def run_once(worker_id: str, allowed_types: list[str] | None = None) -> int:
    logger = _setup_logging()
    try:
        conn = init_db()
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    try:
        if _should_tick_sweeps(allowed_types):
            maybe_enqueue_due_sweeps(conn, config, logger)
        job = claim_next_job(
            conn,
            worker_id,
            allowed_types=allowed_types or WORKER_JOB_TYPES,
            lock_timeout_seconds=config.jobs.lock_timeout_seconds,
        )
        if not job:
            return 0
        return _process_claimed_job(conn, config, job, logger)
    finally:
        conn.close()


def _process_claimed_job(conn, config: Config, job: Job, logger: logging.Logger) -> int:
    if is_job_canceled(conn, job.id):
        log_event(logger, logging.INFO, "job_canceled", job_id=job.id)
        return 0

    try:
        result = run_claimed_job(conn, config, job, logger)
    except Exception as exc:  # noqa: BLE001
        conn.rollback()
        if is_job_canceled(conn, job.id):
            log_event(logger, logging.INFO, "job_canceled", job_id=job.id)
            return 0
        fail_job(conn, job.id, str(exc) or exc.__class__.__name__)
        log_event(
            logger,
            logging.ERROR,
            "job_failed",
            job_id=job.id,
            job_type=job.job_type,
            error=str(exc),
        )
        return 1

    if is_job_canceled(conn, job.id):
        log_event(logger, logging.INFO, "job_canceled", job_id=job.id)
        return 0

    if complete_job(conn, job.id, result=result):
        log_event(logger, logging.INFO, "job_succeeded", job_id=job.id, job_type=job.job_type)
    else:
        log_event(logger, logging.ERROR, "job_complete_failed", job_id=job.id)
    return 0


def _process_claimed_job_thread(job: Job) -> int:
    logger = _setup_logging()
    try:
        conn = init_db()
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    try:
        return _process_claimed_job(conn, config, job, logger)
    finally:
        conn.close()


def run_loop(
    worker_id: str,
    sleep_seconds: int,
    allowed_types: list[str] | None = None,
    concurrency: int = 1,
) -> int:
    if concurrency <= 1:
        while True:
            run_once(worker_id, allowed_types)
            time.sleep(sleep_seconds)

    logger = _setup_logging()
    max_workers = max(1, concurrency)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = set()
        while True:
            while len(futures) < max_workers:
                try:
                    conn = init_db()
                    config = load_runtime_config(conn)
                except ConfigError as exc:
                    log_event(logger, logging.ERROR, "config_error", error=str(exc))
                    break
                try:
                    if _should_tick_sweeps(allowed_types):
                        maybe_enqueue_due_sweeps(conn, config, logger)
                    job = claim_next_job(
                        conn,
                        worker_id,
                        allowed_types=allowed_types or WORKER_JOB_TYPES,
                        lock_timeout_seconds=config.jobs.lock_timeout_seconds,
                    )
                finally:
                    conn.close()
                if not job:
                    break
                futures.add(executor.submit(_process_claimed_job_thread, job))
            if futures:
                done, futures = wait(futures, timeout=sleep_seconds, return_when=FIRST_COMPLETED)
                for future in done:
                    try:
                        future.result()
                    except Exception as exc:  # noqa: BLE001
                        log_event(logger, logging.ERROR, "job_thread_error", error=str(exc))
            else:
                time.sleep(sleep_seconds)


def run_claimed_job(conn, config: Config, job: Job, logger: logging.Logger) -> dict[str, object]:
    log_event(logger, logging.INFO, "job_claimed", job_id=job.id, job_type=job.job_type)
    if job.job_type == "ingest_sweep":
        return _handle_ingest_sweep(conn, config, job, logger)
    if job.job_type == "ingest_source":
        return _handle_ingest_source(conn, config, job, logger)
    raise ValueError(f"unsupported job type {job.job_type}")


def _handle_ingest_sweep(conn, config: Config, job: Job, logger: logging.Logger) -> dict[str, object]:
    kind = str(job.payload.get("kind") or "")
    if kind not in SWEEP_KINDS:
        raise ValueError(f"ingest_sweep requires kind in {sorted(SWEEP_KINDS)}")
    if kind == "youtube" and not config.youtube.api_key:
        log_event(logger, logging.WARNING, "youtube_sweep_skipped", reason="missing_api_key")
        return {"kind": kind, "skipped": "missing_api_key"}
    sweep = run_sweep(
        kind,
        config,
        connect=init_db,
        quota=get_quota_tracker(config) if kind == "youtube" else None,
        logger=logging.getLogger("newsintake.ingest"),
        should_cancel=_cancel_checker(job.id),
    )
    return sweep_summary(sweep)


def _handle_ingest_source(conn, config: Config, job: Job, logger: logging.Logger) -> dict[str, object]:
    source_id = str(job.payload.get("source_id") or "")
    if not source_id:
        raise ValueError("ingest_source requires source_id")
    source = get_source(conn, source_id)
    if source is None:
        raise ValueError(f"source {source_id} not found")
    if not source.enabled:
        log_event(logger, logging.INFO, "source_disabled_skip", source_id=source_id)
        return {"source_id": source_id, "skipped": "source_disabled"}
    run = run_source(
        conn,
        source,
        config,
        quota=get_quota_tracker(config),
        logger=logging.getLogger("newsintake.ingest"),
        should_cancel=lambda: is_job_canceled(conn, job.id),
    )
    return run_summary(run)


def run_summary(run: SourceRunResult) -> dict[str, object]:
    return {
        "source_id": run.source_id,
        "kind": run.kind.value,
        "status": run.status.value,
        "found": run.found_count,
        "skipped": run.skipped_count,
        "new": run.new_count,
        "known": run.known_count,
        "enqueued": run.enqueued_count,
        "canceled": run.canceled,
        "error": run.error,
    }


def sweep_summary(sweep: SweepResult) -> dict[str, object]:
    return {
        "kind": sweep.kind,
        "sources_ok": sweep.sources_ok,
        "sources_failed": sweep.sources_failed,
        "items_found": sweep.items_found,
        "items_new": sweep.items_new,
        "items_skipped": sweep.items_skipped,
        "items_enqueued": sweep.items_enqueued,
        "sources": [run_summary(run) for run in sweep.results],
    }


def _cancel_checker(job_id: str, interval_seconds: float = 2.0) -> Callable[[], bool]:
    """Cancellation probe safe to call from sweep threads.

    Each check opens its own connection and results are reused for
    ``interval_seconds``.
    """
    lock = threading.Lock()
    state = {"checked_at": None, "canceled": False}

    def _check() -> bool:
        with lock:
            if state["canceled"]:
                return True
            now = time.monotonic()
            if state["checked_at"] is not None and now - state["checked_at"] < interval_seconds:
                return False
            state["checked_at"] = now
            conn = init_db()
            try:
                state["canceled"] = is_job_canceled(conn, job_id)
            finally:
                conn.close()
            return bool(state["canceled"])

    return _check


def _should_tick_sweeps(allowed_types: list[str] | None) -> bool:
    if not allowed_types:
        return True
    return "ingest_sweep" in allowed_types


def maybe_enqueue_due_sweeps(conn, config: Config, logger: logging.Logger) -> list[str]:
    """Enqueue an ``ingest_sweep`` job for every kind whose interval has passed."""
    schedule = {
        "rss": config.ingest.schedule.rss_minutes,
        "youtube": config.ingest.schedule.youtube_minutes,
    }
    enqueued = []
    now = utc_now()
    for kind, minutes in schedule.items():
        if minutes <= 0:
            continue
        if _has_pending_sweep(conn, kind):
            continue
        key = f"ingest_sweep.{kind}.last_enqueued_at"
        last_enqueued = get_setting(conn, key, None)
        if isinstance(last_enqueued, str):
            if parse_iso(last_enqueued) + timedelta(minutes=minutes) > now:
                continue
        job_id = enqueue_job(conn, "ingest_sweep", {"kind": kind})
        set_setting(conn, key, utc_now_iso())
        enqueued.append(job_id)
        log_event(logger, logging.INFO, "ingest_sweep_enqueued", kind=kind, job_id=job_id)
    return enqueued


def _has_pending_sweep(conn, kind: str) -> bool:
    for status in ("queued", "running"):
        for job in list_jobs(conn, limit=100, job_type="ingest_sweep", status=status):
            if job.payload.get("kind") == kind:
                return True
    return False


def _parse_only_types(value: str | None) -> list[str] | None:
    if not value:
        return None
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="newsintake-worker")
    parser.add_argument("--once", action="store_true", help="Run a single job and exit")
    parser.add_argument("--sleep", type=int, default=10, help="Sleep seconds between polls")
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    parser.add_argument("--only-job-types", default=os.environ.get("NI_WORKER_ONLY_TYPES", ""))
    parser.add_argument(
        "--concurrency",
        type=int,
        default=int(os.environ.get("NI_WORKER_CONCURRENCY", "1")),
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    allowed_types = _parse_only_types(args.only_job_types)
    if args.once:
        return run_once(args.worker_id, allowed_types)
    return run_loop(args.worker_id, args.sleep, allowed_types, args.concurrency)


if __name__ == "__main__":
    raise SystemExit(main())
