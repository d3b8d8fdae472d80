from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from .config import Config
from .errors import IngestError
from .fetchers import Collected, Fetcher, build_fetcher
from .models import SWEEP_KINDS, HealthStatus, Source, SourceKind
from .normalize import Skipped
from .quota import QuotaTracker, build_quota_tracker
from .storage import (
    enqueue_job,
    list_sources,
    record_source_run,
    update_source_health,
    update_source_metadata,
    upsert_raw_item,
)
from .utils import log_event, truncate, utc_now_iso
from .youtube import YouTubeClient


class RunStage(str, Enum):
    START = "start"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    DEDUPING = "deduping"
    ENQUEUEING = "enqueueing"
    HEALTH_RECORDED = "health_recorded"
    FAILED = "failed"


@dataclass
class SourceRunResult:
    source_id: str
    kind: SourceKind
    stage: RunStage = RunStage.START
    status: HealthStatus = HealthStatus.OK
    found_count: int = 0
    skipped_count: int = 0
    new_count: int = 0
    known_count: int = 0
    enqueued_count: int = 0
    canceled: bool = False
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    raw_item_ids: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status != HealthStatus.ERROR


@dataclass(frozen=True)
class SweepResult:
    kind: str
    sources_ok: int
    sources_failed: int
    items_found: int
    items_new: int
    items_skipped: int
    items_enqueued: int
    results: list[SourceRunResult]


def run_source(
    conn,
    source: Source,
    config: Config,
    *,
    fetcher: Fetcher | None = None,
    quota: QuotaTracker | None = None,
    youtube_client: YouTubeClient | None = None,
    logger: logging.Logger | None = None,
    should_cancel: Callable[[], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> SourceRunResult:
    """Fetch, normalize, dedup and hand off the new items of one source.

    Exactly one health record and one run-history row are written per call,
    whatever happens. Fetch failures end the run as ``error`` and are not
    raised; any other exception is recorded and then re-raised.
    """
    logger = logger or logging.getLogger("newsintake.ingest")
    run = SourceRunResult(source_id=source.id, kind=source.kind)
    started_at = utc_now_iso()
    log_event(logger, logging.INFO, "source_run_start", source_id=source.id, kind=source.kind.value)
    try:
        run.stage = RunStage.FETCHING
        try:
            if fetcher is None:
                fetcher = build_fetcher(
                    source.kind,
                    config,
                    quota=quota,
                    youtube_client=youtube_client,
                    persist_metadata=lambda source_id, updates: update_source_metadata(
                        conn, source_id, updates
                    ),
                    sleep=sleep,
                )
            batch = fetcher.fetch(source)
        except IngestError as exc:
            run.stage = RunStage.FAILED
            run.status = HealthStatus.ERROR
            run.error = str(exc)
            log_event(
                logger,
                logging.ERROR,
                "source_fetch_failed",
                source_id=source.id,
                kind=exc.kind.value,
                error=str(exc),
            )
            return run

        run.found_count = len(batch.records)
        run.warnings.extend(batch.warnings)

        run.stage = RunStage.NORMALIZING
        items = []
        for record in batch.records:
            result = fetcher.normalize(record, source)
            if isinstance(result, Skipped):
                run.skipped_count += 1
                log_event(
                    logger,
                    logging.DEBUG,
                    "entry_skipped",
                    source_id=source.id,
                    reason=result.reason,
                )
                continue
            items.append(result.item)

        run.stage = RunStage.DEDUPING
        for item in items:
            if should_cancel is not None and should_cancel():
                run.canceled = True
                run.warnings.append("run canceled before all items were processed")
                log_event(logger, logging.WARNING, "source_run_canceled", source_id=source.id)
                break
            # The row and its downstream job commit together or not at all.
            with conn.transaction():
                run.stage = RunStage.DEDUPING
                item_id = upsert_raw_item(conn, item)
                if item_id is not None:
                    run.stage = RunStage.ENQUEUEING
                    enqueue_job(conn, config.ingest.downstream_task, {"raw_item_id": item_id})
            if item_id is None:
                run.known_count += 1
            else:
                run.raw_item_ids.append(item_id)
                run.enqueued_count += 1
        run.new_count = len(run.raw_item_ids)

        if run.skipped_count or run.warnings or run.canceled:
            run.status = HealthStatus.WARN
        return run
    except Exception as exc:
        run.status = HealthStatus.ERROR
        run.error = str(exc) or exc.__class__.__name__
        log_event(
            logger,
            logging.ERROR,
            "source_run_error",
            source_id=source.id,
            stage=run.stage.value,
            error=run.error,
        )
        raise
    finally:
        _record_outcome(conn, run, started_at, config.ingest.error_max_length, logger)


def _record_outcome(
    conn,
    run: SourceRunResult,
    started_at: str,
    error_max_length: int,
    logger: logging.Logger,
) -> None:
    last_error = run.error
    if last_error is None and run.status == HealthStatus.WARN:
        last_error = "; ".join(run.warnings) or f"{run.skipped_count} entries skipped"
    last_error = truncate(last_error, error_max_length)
    if run.status == HealthStatus.ERROR:
        # A failed statement can leave the connection in an aborted transaction.
        conn.rollback()
    finished_at = utc_now_iso()
    update_source_health(conn, run.source_id, run.status, last_error, finished_at)
    record_source_run(
        conn,
        run.source_id,
        started_at=started_at,
        finished_at=finished_at,
        status=run.status.value,
        items_found=run.found_count,
        items_skipped=run.skipped_count,
        items_new=run.new_count,
        items_known=run.known_count,
        items_enqueued=run.enqueued_count,
        error=last_error,
    )
    if run.stage != RunStage.FAILED:
        run.stage = RunStage.HEALTH_RECORDED
    log_event(
        logger,
        logging.INFO,
        "source_run_done",
        source_id=run.source_id,
        status=run.status.value,
        found=run.found_count,
        skipped=run.skipped_count,
        new=run.new_count,
        known=run.known_count,
        enqueued=run.enqueued_count,
    )


def run_sweep(
    kind: str,
    config: Config,
    *,
    connect: Callable[[], Any],
    quota: QuotaTracker | None = None,
    youtube_client: YouTubeClient | None = None,
    max_workers: int | None = None,
    logger: logging.Logger | None = None,
    should_cancel: Callable[[], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> SweepResult:
    """Run every enabled source of one sweep kind concurrently.

    Each source run gets its own connection; a failure in one run is logged
    and counted without affecting the others.
    """
    if kind not in SWEEP_KINDS:
        raise ValueError(f"unknown sweep kind {kind!r}; expected one of {sorted(SWEEP_KINDS)}")
    logger = logger or logging.getLogger("newsintake.ingest")
    conn = connect()
    try:
        sources = list_sources(conn, kinds=SWEEP_KINDS[kind], enabled_only=True)
    finally:
        conn.close()
    if quota is None and kind == "youtube":
        quota = build_quota_tracker(config.youtube, connect)
    log_event(logger, logging.INFO, "sweep_start", kind=kind, sources=len(sources))

    def _run_one(source: Source) -> SourceRunResult:
        source_conn = connect()
        try:
            return run_source(
                source_conn,
                source,
                config,
                quota=quota,
                youtube_client=youtube_client,
                logger=logger,
                should_cancel=should_cancel,
                sleep=sleep,
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.ERROR,
                "sweep_source_failed",
                source_id=source.id,
                error=str(exc),
            )
            return SourceRunResult(
                source_id=source.id,
                kind=source.kind,
                stage=RunStage.HEALTH_RECORDED,
                status=HealthStatus.ERROR,
                error=str(exc) or exc.__class__.__name__,
            )
        finally:
            source_conn.close()

    results: list[SourceRunResult] = []
    if sources:
        workers = max(1, min(max_workers or config.ingest.concurrency, len(sources)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(executor.map(_run_one, sources))

    sweep = SweepResult(
        kind=kind,
        sources_ok=sum(1 for result in results if result.ok),
        sources_failed=sum(1 for result in results if not result.ok),
        items_found=sum(result.found_count for result in results),
        items_new=sum(result.new_count for result in results),
        items_skipped=sum(result.skipped_count for result in results),
        items_enqueued=sum(result.enqueued_count for result in results),
        results=results,
    )
    log_event(
        logger,
        logging.INFO,
        "sweep_done",
        kind=kind,
        sources_ok=sweep.sources_ok,
        sources_failed=sweep.sources_failed,
        items_new=sweep.items_new,
        items_skipped=sweep.items_skipped,
    )
    return sweep


def sweep_feeds(config: Config, *, connect: Callable[[], Any], **kwargs: Any) -> SweepResult:
    return run_sweep("rss", config, connect=connect, **kwargs)


def sweep_youtube(config: Config, *, connect: Callable[[], Any], **kwargs: Any) -> SweepResult:
    return run_sweep("youtube", config, connect=connect, **kwargs)


def preview_source(
    source: Source,
    config: Config,
    *,
    fetcher: Fetcher | None = None,
    quota: QuotaTracker | None = None,
    youtube_client: YouTubeClient | None = None,
    limit: int | None = None,
) -> Collected:
    """Fetch and normalize without touching the store or the job queue."""
    fetcher = fetcher or build_fetcher(
        source.kind, config, quota=quota, youtube_client=youtube_client
    )
    collected = fetcher.collect(source)
    if limit is not None:
        return Collected(
            items=collected.items[:limit],
            skipped=collected.skipped,
            warnings=collected.warnings,
        )
    return collected
