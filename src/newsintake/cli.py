from __future__ import annotations

import argparse
import json
import logging
import os

from .config import ConfigError, load_config, load_sources_file
from .errors import IngestError
from .ingest import preview_source, run_source, run_sweep
from .models import SWEEP_KINDS, SourceKind
from .quota import build_quota_tracker
from .storage import (
    cancel_job,
    count_raw_items,
    enqueue_job,
    get_source,
    get_source_health,
    init_db,
    list_jobs,
    list_source_runs,
    list_sources,
    set_source_enabled,
    upsert_source,
)
from .utils import configure_logging, json_dumps, log_event
from .worker import run_summary, sweep_summary


def _setup_logging() -> logging.Logger:
    return configure_logging("newsintake")


def _load(args: argparse.Namespace, logger: logging.Logger):
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None, None
    return config, init_db(config.paths.state_db)


def _cmd_sweep(args: argparse.Namespace, logger: logging.Logger) -> int:
    config, conn = _load(args, logger)
    if config is None:
        return 1
    conn.close()

    def connect():
        return init_db(config.paths.state_db)

    sweep = run_sweep(
        args.kind,
        config,
        connect=connect,
        quota=build_quota_tracker(config.youtube, connect) if args.kind == "youtube" else None,
        max_workers=args.concurrency,
        logger=logging.getLogger("newsintake.ingest"),
    )
    print(json.dumps(sweep_summary(sweep), indent=2, sort_keys=True))
    return 0 if sweep.sources_failed == 0 else 2


def _cmd_ingest_source(args: argparse.Namespace, logger: logging.Logger) -> int:
    config, conn = _load(args, logger)
    if config is None:
        return 1
    try:
        source = get_source(conn, args.source_id)
        if source is None:
            log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
            return 1
        quota = build_quota_tracker(config.youtube, lambda: init_db(config.paths.state_db))
        run = run_source(
            conn,
            source,
            config,
            quota=quota,
            logger=logging.getLogger("newsintake.ingest"),
        )
    finally:
        conn.close()
    print(json.dumps(run_summary(run), indent=2, sort_keys=True))
    return 0 if run.ok else 2


def _cmd_preview_source(args: argparse.Namespace, logger: logging.Logger) -> int:
    config, conn = _load(args, logger)
    if config is None:
        return 1
    try:
        source = get_source(conn, args.source_id)
    finally:
        conn.close()
    if source is None:
        log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
        return 1
    try:
        collected = preview_source(
            source,
            config,
            quota=build_quota_tracker(config.youtube, lambda: init_db(config.paths.state_db)),
            limit=args.limit,
        )
    except IngestError as exc:
        log_event(
            logger,
            logging.ERROR,
            "source_preview_failed",
            source_id=source.id,
            kind=exc.kind.value,
            error=str(exc),
        )
        print(json.dumps({"ok": False, "source_id": source.id, "error": str(exc)}))
        return 2
    print(
        json_dumps(
            {
                "ok": True,
                "source_id": source.id,
                "items": collected.items,
                "skipped": collected.skipped,
                "warnings": collected.warnings,
            }
        )
    )
    return 0


def _cmd_sources_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    config, conn = _load(args, logger)
    if config is None:
        return 1
    sources_path = args.path or os.environ.get("NI_SOURCES_PATH") or "/config/sources.yml"
    log_event(logger, logging.INFO, "sources_import_path", path=sources_path)
    try:
        sources = load_sources_file(sources_path)
        if not sources:
            log_event(logger, logging.ERROR, "sources_import_error", error="no sources found")
            return 1
        for source in sources:
            try:
                upsert_source(conn, source)
            except ValueError as exc:
                log_event(
                    logger,
                    logging.ERROR,
                    "sources_import_error",
                    source_id=source.get("id"),
                    error=str(exc),
                )
                return 1
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "sources_import_error", error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "sources_imported", count=len(sources))
    return 0


def _cmd_sources_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    config, conn = _load(args, logger)
    if config is None:
        return 1
    try:
        sources = list_sources(conn, enabled_only=False)
        if not sources:
            log_event(
                logger,
                logging.WARNING,
                "no_sources",
                hint="Import sources with `newsintake sources import /config/sources.yml`",
            )
            return 1
        for source in sources:
            health = get_source_health(conn, source.id)
            log_event(
                logger,
                logging.INFO,
                "source",
                source_id=source.id,
                kind=source.kind.value,
                enabled=source.enabled,
                url=source.url,
                health=health.status.value if health else None,
            )
    finally:
        conn.close()
    log_event(logger, logging.INFO, "sources_listed", count=len(sources))
    return 0


def _cmd_sources_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    config, conn = _load(args, logger)
    if config is None:
        return 1
    metadata: dict[str, object] = {}
    if args.query:
        metadata["query"] = args.query
    if args.published_after:
        metadata["published_after"] = args.published_after
    try:
        upsert_source(
            conn,
            {
                "id": args.id,
                "kind": args.kind,
                "name": args.name,
                "url": args.url,
                "enabled": args.enabled,
                "metadata": metadata,
            },
        )
    except ValueError as exc:
        log_event(logger, logging.ERROR, "source_add_error", error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "source_added", source_id=args.id)
    return 0


def _cmd_sources_enable(args: argparse.Namespace, logger: logging.Logger) -> int:
    config, conn = _load(args, logger)
    if config is None:
        return 1
    try:
        updated = set_source_enabled(conn, args.source_id, args.enabled)
    finally:
        conn.close()
    if not updated:
        log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
        return 1
    log_event(
        logger,
        logging.INFO,
        "source_enabled" if args.enabled else "source_disabled",
        source_id=args.source_id,
    )
    return 0


def _cmd_sources_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    config, conn = _load(args, logger)
    if config is None:
        return 1
    try:
        source = get_source(conn, args.source_id)
        if source is None:
            log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
            return 1
        payload = {
            "source": source,
            "items": count_raw_items(conn, source.id),
            "health": get_source_health(conn, source.id),
            "runs": list_source_runs(conn, source.id, limit=args.runs),
        }
    finally:
        conn.close()
    print(json.dumps(json.loads(json_dumps(payload)), indent=2, sort_keys=True))
    return 0


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    config, conn = _load(args, logger)
    if config is None:
        return 1
    conn.close()
    log_event(logger, logging.INFO, "db_migrated", path=config.paths.state_db)
    return 0


def _cmd_jobs_enqueue(args: argparse.Namespace, logger: logging.Logger) -> int:
    payload: dict[str, object] = {}
    if args.job_type == "ingest_source":
        if not args.source_id:
            log_event(logger, logging.ERROR, "job_enqueue_error", error="--source-id is required")
            return 1
        payload["source_id"] = args.source_id
    else:
        if not args.kind:
            log_event(logger, logging.ERROR, "job_enqueue_error", error="--kind is required")
            return 1
        payload["kind"] = args.kind
    config, conn = _load(args, logger)
    if config is None:
        return 1
    try:
        job_id = enqueue_job(conn, args.job_type, payload)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "job_enqueued", job_id=job_id, job_type=args.job_type)
    return 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    config, conn = _load(args, logger)
    if config is None:
        return 1
    try:
        jobs = list_jobs(conn, limit=args.limit, job_type=args.job_type, status=args.status)
    finally:
        conn.close()
    for job in jobs:
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            job_type=job.job_type,
            status=job.status,
            requested_at=job.requested_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
            error=job.error,
        )
    return 0


def _cmd_jobs_cancel(args: argparse.Namespace, logger: logging.Logger) -> int:
    config, conn = _load(args, logger)
    if config is None:
        return 1
    try:
        canceled = cancel_job(conn, args.job_id)
    finally:
        conn.close()
    if not canceled:
        log_event(logger, logging.ERROR, "job_cancel_failed", job_id=args.job_id)
        return 1
    log_event(logger, logging.INFO, "job_canceled", job_id=args.job_id)
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    log_event(logger, logging.INFO, "admin_api_start", host=args.host, port=args.port)
    uvicorn.run("newsintake.admin:app", host=args.host, port=args.port, proxy_headers=True)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="newsintake", description="newsintake CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to NI_CONFIG_PATH or built-in defaults)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    sweep_parser = subparsers.add_parser("sweep", help="Ingest every enabled source of one kind")
    sweep_parser.add_argument("kind", choices=sorted(SWEEP_KINDS))
    sweep_parser.add_argument("--concurrency", type=int, default=None, help="Parallel source runs")
    sweep_parser.set_defaults(func=_cmd_sweep)

    ingest_parser = subparsers.add_parser("ingest-source", help="Ingest one source now")
    ingest_parser.add_argument("source_id", help="Source id")
    ingest_parser.set_defaults(func=_cmd_ingest_source)

    preview_parser = subparsers.add_parser(
        "preview-source", help="Fetch and normalize a source without storing anything"
    )
    preview_parser.add_argument("source_id", help="Source id")
    preview_parser.add_argument("--limit", type=int, default=10, help="Preview item limit")
    preview_parser.set_defaults(func=_cmd_preview_source)

    sources_parser = subparsers.add_parser("sources", help="Manage sources")
    sources_subparsers = sources_parser.add_subparsers(dest="sources_command", required=True)

    sources_import = sources_subparsers.add_parser("import", help="Import sources from YAML")
    sources_import.add_argument("path", nargs="?", help="Path to sources YAML file")
    sources_import.set_defaults(func=_cmd_sources_import)

    sources_list = sources_subparsers.add_parser("list", help="List sources")
    sources_list.set_defaults(func=_cmd_sources_list)

    sources_add = sources_subparsers.add_parser("add", help="Add or update a source")
    sources_add.add_argument("--id", required=True, help="Source id")
    sources_add.add_argument("--name", required=True, help="Source name")
    sources_add.add_argument(
        "--kind", required=True, choices=[kind.value for kind in SourceKind], help="Source kind"
    )
    sources_add.add_argument("--url", default=None, help="Feed or channel URL")
    sources_add.add_argument("--query", default=None, help="Search query for youtube_search")
    sources_add.add_argument(
        "--published-after", default=None, help="Backfill hint (ISO 8601 timestamp)"
    )
    sources_add.add_argument(
        "--enabled",
        dest="enabled",
        action="store_true",
        default=True,
        help="Enable the source",
    )
    sources_add.add_argument(
        "--disabled",
        dest="enabled",
        action="store_false",
        help="Disable the source",
    )
    sources_add.set_defaults(func=_cmd_sources_add)

    sources_enable = sources_subparsers.add_parser("enable", help="Enable a source")
    sources_enable.add_argument("source_id", help="Source id")
    sources_enable.set_defaults(func=_cmd_sources_enable, enabled=True)

    sources_disable = sources_subparsers.add_parser("disable", help="Disable a source")
    sources_disable.add_argument("source_id", help="Source id")
    sources_disable.set_defaults(func=_cmd_sources_enable, enabled=False)

    sources_show = sources_subparsers.add_parser("show", help="Show a source with health and runs")
    sources_show.add_argument("source_id", help="Source id")
    sources_show.add_argument("--runs", type=int, default=5, help="Number of recent runs")
    sources_show.set_defaults(func=_cmd_sources_show)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)

    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    jobs_parser = subparsers.add_parser("jobs", help="Job queue commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_enqueue = jobs_subparsers.add_parser("enqueue", help="Enqueue an ingestion job")
    jobs_enqueue.add_argument("job_type", choices=["ingest_sweep", "ingest_source"])
    jobs_enqueue.add_argument("--source-id", help="Source id for ingest_source")
    jobs_enqueue.add_argument("--kind", choices=sorted(SWEEP_KINDS), help="Kind for ingest_sweep")
    jobs_enqueue.set_defaults(func=_cmd_jobs_enqueue)

    jobs_list = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_list.add_argument("--job-type", default=None, help="Filter by job type")
    jobs_list.add_argument("--status", default=None, help="Filter by status")
    jobs_list.set_defaults(func=_cmd_jobs_list)

    jobs_cancel = jobs_subparsers.add_parser("cancel", help="Cancel a queued or running job")
    jobs_cancel.add_argument("job_id", help="Job id")
    jobs_cancel.set_defaults(func=_cmd_jobs_cancel)

    serve_parser = subparsers.add_parser("serve", help="Run the admin API")
    serve_parser.add_argument("--host", default=os.environ.get("NI_ADMIN_HOST", "0.0.0.0"))
    serve_parser.add_argument(
        "--port", type=int, default=int(os.environ.get("NI_ADMIN_PORT", "8001"))
    )
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
