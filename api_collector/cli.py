from __future__ import annotations

import argparse
import dataclasses
import logging
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from dotenv import load_dotenv

from .checkpoints import ensure_checkpoints_table, get_checkpoint, set_checkpoint
from .config import Settings, load_settings
from .db import connect, fetchall
from .logging_utils import configure_logging, get_logger, log_json
from .models import Checkpoint
from .registry import build_job
from .runs import ensure_runs_table, finish_run, start_run
from .storage import LocalJsonlRawStore, PostgresRawStore
from .utils import now_utc, parse_iso


def cmd_status(conn, job_key: str | None):
    sql = """
    SELECT c.job_key, c.last_since_utc, c.updated_at_utc,
           (SELECT r.status FROM collector_runs r WHERE r.job_key = c.job_key
            ORDER BY r.started_at_utc DESC LIMIT 1)
    FROM collector_checkpoints c
    """
    if job_key:
        return fetchall(conn, sql + " WHERE c.job_key = %s", (job_key,))
    return fetchall(conn, sql + " ORDER BY c.job_key", ())


def run_job(
    conn,
    settings: Settings,
    job_name: str,
    *,
    incremental: bool = False,
    since: datetime | None = None,
    batch_size: int | None = None,
    concurrency: int | None = None,
    page_size: int | None = None,
    dry_run: bool = False,
) -> int:
    job = build_job(settings, job_name)
    logger = get_logger()
    run_id = str(uuid4())
    started_at = now_utc()

    ensure_checkpoints_table(conn)
    ensure_runs_table(conn)
    cp = get_checkpoint(conn, job.key)
    if incremental and since is None:
        since = cp.last_since_utc
        if since is None:
            raise SystemExit(f"No watermark recorded for {job.key}; run a full collection or pass --since.")
    log_json(logger, logging.INFO, "checkpoint_loaded", job=job.key, last_since=cp.last_since_utc, since=since)

    options = settings.collector_options(
        batch_size=batch_size,
        concurrency=concurrency,
        page_size=page_size,
        since=since,
        incremental=incremental,
    )

    if dry_run:
        sink = LocalJsonlRawStore(str(Path(settings.raw_dry_run_dir) / f"{job.table}.jsonl"))
    else:
        sink = PostgresRawStore(settings.database_url, job.table)
        sink.ensure_table()
        start_run(conn, run_id, job.key)

    try:
        stats = job.run(conn, sink, options)

        if not dry_run:
            set_checkpoint(conn, Checkpoint(job_name=job.key, last_since_utc=started_at, meta={"run_id": run_id}))
            finish_run(conn, run_id, "SUCCESS", stats.__dict__, None)

        log_json(logger, logging.INFO, "run_complete", job=job.key, run_id=run_id, stats=stats.__dict__, dry_run=dry_run)
        return 0

    except Exception as e:
        if not dry_run:
            conn.rollback()
            finish_run(conn, run_id, "FAILED", {}, f"{type(e).__name__}: {e}")
        log_json(logger, logging.ERROR, "run_failed", job=job.key, run_id=run_id, error=str(e))
        raise

    finally:
        close = getattr(sink, "close", None)
        if callable(close):
            close()


def schedule_loop(settings: Settings) -> None:
    from apscheduler.schedulers.blocking import BlockingScheduler
    from apscheduler.triggers.interval import IntervalTrigger

    logger = get_logger()
    sched = BlockingScheduler(timezone="UTC")

    def job(name: str):
        with connect(settings.database_url) as conn:
            try:
                ensure_checkpoints_table(conn)
                cp = get_checkpoint(conn, build_job(settings, name).key)
                run_job(conn, settings, name, incremental=cp.last_since_utc is not None)
            except Exception as e:
                log_json(logger, logging.ERROR, "scheduled_job_failed", job=name, error=str(e))

    sched.add_job(
        lambda: job("jira_epics"),
        IntervalTrigger(minutes=settings.sched_jira_epics_minutes),
        id="jira_epics",
        max_instances=1,
    )

    log_json(logger, logging.INFO, "scheduler_started", schedules={"jira_epics_minutes": settings.sched_jira_epics_minutes})
    sched.start()


def main(argv=None):
    load_dotenv(override=False)
    settings = load_settings()
    configure_logging(settings.log_level)

    parser = argparse.ArgumentParser(prog="api_collector")
    sub = parser.add_subparsers(dest="cmd", required=True)

    collect = sub.add_parser("collect", help="Collection commands")
    collect_sub = collect.add_subparsers(dest="collect_cmd", required=True)

    runp = collect_sub.add_parser("run", help="Run a collection job once")
    runp.add_argument("job", type=str)
    runp.add_argument("--incremental", action="store_true", help="Only collect records updated since the watermark")
    runp.add_argument("--since", type=parse_iso, default=None, help="ISO-8601 lower bound, overrides the watermark")
    runp.add_argument("--batch-size", type=int, default=None)
    runp.add_argument("--concurrency", type=int, default=None)
    runp.add_argument("--page-size", type=int, default=None)
    runp.add_argument("--connection-id", type=int, default=None)
    runp.add_argument("--board-id", type=int, default=None)
    runp.add_argument("--dry-run", action="store_true", help="Write raw records to a local JSONL file")

    statp = collect_sub.add_parser("status", help="Show watermarks and last run status")
    statp.add_argument("job_key", type=str, nargs="?", default=None)

    collect_sub.add_parser("schedule", help="Run APScheduler loop")

    args = parser.parse_args(argv)

    if args.collect_cmd == "schedule":
        schedule_loop(settings)
        return 0

    with connect(settings.database_url) as conn:
        if args.collect_cmd == "status":
            ensure_checkpoints_table(conn)
            ensure_runs_table(conn)
            for r in cmd_status(conn, args.job_key):
                print(f"{r[0]}  since={r[1]}  updated={r[2]}  last_run={r[3]}")
            return 0

        if args.collect_cmd == "run":
            overrides = {}
            if args.connection_id is not None:
                overrides["jira_connection_id"] = args.connection_id
            if args.board_id is not None:
                overrides["jira_board_id"] = args.board_id
            return run_job(
                conn,
                dataclasses.replace(settings, **overrides),
                args.job,
                incremental=args.incremental,
                since=args.since,
                batch_size=args.batch_size,
                concurrency=args.concurrency,
                page_size=args.page_size,
                dry_run=args.dry_run,
            )

    return 0
