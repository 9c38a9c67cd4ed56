"""
Command-line interface.

Runs migrations against ClickHouse, keeping durable state in a SQLite file.

Environment:
    CLICKHOUSE_HOST, CLICKHOUSE_PORT, CLICKHOUSE_USER, CLICKHOUSE_PASSWORD,
    CLICKHOUSE_DATABASE, CLICKHOUSE_SECURE, CLICKHOUSE_TIMEOUT
        ClickHouse connection (see ClickHouseSettings.from_env)
    RELAYOUT_STATE_DB
        SQLite state file (default: relayout.db)
    RELAYOUT_LOCK_LEASE_SECONDS
        Lease on a running job's target lock (default: 30)

Usage:
    relayout start job.json
    relayout status 6f1c...
    relayout pause 6f1c...
    relayout resume 6f1c...
    relayout cutover 6f1c...
    relayout rollback 6f1c...
    relayout purge 6f1c... --force

A job runs inside the process that started or resumed it. ``start`` and
``resume`` therefore wait until the job stops (completed, cut over, paused
or failed). ``start --no-wait`` only plans the job and leaves it paused.
While a job runs, its process holds a lease lock in the state file: another
process can pause or cancel the job (the running loop picks the request up)
but cannot resume it.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any
from uuid import UUID

import aiosqlite
from decouple import config
from pydantic import ValidationError

from relayout.controller import MigrationController
from relayout.engine.clickhouse import ClickHouseSettings, ClickHouseStorageEngine
from relayout.exceptions import MigrationError
from relayout.locks import SQLiteLockManager
from relayout.models import JobSpec, JobStatus
from relayout.repositories import SQLiteJobRepository, SQLiteProgressLedger
from relayout.schema import get_schema
from relayout.serialization import json_dumps

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relayout",
        description="Migrate a table to a new layout partition by partition",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    start = commands.add_parser("start", help="Plan and run a new job")
    start.add_argument("spec", type=Path, help="JSON job spec (source, target, config)")
    start.add_argument(
        "--no-wait",
        action="store_true",
        help="Only plan the job and leave it paused",
    )

    for name, help_text in (
        ("status", "Show a job and its units"),
        ("pause", "Pause a job after in-flight units finish"),
        ("resume", "Resume a paused or interrupted job and wait for it"),
        ("cancel", "Cancel a job; the target is left for disposal"),
        ("cutover", "Swap the target in for a completed job"),
        ("rollback", "Swap the original back in after a cutover"),
        ("purge", "Drop the original retained after a cutover"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("job_id", type=UUID, help="Job id")
        if name == "purge":
            command.add_argument(
                "--force",
                action="store_true",
                help="Purge before the retention window ends",
            )

    return parser


def _emit(payload: dict[str, Any]) -> None:
    print(json_dumps(payload, indent=2))


async def run_command(controller: MigrationController, args: argparse.Namespace) -> int:
    """
    Execute one parsed command.

    Returns:
        Process exit code: 1 when the job is failed, 0 otherwise.
    """
    if args.command == "start":
        spec = JobSpec.model_validate_json(args.spec.read_text(encoding="utf-8"))
        job = await controller.start_job(spec)
        if args.no_wait:
            await controller.pause_job(job.id)
        await controller.join(job.id)
        report = await controller.get_status(job.id)
        _emit(report.to_dict())
        return 1 if report.job.status == JobStatus.FAILED else 0

    if args.command == "status":
        report = await controller.get_status(args.job_id)
        _emit(report.to_dict())
        return 1 if report.job.status == JobStatus.FAILED else 0

    if args.command == "pause":
        job = await controller.pause_job(args.job_id)
        _emit(job.to_dict())
        return 0

    if args.command == "resume":
        await controller.resume_job(args.job_id)
        job = await controller.join(args.job_id)
        report = await controller.get_status(job.id)
        _emit(report.to_dict())
        return 1 if job.status == JobStatus.FAILED else 0

    if args.command == "cancel":
        job = await controller.cancel_job(args.job_id)
        await controller.join(job.id)
        _emit((await controller.get_status(job.id)).to_dict())
        return 0

    if args.command == "cutover":
        record = await controller.trigger_cutover(args.job_id)
        _emit(record.to_dict())
        return 0 if record.success else 1

    if args.command == "rollback":
        job = await controller.rollback_cutover(args.job_id)
        _emit(job.to_dict())
        return 0

    if args.command == "purge":
        job = await controller.purge_retained(args.job_id, force=args.force)
        _emit(job.to_dict())
        return 0

    raise ValueError(f"Unknown command: {args.command}")


async def _run(args: argparse.Namespace) -> int:
    state_db = config("RELAYOUT_STATE_DB", default="relayout.db")
    lease_seconds = config("RELAYOUT_LOCK_LEASE_SECONDS", default=30.0, cast=float)
    engine = await ClickHouseStorageEngine.connect(ClickHouseSettings.from_env())
    try:
        async with aiosqlite.connect(state_db) as db:
            await db.executescript(get_schema("sqlite"))
            controller = MigrationController(
                engine,
                SQLiteJobRepository(db),
                SQLiteProgressLedger(db),
                lock_manager=SQLiteLockManager(db, lease_seconds=lease_seconds),
            )
            try:
                return await run_command(controller, args)
            finally:
                await controller.shutdown()
    finally:
        await engine.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level, format=LOG_FORMAT)

    try:
        return asyncio.run(_run(args))
    except MigrationError as e:
        logger.error("%s", e)
        print(json_dumps({"error": e.to_dict()}, indent=2), file=sys.stderr)
        return 1
    except ValidationError as e:
        logger.error("Invalid job spec: %s", e)
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted; resume the job with 'relayout resume'")
        return 1


if __name__ == "__main__":
    sys.exit(main())
