"""Entry point for the report ingestion pipeline.

Usage::

    python -m report_ingest inbox        # save report emails already in the inbox
    python -m report_ingest watermarks   # print the stored per-category watermarks

Triggered runs need a concrete trigger driver and are started from code
via ``ReportIngestionOrchestrator.run``.
"""

from __future__ import annotations

import asyncio
import sys

import structlog

from .archive import RawReportArchive
from .config import PipelineConfig
from .db import Database
from .errors import ConfigurationError, NoReportsCollectedError
from .handlers import default_registry
from .inbox import ImapInboxPoller
from .logging import setup_logging
from .orchestrator import ReportIngestionOrchestrator
from .watermarks import SqlWatermarkStore

logger = structlog.get_logger()


async def run_inbox(config: PipelineConfig) -> int:
    config.require_mailbox()
    database = Database(config.storage.database_url)
    await database.create_all()
    watermarks = SqlWatermarkStore(database)
    archive = RawReportArchive(config.archive)
    await archive.start()
    try:
        async with ImapInboxPoller(config.imap, config.storage.download_dir, config.retry) as inbox:
            orchestrator = ReportIngestionOrchestrator(
                config,
                inbox=inbox,
                watermarks=watermarks,
                handlers=default_registry(database, watermarks),
                archive=archive,
            )
            result = await orchestrator.run_inbox_only()
    except NoReportsCollectedError as exc:
        logger.error("run_failed", error=str(exc))
        return 1
    finally:
        await archive.stop()
        await database.close()

    print(result.model_dump_json(indent=2))
    return 0


async def show_watermarks(config: PipelineConfig) -> int:
    database = Database(config.storage.database_url)
    try:
        await database.create_all()
        watermarks = await SqlWatermarkStore(database).all()
    finally:
        await database.close()

    if not watermarks:
        print("No watermarks stored yet.")
    for mark in watermarks:
        print(
            f"{mark.category.value:<24} {mark.high_water_mark.isoformat():<27} "
            f"{mark.record_count:>7}  {mark.note}"
        )
    return 0


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in ("inbox", "watermarks"):
        print("Usage: python -m report_ingest <inbox|watermarks>", file=sys.stderr)
        sys.exit(1)

    config = PipelineConfig()
    try:
        setup_logging(json=config.log_json, level=config.log_level)
        if sys.argv[1] == "inbox":
            code = asyncio.run(run_inbox(config))
        else:
            code = asyncio.run(show_watermarks(config))
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
