"""
Inbox Sync Scheduler - Cron and On-Demand Execution

Periodically scans INBOX_DIR for GDS exports and feeds them to the ingestion
service in batches of at most BATCH_MAX_DOCUMENTS.

Features:
- Cron-based scheduling (configurable via SYNC_SCHEDULE_CRON)
- RUN_ONCE mode for immediate execution
- Stops a sync run as soon as a batch halts or the cooldown guard is active
- Graceful shutdown handling

Usage:
    # Scheduled mode (default)
    python -m apps.ingestor

    # Run once and exit
    RUN_ONCE=true python -m apps.ingestor
"""

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from apps.ingestor.documents import document_from_file, is_supported_file
from apps.ingestor.service import IngestionService, build_service
from utils.config import settings
from utils.errors import BatchRejectedError, ValidationFailure
from utils.logging import setup_logging
from utils.schemas import AgencyContext, Document, JobSummary

logger = logging.getLogger(__name__)


def scan_inbox(inbox: Path) -> list[Path]:
    """Accepted files in the inbox, oldest name first."""
    if not inbox.is_dir():
        logger.warning("Inbox directory does not exist", extra={"inbox": str(inbox)})
        return []
    return sorted(p for p in inbox.iterdir() if p.is_file() and is_supported_file(p))


class IngestionScheduler:
    """
    Scheduler for periodic or on-demand inbox syncs.

    Handles:
    - APScheduler setup and management
    - Batching inbox files under the document cap
    - RUN_ONCE immediate execution
    - Signal handling for graceful shutdown
    """

    def __init__(
        self,
        service: IngestionService,
        agency: AgencyContext,
        inbox: Path,
        batch_size: int,
        cron: str = "*/30 * * * *",
        run_once: bool = False,
        char_budget: int = 4000,
    ) -> None:
        self.service = service
        self.agency = agency
        self.inbox = inbox
        self.batch_size = batch_size
        self.cron = cron
        self.run_once = run_once
        self.char_budget = char_budget
        self.scheduler: AsyncIOScheduler | None = None
        self.shutdown_event = asyncio.Event()
        self._lock = asyncio.Lock()

        logger.info(
            "IngestionScheduler initialized",
            extra={"run_once": run_once, "cron_schedule": cron, "inbox": str(inbox)},
        )

    def load_documents(self, files: list[Path]) -> list[Document]:
        """Read inbox files one by one; an unreadable or empty file is left out on its own."""
        documents: list[Document] = []
        for path in files:
            try:
                documents.append(document_from_file(path, self.char_budget))
            except (ValidationFailure, OSError) as e:
                logger.warning(
                    "Skipping inbox file",
                    extra={"file": path.name, "error": str(e)},
                )
        return documents

    async def sync_inbox(self) -> list[JobSummary]:
        """
        Submit every accepted inbox file, batch by batch.

        Already ingested files are skipped by the orchestrator. A run stops at
        the first halted or rejected batch; the next run picks up the rest.
        """
        if self._lock.locked():
            logger.info("Previous sync still running, skipping this run")
            return []

        summaries: list[JobSummary] = []
        async with self._lock:
            files = scan_inbox(self.inbox)
            documents = self.load_documents(files)
            logger.info(
                "Starting inbox sync",
                extra={"files": len(files), "documents": len(documents)},
            )

            for start in range(0, len(documents), self.batch_size):
                batch = documents[start : start + self.batch_size]
                try:
                    summary = await self.service.submit(batch, self.agency)
                except BatchRejectedError as e:
                    logger.warning("Batch rejected, stopping sync", extra={"error": str(e)})
                    break

                summaries.append(summary)
                if summary.halted:
                    logger.warning(
                        "Batch halted, stopping sync",
                        extra={"cooldown_until": summary.cooldown_until},
                    )
                    break

            logger.info(
                "Inbox sync completed",
                extra={
                    "batches": len(summaries),
                    "tickets_created": sum(s.tickets_created for s in summaries),
                },
            )

        return summaries

    async def execute_sync(self) -> None:
        """Run one sync, signalling shutdown afterwards in RUN_ONCE mode."""
        try:
            await self.sync_inbox()

        except Exception as e:
            logger.error("Inbox sync failed", extra={"error": str(e)}, exc_info=True)
            raise

        finally:
            if self.run_once:
                logger.info("RUN_ONCE mode: signaling shutdown")
                self.shutdown_event.set()

    def setup_signal_handlers(self) -> None:
        """Setup handlers for graceful shutdown on SIGINT/SIGTERM."""

        def signal_handler(signum: int, frame: object) -> None:
            logger.info(f"Received signal {signum}, initiating graceful shutdown")
            self.shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def start(self) -> None:
        """
        Start scheduler or execute once.

        In scheduled mode, runs continuously until shutdown signal.
        In RUN_ONCE mode, executes immediately and exits.
        """
        self.setup_signal_handlers()

        if self.run_once:
            logger.info("Running in RUN_ONCE mode")
            await self.execute_sync()
            return

        logger.info("Running in scheduled mode")

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.execute_sync,
            trigger=CronTrigger.from_crontab(self.cron),
            id="inbox_sync_job",
            name="Periodic Inbox Sync",
            replace_existing=True,
            max_instances=1,
        )

        # Start scheduler first to get next_run_time
        self.scheduler.start()
        job = self.scheduler.get_job("inbox_sync_job")
        next_run = getattr(job, "next_run_time", None)

        logger.info(
            "Scheduled inbox sync job",
            extra={"schedule": self.cron, "next_run": str(next_run) if next_run else None},
        )

        await self.shutdown_event.wait()

        logger.info("Shutting down scheduler")
        if self.scheduler:
            self.scheduler.shutdown(wait=True)
        logger.info("Scheduler shutdown complete")


async def main() -> None:
    """Main entry point for the inbox scheduler."""
    setup_logging(level=settings.LOG_LEVEL, format_type=settings.LOG_FORMAT)
    run_once = os.getenv("RUN_ONCE", "false").lower() in ("true", "1", "yes")

    if not settings.DEFAULT_AGENCY_ID:
        logger.error("DEFAULT_AGENCY_ID must be set for inbox sync")
        sys.exit(1)

    service = build_service(settings)
    scheduler = IngestionScheduler(
        service,
        AgencyContext(agency_id=settings.DEFAULT_AGENCY_ID, agent_email=settings.DEFAULT_AGENT_EMAIL),
        Path(settings.INBOX_DIR),
        batch_size=settings.BATCH_MAX_DOCUMENTS,
        cron=settings.SYNC_SCHEDULE_CRON,
        run_once=run_once,
        char_budget=settings.DOCUMENT_CHAR_BUDGET,
    )

    try:
        await scheduler.start()
    except Exception as e:
        logger.error("Scheduler failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)
    finally:
        await service.aclose()


if __name__ == "__main__":
    asyncio.run(main())
