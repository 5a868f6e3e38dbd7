"""
Batch orchestrator.

Runs a batch of documents strictly one at a time:

    Waiting (not for the first) -> Uploading -> Extracting -> CreatingRecords
    -> Completed | NoData | Failed

Failures are contained per document and per ticket. Only systemic overload
stops the batch: the cooldown guard is triggered, the remaining documents
stay pending and the summary of what was done is still returned. The only
errors raised to the caller are batch rejections (cooldown active, too many
documents, nothing to process).
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from apps.ingestor.chain import RecordChainBuilder
from apps.ingestor.cooldown import CooldownGuard
from apps.ingestor.extraction import ExtractionStage
from utils.clock import Clock
from utils.db import EntityStores
from utils.errors import (
    BatchTooLargeError,
    CooldownActiveError,
    IngestionError,
    ValidationFailure,
    is_systemic_overload,
)
from utils.schemas import (
    AgencyContext,
    Document,
    DocumentProgress,
    DocumentStatus,
    IngestionJob,
    JobSummary,
    Outcome,
    TicketCandidate,
)
from utils.sftp import Uploader

logger = logging.getLogger(__name__)

# Ledger statuses that mean a document never needs processing again.
INGESTED_STATUSES = (DocumentStatus.COMPLETED.value, DocumentStatus.NO_DATA.value)


class BatchOrchestrator:
    def __init__(
        self,
        extraction: ExtractionStage,
        builder: RecordChainBuilder,
        cooldown: CooldownGuard,
        stores: EntityStores,
        uploader: Uploader,
        clock: Clock,
        *,
        max_documents: int = 2,
        inter_document_delay: float = 10.0,
        inter_ticket_delay: float = 3.0,
        post_upload_delay: float = 2.0,
        document_cooldown: float = 300.0,
        batch_cooldown: float = 600.0,
    ) -> None:
        self._extraction = extraction
        self._builder = builder
        self._cooldown = cooldown
        self._stores = stores
        self._uploader = uploader
        self._clock = clock
        self.max_documents = max_documents
        self.inter_document_delay = inter_document_delay
        self.inter_ticket_delay = inter_ticket_delay
        self.post_upload_delay = post_upload_delay
        self.document_cooldown = document_cooldown
        self.batch_cooldown = batch_cooldown

    async def run(self, documents: list[Document], agency: AgencyContext) -> JobSummary:
        """
        Process a batch and return its summary.

        Raises:
            CooldownActiveError: the cooldown guard is active; nothing was started
            ValidationFailure: the batch is empty
            BatchTooLargeError: more documents than max_documents
        """
        if self._cooldown.is_active():
            raise CooldownActiveError(self._cooldown.remaining())
        if not documents:
            raise ValidationFailure("No documents to process")
        if len(documents) > self.max_documents:
            raise BatchTooLargeError(len(documents), self.max_documents)

        job = IngestionJob(agency=agency, documents=documents)
        logger.info(
            "Batch started",
            extra={"agency_id": agency.agency_id, "documents": len(documents)},
        )

        pending = await self._skip_ingested(job)
        try:
            await self._process(job, pending)
        except IngestionError as e:
            if not is_systemic_overload(e):
                raise
            logger.error("Batch halted by systemic overload", extra={"error": str(e)})
            self._halt(job, self.batch_cooldown, str(e))

        summary = job.summary()
        logger.info(
            "Batch finished",
            extra={
                "agency_id": agency.agency_id,
                "files_processed": summary.files_processed,
                "files_skipped": summary.files_skipped,
                "files_failed": summary.files_failed,
                "tickets_created": summary.tickets_created,
                "halted": summary.halted,
            },
        )
        return summary

    async def _skip_ingested(self, job: IngestionJob) -> list[Document]:
        """Drop in-batch repeats and mark documents already in the synced-file ledger as skipped."""
        pending: list[Document] = []
        seen: set[str] = set()

        for document in job.documents:
            # Repeats share the first occurrence's progress entry.
            if document.identity in seen:
                continue
            seen.add(document.identity)

            if await self._already_ingested(document, job.agency):
                job.progress[document.identity].status = DocumentStatus.SKIPPED
                logger.info(
                    "Skipping already ingested document",
                    extra={"document": document.name, "identity": document.identity},
                )
                continue
            pending.append(document)

        return pending

    async def _already_ingested(self, document: Document, agency: AgencyContext) -> bool:
        try:
            records = await self._stores.synced_files.filter(
                {"identity": document.identity, "agency_id": agency.agency_id}
            )
        except IngestionError as e:
            logger.warning(
                "Synced-file lookup failed, processing document",
                extra={"document": document.name, "error": str(e)},
            )
            return False
        return any(r.get("processing_status") in INGESTED_STATUSES for r in records)

    async def _process(self, job: IngestionJob, documents: list[Document]) -> None:
        for index, document in enumerate(documents):
            progress = job.progress[document.identity]

            if index > 0:
                progress.status = DocumentStatus.WAITING
                await self._clock.sleep(self.inter_document_delay)

            # A concurrent batch or an operator may have triggered the guard meanwhile.
            if self._cooldown.is_active():
                progress.status = DocumentStatus.PENDING
                self._halt(job)
                return

            if not await self._process_document(job, document, progress):
                return

    async def _process_document(
        self,
        job: IngestionJob,
        document: Document,
        progress: DocumentProgress,
    ) -> bool:
        """Run one document through the pipeline. Returns False when the batch must stop."""
        try:
            file_url = await self._upload(document, progress)

            progress.status = DocumentStatus.EXTRACTING
            extraction = await self._extraction.extract(document, file_url)

            if extraction.outcome is Outcome.ESCALATE:
                self._fail(progress, extraction.error)
                await self._record_sync(job, document, progress)
                self._halt(job, self.document_cooldown, extraction.error or "extraction overload")
                return False

            if extraction.outcome is Outcome.FAILURE:
                self._fail(progress, extraction.error)
                await self._record_sync(job, document, progress)
                return True

            if not extraction.candidates:
                progress.status = DocumentStatus.NO_DATA
                await self._record_sync(job, document, progress)
                return True

            progress.status = DocumentStatus.CREATING_RECORDS
            progress.tickets_found = len(extraction.candidates)
            keep_going = await self._create_records(job, document, progress, extraction.candidates)
        except IngestionError as e:
            self._fail(progress, str(e))
            if is_systemic_overload(e):
                raise
            await self._record_sync(job, document, progress)
            return True

        if keep_going:
            if progress.tickets_created == 0:
                self._fail(progress, "No ticket could be created")
            else:
                progress.status = DocumentStatus.COMPLETED
        await self._record_sync(job, document, progress)
        return keep_going

    async def _upload(self, document: Document, progress: DocumentProgress) -> Optional[str]:
        if document.path is None:
            return None

        progress.status = DocumentStatus.UPLOADING
        stored = await self._uploader.store(document.path)
        logger.info("Document uploaded", extra={"document": document.name, "url": stored["url"]})
        await self._clock.sleep(self.post_upload_delay)
        return stored["url"]

    async def _create_records(
        self,
        job: IngestionJob,
        document: Document,
        progress: DocumentProgress,
        candidates: list[TicketCandidate],
    ) -> bool:
        for index, candidate in enumerate(candidates):
            if index > 0:
                await self._clock.sleep(self.inter_ticket_delay)

            result = await self._builder.build(candidate, job.agency, document.gds_source)
            progress.absorb(result)

            if result.outcome is Outcome.ESCALATE:
                self._fail(progress, "; ".join(result.errors) or "record creation overload")
                self._halt(job, self.document_cooldown, progress.error)
                return False

        return True

    def _fail(self, progress: DocumentProgress, error: Optional[str]) -> None:
        progress.status = DocumentStatus.FAILED
        progress.error = error
        logger.error(
            "Document failed",
            extra={"document": progress.name, "error": error},
        )

    def _halt(self, job: IngestionJob, duration: Optional[float] = None, reason: str = "") -> None:
        if duration is not None:
            self._cooldown.trigger(duration, reason)
        job.halted = True
        job.cooldown_until = self._cooldown.until
        logger.warning(
            "Stopping batch, remaining documents left pending",
            extra={"agency_id": job.agency.agency_id, "cooldown_until": job.cooldown_until},
        )

    async def _record_sync(
        self,
        job: IngestionJob,
        document: Document,
        progress: DocumentProgress,
    ) -> None:
        try:
            await self._stores.synced_files.create(
                {
                    "identity": document.identity,
                    "file_name": document.name,
                    "gds_source": document.gds_source,
                    "agency_id": job.agency.agency_id,
                    "sync_date": datetime.fromtimestamp(self._clock.now(), tz=timezone.utc).isoformat(),
                    "processing_status": progress.status.value,
                    "tickets_created": progress.tickets_created,
                    "error": progress.error,
                }
            )
        except IngestionError as e:
            logger.warning(
                "Could not record synced file",
                extra={"document": document.name, "error": str(e)},
            )
