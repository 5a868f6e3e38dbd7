"""
Ingestion Service - caller-facing facade

Owns one executor, cooldown guard and orchestrator and exposes the
operations the API, the inbox scheduler and the CLI use:

- submit / submit_files / submit_texts: run a batch and return its JobSummary
- submit_email: pasted e-ticket path with size limit and per-agency throttle
- status: queue and backoff snapshot plus cooldown state
- force_cooldown: operator-initiated protection

Usage:
    from apps.ingestor.service import build_service

    service = build_service()
    summary = await service.submit_files([Path("amadeus_0412.txt")], agency)
    await service.aclose()
"""

import logging
from pathlib import Path
from typing import Any, Iterable, Optional

from apps.ingestor.chain import RecordChainBuilder
from apps.ingestor.cooldown import CooldownGuard
from apps.ingestor.documents import document_from_email, document_from_file, document_from_text
from apps.ingestor.executor import RateLimitedExecutor
from apps.ingestor.extraction import ExtractionStage
from apps.ingestor.orchestrator import BatchOrchestrator
from apps.ingestor.publisher import publish_job_event
from apps.ingestor.retry import RetryingCaller
from utils.clock import Clock, SystemClock
from utils.config import Settings, get_settings
from utils.db import EntityStores, open_stores
from utils.errors import BatchRejectedError, SubmissionThrottledError, ValidationFailure
from utils.llm import ExtractionCollaborator, StructuredExtractionClient
from utils.mq import RedisPublisher
from utils.schemas import AgencyContext, Document, IngestionStatus, JobSummary
from utils.sftp import LocalUploader, SftpUploader, Uploader
from utils.workflow import UnconfiguredWorkflow, WorkflowClient, WorkflowCollaborator

logger = logging.getLogger(__name__)


class IngestionService:
    def __init__(
        self,
        orchestrator: BatchOrchestrator,
        executor: RateLimitedExecutor,
        cooldown: CooldownGuard,
        clock: Clock,
        *,
        char_budget: int = 4000,
        email_max_chars: int = 8000,
        email_min_interval: float = 30.0,
        forced_cooldown: float = 300.0,
        publisher: Optional[RedisPublisher] = None,
        closeables: Iterable[Any] = (),
    ) -> None:
        self.orchestrator = orchestrator
        self.executor = executor
        self.cooldown = cooldown
        self._clock = clock
        self.char_budget = char_budget
        self.email_max_chars = email_max_chars
        self.email_min_interval = email_min_interval
        self.forced_cooldown = forced_cooldown
        self._publisher = publisher
        self._closeables = list(closeables)
        self._last_email: dict[str, float] = {}

    async def submit(self, documents: list[Document], agency: AgencyContext) -> JobSummary:
        summary = await self.orchestrator.run(documents, agency)
        await self._publish(agency, summary)
        return summary

    async def submit_files(self, paths: list[Path], agency: AgencyContext) -> JobSummary:
        documents = [document_from_file(path, self.char_budget) for path in paths]
        return await self.submit(documents, agency)

    async def submit_texts(self, items: list[tuple[str, str]], agency: AgencyContext) -> JobSummary:
        """Run a batch of (name, content) pairs, e.g. GDS exports posted as JSON."""
        documents = [document_from_text(name, content, self.char_budget) for name, content in items]
        return await self.submit(documents, agency)

    async def submit_email(self, content: str, agency: AgencyContext) -> JobSummary:
        """
        Process a pasted e-ticket email as a one-document batch.

        Raises:
            ValidationFailure: empty or oversized content
            SubmissionThrottledError: the agency submitted an email too recently
        """
        text = content.strip()
        if not text:
            raise ValidationFailure("Please paste the email content")
        if len(text) > self.email_max_chars:
            raise ValidationFailure(
                f"Email content is too long ({len(text)} characters). Please paste only "
                f"the ticket information (max {self.email_max_chars} characters)."
            )

        now = self._clock.now()
        last = self._last_email.get(agency.agency_id)
        if last is not None and now - last < self.email_min_interval:
            raise SubmissionThrottledError(self.email_min_interval - (now - last))
        document = document_from_email(text, self.char_budget)

        self._last_email[agency.agency_id] = now
        try:
            return await self.submit([document], agency)
        except BatchRejectedError:
            # A rejected email does not count against the agency.
            if last is None:
                self._last_email.pop(agency.agency_id, None)
            else:
                self._last_email[agency.agency_id] = last
            raise

    def status(self) -> IngestionStatus:
        return IngestionStatus(
            **self.executor.status().model_dump(),
            cooldown_active=self.cooldown.is_active(),
            cooldown_remaining=self.cooldown.remaining(),
        )

    def force_cooldown(self, seconds: Optional[float] = None) -> float:
        """Trigger the cooldown guard by hand. Returns the expiry timestamp."""
        duration = self.forced_cooldown if seconds is None else seconds
        return self.cooldown.trigger(duration, reason="forced by operator")

    async def _publish(self, agency: AgencyContext, summary: JobSummary) -> None:
        if self._publisher is None:
            return
        try:
            await publish_job_event(agency, summary, publisher=self._publisher)
        except Exception as e:
            logger.warning("Job event not published", extra={"error": str(e)})

    async def aclose(self) -> None:
        await self.executor.aclose()
        for resource in self._closeables:
            close = getattr(resource, "aclose", None) or getattr(resource, "close", None)
            if close is not None:
                await close()
        logger.info("IngestionService closed")


def build_service(
    config: Optional[Settings] = None,
    clock: Optional[Clock] = None,
    *,
    stores: Optional[EntityStores] = None,
    extraction_client: Optional[ExtractionCollaborator] = None,
    workflow: Optional[WorkflowCollaborator] = None,
    uploader: Optional[Uploader] = None,
) -> IngestionService:
    """Wire an IngestionService from settings. Collaborators can be overridden."""
    config = config or get_settings()
    clock = clock or SystemClock()
    closeables: list[Any] = []

    caller = RetryingCaller(
        clock,
        max_retries=config.RETRY_MAX_ATTEMPTS,
        base_delay=config.RETRY_BASE_DELAY_SECONDS,
        exponent_base=config.RETRY_EXPONENT_BASE,
        jitter=config.RETRY_JITTER_SECONDS,
        max_delay=config.RETRY_MAX_DELAY_SECONDS,
    )
    executor = RateLimitedExecutor(
        caller,
        clock,
        base_interval=config.RATE_LIMIT_BASE_INTERVAL_SECONDS,
        post_success_delay=config.RATE_LIMIT_POST_SUCCESS_DELAY_SECONDS,
        post_failure_delay=config.RATE_LIMIT_POST_FAILURE_DELAY_SECONDS,
        max_multiplier=config.RATE_LIMIT_MAX_MULTIPLIER,
        failure_step=config.RATE_LIMIT_FAILURE_STEP,
        success_decay=config.RATE_LIMIT_SUCCESS_DECAY,
    )
    cooldown = CooldownGuard(clock)

    if stores is None:
        stores = open_stores(config.STORAGE_BACKEND, config.SQLITE_PATH)

    if extraction_client is None:
        extraction_client = StructuredExtractionClient(
            config.EXTRACTION_API_BASE,
            config.EXTRACTION_API_KEY,
            timeout=config.API_TIMEOUT,
        )
        closeables.append(extraction_client)

    # Only a real workflow service shares the rate budget; the stand-in fails instantly.
    workflow_executor: Optional[RateLimitedExecutor] = None
    if workflow is None:
        if config.WORKFLOW_API_BASE:
            workflow = WorkflowClient(
                config.WORKFLOW_API_BASE,
                config.WORKFLOW_API_KEY,
                timeout=config.WORKFLOW_TIMEOUT_SECONDS,
            )
            closeables.append(workflow)
            workflow_executor = executor
        else:
            workflow = UnconfiguredWorkflow()

    if uploader is None:
        uploader = SftpUploader(config) if config.UPLOAD_BACKEND == "sftp" else LocalUploader()

    builder = RecordChainBuilder(
        stores,
        workflow,
        clock,
        executor=workflow_executor,
        workflow_timeout=config.WORKFLOW_TIMEOUT_SECONDS,
        step_delay=config.FALLBACK_STEP_DELAY_SECONDS,
        placeholder_total=config.PLACEHOLDER_TOTAL_AMOUNT,
        default_currency=config.DEFAULT_CURRENCY,
        placeholder_phone=config.PLACEHOLDER_PHONE,
        email_domain=config.PLACEHOLDER_EMAIL_DOMAIN,
    )
    orchestrator = BatchOrchestrator(
        ExtractionStage(executor, extraction_client),
        builder,
        cooldown,
        stores,
        uploader,
        clock,
        max_documents=config.BATCH_MAX_DOCUMENTS,
        inter_document_delay=config.INTER_DOCUMENT_DELAY_SECONDS,
        inter_ticket_delay=config.INTER_TICKET_DELAY_SECONDS,
        post_upload_delay=config.POST_UPLOAD_DELAY_SECONDS,
        document_cooldown=config.COOLDOWN_DOCUMENT_SECONDS,
        batch_cooldown=config.COOLDOWN_BATCH_SECONDS,
    )

    publisher = None
    if config.PUBLISH_JOB_EVENTS:
        publisher = RedisPublisher(config.REDIS_URL)
        closeables.append(publisher)

    logger.info(
        "IngestionService built",
        extra={
            "storage_backend": config.STORAGE_BACKEND,
            "upload_backend": config.UPLOAD_BACKEND,
            "workflow_configured": bool(config.WORKFLOW_API_BASE),
            "publish_job_events": config.PUBLISH_JOB_EVENTS,
        },
    )

    return IngestionService(
        orchestrator,
        executor,
        cooldown,
        clock,
        char_budget=config.DOCUMENT_CHAR_BUDGET,
        email_max_chars=config.EMAIL_MAX_CHARS,
        email_min_interval=config.EMAIL_MIN_INTERVAL_SECONDS,
        forced_cooldown=config.FORCED_COOLDOWN_SECONDS,
        publisher=publisher,
        closeables=closeables,
    )
