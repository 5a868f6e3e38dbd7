"""
Extraction stage: one raw document in, zero or more ticket candidates out.

The call to the extraction collaborator is submitted to the rate-limited
executor, which spaces it and retries it on rate limiting. The stage never
raises for collaborator failures; it returns a tagged ExtractionOutcome and
the orchestrator decides what to do with it.
"""

import logging
from typing import Any

from pydantic import ValidationError

from apps.ingestor.executor import RateLimitedExecutor
from utils.errors import IngestionError, is_systemic_overload
from utils.llm import ExtractionCollaborator
from utils.schemas import (
    TICKET_EXTRACTION_SCHEMA,
    Document,
    DocumentKind,
    ExtractionBatch,
    ExtractionOutcome,
    Outcome,
    TicketCandidate,
)

logger = logging.getLogger(__name__)

GDS_PROMPT = (
    "Extract flight ticket information from this {source} GDS file. Include passenger "
    "details (name, email, phone), flight segments, and pricing. Structure the data "
    "according to the JSON schema. Leave fields empty when the file does not state them."
)

EMAIL_PROMPT = (
    "Extract flight ticket information from this e-ticket email. Focus on essential "
    "details only.\n\nIMPORTANT: Only extract actual flight tickets, ignore other content."
)

TRUNCATION_NOTE = (
    "The content below was truncated for processing; extract only tickets whose "
    "details are present."
)


def build_prompt(document: Document) -> str:
    if document.kind is DocumentKind.EMAIL:
        header = EMAIL_PROMPT
    else:
        header = GDS_PROMPT.format(source=document.gds_source.upper())

    parts = [header]
    if document.truncated:
        parts.append(TRUNCATION_NOTE)
    if document.content:
        parts.append(f"Content:\n---\n{document.content}\n---")
    return "\n\n".join(parts)


def parse_candidates(result: Any) -> tuple[list[TicketCandidate], int]:
    """Validate the raw tickets list, dropping items that do not fit the schema."""
    try:
        batch = ExtractionBatch.model_validate(result)
    except ValidationError:
        logger.warning("Extraction result has no tickets list")
        return [], 0

    candidates: list[TicketCandidate] = []
    discarded = 0
    for index, item in enumerate(batch.tickets):
        try:
            candidates.append(TicketCandidate.model_validate(item))
        except ValidationError as e:
            discarded += 1
            logger.warning(
                "Discarding malformed ticket candidate",
                extra={"index": index, "error": str(e).split("\n")[0]},
            )

    return candidates, discarded


class ExtractionStage:
    def __init__(
        self,
        executor: RateLimitedExecutor,
        collaborator: ExtractionCollaborator,
        schema: dict[str, Any] = TICKET_EXTRACTION_SCHEMA,
    ) -> None:
        self._executor = executor
        self._collaborator = collaborator
        self._schema = schema

    async def extract(self, document: Document, file_url: str | None = None) -> ExtractionOutcome:
        prompt = build_prompt(document)
        file_refs = [file_url] if file_url else None

        async def invoke() -> dict[str, Any]:
            return await self._collaborator.invoke(prompt, file_refs, self._schema)

        try:
            result = await self._executor.submit(invoke)
        except IngestionError as e:
            outcome = Outcome.ESCALATE if is_systemic_overload(e) else Outcome.FAILURE
            logger.error(
                "Extraction failed",
                extra={"document": document.name, "outcome": outcome.value, "error": str(e)},
            )
            return ExtractionOutcome(outcome=outcome, error=str(e))

        candidates, discarded = parse_candidates(result)
        if not candidates:
            logger.warning("No tickets found in document", extra={"document": document.name})

        logger.info(
            "Extraction finished",
            extra={
                "document": document.name,
                "candidates": len(candidates),
                "discarded": discarded,
                "truncated": document.truncated,
            },
        )
        return ExtractionOutcome(
            outcome=Outcome.SUCCESS,
            candidates=candidates,
            discarded=discarded,
        )
