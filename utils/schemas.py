"""
Pydantic Schemas - Data Validation Models

Defines all Pydantic schemas used throughout the ingestion pipeline:
- Extraction output (TicketCandidate and its flight segments)
- Documents and agency context handed to the orchestrator
- Tagged outcomes exchanged between stages
- Job progress, summaries and status snapshots
- Redis job events

Usage:
    from utils.schemas import TicketCandidate

    candidate = TicketCandidate.model_validate(raw_item)
    total, defaulted = candidate.resolved_total(placeholder=100.0)
"""

import re
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Shape requested from the extraction collaborator.
TICKET_EXTRACTION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "tickets": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "pnr": {"type": "string"},
                    "booking_reference": {"type": "string"},
                    "ticket_number": {"type": "string"},
                    "passenger_name": {"type": "string"},
                    "passenger_email": {"type": "string"},
                    "passenger_phone": {"type": "string"},
                    "flight_segments": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "airline": {"type": "string"},
                                "flight_number": {"type": "string"},
                                "origin": {"type": "string"},
                                "destination": {"type": "string"},
                                "departure_date": {"type": "string"},
                                "arrival_date": {"type": "string"},
                                "class": {"type": "string"},
                            },
                        },
                    },
                    "base_fare": {"type": "number"},
                    "taxes": {"type": "number"},
                    "total_amount": {"type": "number"},
                    "currency": {"type": "string"},
                },
            },
        }
    },
}

_WHITESPACE = re.compile(r"\s+")
_NON_NUMERIC = re.compile(r"[^0-9.\-]")


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


class FlightSegment(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    airline: Optional[str] = None
    flight_number: Optional[str] = None
    origin: Optional[str] = None
    destination: Optional[str] = None
    departure_date: Optional[str] = None
    arrival_date: Optional[str] = None
    cabin_class: Optional[str] = Field(default=None, alias="class")

    @field_validator("*", mode="before")
    @classmethod
    def strip_blank(cls, value: Any) -> Any:
        return _blank_to_none(value)


class TicketCandidate(BaseModel):
    """An extracted ticket that has not been persisted yet.

    Every field is optional because extraction works on truncated, noisy
    input. Defaulting happens in the resolve_* helpers, which also report
    whether a default was applied so the caller can record it.
    """

    model_config = ConfigDict(extra="ignore")

    pnr: Optional[str] = None
    booking_reference: Optional[str] = None
    ticket_number: Optional[str] = None
    passenger_name: Optional[str] = None
    passenger_email: Optional[str] = None
    passenger_phone: Optional[str] = None
    flight_segments: list[FlightSegment] = Field(default_factory=list)
    base_fare: Optional[float] = None
    taxes: Optional[float] = None
    total_amount: Optional[float] = None
    currency: Optional[str] = None

    @field_validator(
        "pnr",
        "booking_reference",
        "ticket_number",
        "passenger_name",
        "passenger_email",
        "passenger_phone",
        "currency",
        mode="before",
    )
    @classmethod
    def strip_blank(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("base_fare", "taxes", "total_amount", mode="before")
    @classmethod
    def parse_amount(cls, value: Any) -> Any:
        """Accept "USD 1,250.00" style strings from the extraction service."""
        if isinstance(value, str):
            return _NON_NUMERIC.sub("", value) or None
        return value

    @field_validator("flight_segments", mode="before")
    @classmethod
    def drop_null_segments(cls, value: Any) -> Any:
        if value is None:
            return []
        return value

    def resolved_email(self, domain: str) -> tuple[Optional[str], bool]:
        """E-mail to use for the passenger and whether it is a placeholder.

        The placeholder is derived from the name so repeated extractions of the
        same passenger land on the same client.
        """
        if self.passenger_email:
            return self.passenger_email.lower(), False
        if not self.passenger_name:
            return None, False
        local = _WHITESPACE.sub(".", self.passenger_name.strip()).lower()
        return f"{local}@{domain}", True

    def resolved_total(self, placeholder: float) -> tuple[float, Optional[str]]:
        """Total amount plus the name of the default applied, if any."""
        if self.total_amount:
            return self.total_amount, None
        if self.base_fare:
            return self.base_fare, "base_fare"
        return placeholder, "placeholder"


class ExtractionBatch(BaseModel):
    """Top-level payload returned by the extraction collaborator."""

    model_config = ConfigDict(extra="ignore")

    tickets: list[Any] = Field(default_factory=list)


class DocumentKind(str, Enum):
    GDS_FILE = "gds_file"
    EMAIL = "email"


class Document(BaseModel):
    """One raw input handed to the orchestrator."""

    identity: str = Field(..., min_length=1, description="Stable id used for duplicate detection")
    name: str
    kind: DocumentKind = DocumentKind.GDS_FILE
    content: str = ""
    path: Optional[Path] = None
    gds_source: str = "amadeus"
    truncated: bool = False


class AgencyContext(BaseModel):
    agency_id: str = Field(..., min_length=1)
    agent_email: str = ""


class Outcome(str, Enum):
    """Tag the orchestrator inspects to decide whether to keep going."""

    SUCCESS = "success"
    FAILURE = "failure"
    ESCALATE = "escalate"


class ExtractionOutcome(BaseModel):
    outcome: Outcome
    candidates: list[TicketCandidate] = Field(default_factory=list)
    discarded: int = 0
    error: Optional[str] = None

    @property
    def has_data(self) -> bool:
        return self.outcome is Outcome.SUCCESS and bool(self.candidates)


class ChainResult(BaseModel):
    """What RecordChainBuilder achieved for one candidate."""

    outcome: Outcome
    path: Optional[str] = None
    ticket_id: Optional[str] = None
    client_id: Optional[str] = None
    booking_id: Optional[str] = None
    invoice_id: Optional[str] = None
    created_client: bool = False
    created_booking: bool = False
    created_invoice: bool = False
    errors: list[str] = Field(default_factory=list)

    @property
    def ticket_created(self) -> bool:
        return self.ticket_id is not None


class WorkflowResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    success: bool = False
    client_id: Optional[str] = None
    booking_id: Optional[str] = None
    invoice_id: Optional[str] = None
    error: Optional[str] = None


class DocumentStatus(str, Enum):
    PENDING = "pending"
    SKIPPED = "skipped"
    WAITING = "waiting"
    UPLOADING = "uploading"
    EXTRACTING = "extracting"
    CREATING_RECORDS = "creating_records"
    COMPLETED = "completed"
    NO_DATA = "no_data"
    FAILED = "failed"


class DocumentProgress(BaseModel):
    identity: str
    name: str
    status: DocumentStatus = DocumentStatus.PENDING
    tickets_found: int = 0
    tickets_created: int = 0
    tickets_failed: int = 0
    clients_created: int = 0
    bookings_created: int = 0
    invoices_created: int = 0
    error: Optional[str] = None

    def absorb(self, result: ChainResult) -> None:
        if result.ticket_created:
            self.tickets_created += 1
        else:
            self.tickets_failed += 1
        self.clients_created += int(result.created_client)
        self.bookings_created += int(result.created_booking)
        self.invoices_created += int(result.created_invoice)


class JobSummary(BaseModel):
    files_processed: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    tickets_created: int = 0
    tickets_failed: int = 0
    clients_created: int = 0
    bookings_created: int = 0
    invoices_created: int = 0
    halted: bool = False
    cooldown_until: Optional[float] = None
    documents: list[DocumentProgress] = Field(default_factory=list)


_STARTED = {
    DocumentStatus.WAITING,
    DocumentStatus.UPLOADING,
    DocumentStatus.EXTRACTING,
    DocumentStatus.CREATING_RECORDS,
    DocumentStatus.COMPLETED,
    DocumentStatus.NO_DATA,
    DocumentStatus.FAILED,
}


class IngestionJob(BaseModel):
    """Progress of one batch; discarded once the summary is read."""

    agency: AgencyContext
    documents: list[Document]
    progress: dict[str, DocumentProgress] = Field(default_factory=dict)
    halted: bool = False
    cooldown_until: Optional[float] = None

    def model_post_init(self, __context: Any) -> None:
        for document in self.documents:
            self.progress.setdefault(
                document.identity,
                DocumentProgress(identity=document.identity, name=document.name),
            )

    def summary(self) -> JobSummary:
        entries = list(self.progress.values())
        return JobSummary(
            files_processed=sum(1 for p in entries if p.status in _STARTED),
            files_skipped=sum(1 for p in entries if p.status is DocumentStatus.SKIPPED),
            files_failed=sum(1 for p in entries if p.status is DocumentStatus.FAILED),
            tickets_created=sum(p.tickets_created for p in entries),
            tickets_failed=sum(p.tickets_failed for p in entries),
            clients_created=sum(p.clients_created for p in entries),
            bookings_created=sum(p.bookings_created for p in entries),
            invoices_created=sum(p.invoices_created for p in entries),
            halted=self.halted,
            cooldown_until=self.cooldown_until,
            documents=[p.model_copy() for p in entries],
        )


class ExecutorStatus(BaseModel):
    queue_length: int
    is_processing: bool
    estimated_wait_time: float
    backoff_multiplier: float
    consecutive_failures: int


class IngestionStatus(ExecutorStatus):
    cooldown_active: bool = False
    cooldown_remaining: float = 0.0


class JobEvent(BaseModel):
    """Redis Pub/Sub payload published when a batch finishes."""

    type: str = Field(default="job_completed", description="Event type")
    agency_id: str
    summary: JobSummary
    ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
