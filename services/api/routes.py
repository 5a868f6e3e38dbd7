"""
Ingestion API routes.

All handlers delegate to the IngestionService held on app.state; batch
rejections are mapped to HTTP status codes by the handlers registered in
services.api.app.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from apps.ingestor.service import IngestionService
from utils.schemas import AgencyContext, IngestionStatus, JobSummary

router = APIRouter(tags=["ingestion"])


class DocumentPayload(BaseModel):
    name: str = Field(..., min_length=1)
    content: str


class BatchRequest(BaseModel):
    agency_id: str = Field(..., min_length=1)
    agent_email: str = ""
    documents: list[DocumentPayload]


class EmailRequest(BaseModel):
    agency_id: str = Field(..., min_length=1)
    agent_email: str = ""
    content: str


class CooldownRequest(BaseModel):
    seconds: Optional[float] = Field(default=None, ge=0)


class CooldownResponse(BaseModel):
    cooldown_until: float
    remaining: float


def get_service(request: Request) -> IngestionService:
    return request.app.state.service


@router.post("/batches", response_model=JobSummary)
async def submit_batch(
    payload: BatchRequest,
    service: IngestionService = Depends(get_service),
) -> JobSummary:
    """Run a batch of GDS exports posted as text."""
    agency = AgencyContext(agency_id=payload.agency_id, agent_email=payload.agent_email)
    items = [(document.name, document.content) for document in payload.documents]
    return await service.submit_texts(items, agency)


@router.post("/emails", response_model=JobSummary)
async def submit_email(
    payload: EmailRequest,
    service: IngestionService = Depends(get_service),
) -> JobSummary:
    """Extract tickets from a pasted e-ticket email."""
    agency = AgencyContext(agency_id=payload.agency_id, agent_email=payload.agent_email)
    return await service.submit_email(payload.content, agency)


@router.get("/status", response_model=IngestionStatus)
async def get_status(service: IngestionService = Depends(get_service)) -> IngestionStatus:
    return service.status()


@router.post("/cooldown", response_model=CooldownResponse)
async def force_cooldown(
    payload: CooldownRequest,
    service: IngestionService = Depends(get_service),
) -> CooldownResponse:
    """Put ingestion into cooldown by hand."""
    until = service.force_cooldown(payload.seconds)
    return CooldownResponse(cooldown_until=until, remaining=service.cooldown.remaining())
