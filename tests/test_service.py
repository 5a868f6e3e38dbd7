from unittest.mock import AsyncMock

import pytest

from apps.ingestor.service import IngestionService, build_service
from tests.conftest import FakeClock, extraction_result
from utils.config import Settings
from utils.db import open_stores
from utils.errors import CooldownActiveError, SubmissionThrottledError, ValidationFailure
from utils.sftp import LocalUploader
from utils.workflow import UnconfiguredWorkflow


@pytest.fixture
def config() -> Settings:
    return Settings(STORAGE_BACKEND="memory", WORKFLOW_API_BASE="", PUBLISH_JOB_EVENTS=False)


@pytest.fixture
def service(config, clock, stores, extraction_client) -> IngestionService:
    return build_service(
        config,
        clock,
        stores=stores,
        extraction_client=extraction_client,
        uploader=LocalUploader(),
    )


def test_build_service_wires_settings(service, config):
    executor = service.executor
    assert executor.base_interval == config.RATE_LIMIT_BASE_INTERVAL_SECONDS
    assert executor.post_failure_delay == config.RATE_LIMIT_POST_FAILURE_DELAY_SECONDS
    assert service.orchestrator.max_documents == config.BATCH_MAX_DOCUMENTS
    assert service.orchestrator.inter_document_delay == config.INTER_DOCUMENT_DELAY_SECONDS
    assert isinstance(service.orchestrator._builder._workflow, UnconfiguredWorkflow)


@pytest.mark.asyncio
async def test_submit_texts_runs_a_batch(service, agency, stores):
    summary = await service.submit_texts([("sabre_pnr.txt", "PNR SAB123")], agency)

    assert summary.tickets_created == 1
    ticket = next(iter(stores.tickets.records.values()))
    assert ticket["gds_source"] == "sabre"


@pytest.mark.asyncio
async def test_submit_files_reads_and_uploads(service, agency, extraction_client, tmp_path):
    path = tmp_path / "amadeus_0412.csv"
    path.write_text("PNR,NAME\nABC123,John Doe\n", encoding="utf-8")

    summary = await service.submit_files([path], agency)

    assert summary.tickets_created == 1
    _, file_refs, _ = extraction_client.invoke.await_args.args
    assert file_refs == [path.resolve().as_uri()]


@pytest.mark.asyncio
async def test_submit_files_rejects_unsupported_type(service, agency, tmp_path):
    path = tmp_path / "ticket.pdf"
    path.write_bytes(b"%PDF-1.4")

    with pytest.raises(ValidationFailure):
        await service.submit_files([path], agency)


@pytest.mark.asyncio
async def test_submit_email_validation(service, agency):
    with pytest.raises(ValidationFailure):
        await service.submit_email("   ", agency)

    with pytest.raises(ValidationFailure) as exc_info:
        await service.submit_email("x" * 8001, agency)
    assert "8000" in str(exc_info.value)


@pytest.mark.asyncio
async def test_submit_email_is_throttled_per_agency(service, agency, clock, stores):
    await service.submit_email("E-TICKET RECEIPT John Doe 450 USD", agency)

    with pytest.raises(SubmissionThrottledError):
        await service.submit_email("E-TICKET RECEIPT Jane Roe 300 USD", agency)

    clock.advance(30)
    summary = await service.submit_email("E-TICKET RECEIPT Jane Roe 300 USD", agency)

    assert summary.tickets_created == 1
    sources = {ticket["gds_source"] for ticket in stores.tickets.records.values()}
    assert sources == {"email"}


@pytest.mark.asyncio
async def test_email_rejected_by_cooldown_does_not_throttle_agency(service, agency, clock, extraction_client):
    service.force_cooldown(10)

    with pytest.raises(CooldownActiveError):
        await service.submit_email("E-TICKET RECEIPT John Doe 450 USD", agency)

    clock.advance(11)
    summary = await service.submit_email("E-TICKET RECEIPT John Doe 450 USD", agency)

    assert summary.tickets_created == 1
    extraction_client.invoke.assert_awaited_once()


@pytest.mark.asyncio
async def test_long_email_is_truncated_to_budget(service, agency, extraction_client):
    await service.submit_email("E-TICKET " + "x" * 6000, agency)

    prompt, _, _ = extraction_client.invoke.await_args.args
    assert "truncated" in prompt
    assert "x" * 4000 not in prompt


def test_status_combines_executor_and_cooldown(service, clock):
    status = service.status()
    assert status.queue_length == 0
    assert status.backoff_multiplier == 1.0
    assert status.cooldown_active is False

    until = service.force_cooldown()

    status = service.status()
    assert until == clock.now() + 300
    assert status.cooldown_active is True
    assert status.cooldown_remaining == 300
    assert status.backoff_multiplier == 1.0


@pytest.mark.asyncio
async def test_forced_cooldown_rejects_batches(service, agency, extraction_client):
    service.force_cooldown(60)

    with pytest.raises(CooldownActiveError):
        await service.submit_texts([("a.txt", "content")], agency)

    extraction_client.invoke.assert_not_awaited()


@pytest.mark.asyncio
async def test_job_event_published_after_batch(service, agency, clock):
    publisher = AsyncMock()
    publishing = IngestionService(
        service.orchestrator, service.executor, service.cooldown, clock, publisher=publisher
    )

    summary = await publishing.submit_texts([("a.txt", "content")], agency)

    channel, message = publisher.publish.await_args.args
    assert channel == "ingest.jobs"
    assert message["type"] == "job_completed"
    assert message["agency_id"] == "agency-1"
    assert message["summary"]["tickets_created"] == summary.tickets_created
    publisher.close.assert_not_awaited()


@pytest.mark.asyncio
async def test_publish_failure_does_not_fail_batch(service, agency, clock):
    publisher = AsyncMock()
    publisher.publish.side_effect = ConnectionError("redis down")
    publishing = IngestionService(
        service.orchestrator, service.executor, service.cooldown, clock, publisher=publisher
    )

    summary = await publishing.submit_texts([("a.txt", "content")], agency)

    assert summary.tickets_created == 1


@pytest.mark.asyncio
async def test_aclose_closes_owned_resources(config):
    clock = FakeClock()
    client = AsyncMock()
    client.invoke.return_value = extraction_result()
    resource = AsyncMock()
    service = build_service(config, clock, stores=open_stores("memory"), extraction_client=client)
    service._closeables.append(resource)

    await service.aclose()

    resource.aclose.assert_awaited_once()
    with pytest.raises(RuntimeError):
        await service.executor.submit(client.invoke)
