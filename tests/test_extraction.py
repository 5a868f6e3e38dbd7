from unittest.mock import AsyncMock

import pytest

from apps.ingestor.documents import document_from_email, document_from_text
from apps.ingestor.extraction import ExtractionStage, build_prompt, parse_candidates
from tests.conftest import FakeClock, extraction_result, make_executor
from utils.errors import DependencyError, RateLimitedError
from utils.schemas import TICKET_EXTRACTION_SCHEMA, Outcome


def test_gds_prompt_names_source_and_carries_content():
    document = document_from_text("sabre_export.txt", "PNR XYZ123", 4000)

    prompt = build_prompt(document)

    assert "SABRE" in prompt
    assert "PNR XYZ123" in prompt
    assert "truncated" not in prompt


def test_prompt_flags_truncated_content():
    document = document_from_email("E-TICKET " * 1000, 100)

    prompt = build_prompt(document)

    assert "e-ticket email" in prompt
    assert "truncated" in prompt


def test_parse_candidates_drops_malformed_items():
    candidates, discarded = parse_candidates(
        extraction_result(
            {"passenger_name": "  Jane Roe ", "total_amount": "USD 1,250.00"},
            "not a ticket",
            {"passenger_name": "Bad Segments", "flight_segments": "LHR-JFK"},
        )
    )

    assert discarded == 2
    assert len(candidates) == 1
    assert candidates[0].passenger_name == "Jane Roe"
    assert candidates[0].total_amount == 1250.0


@pytest.mark.parametrize("payload", [None, [], {"tickets": None}, {"other": 1}])
def test_parse_candidates_tolerates_unexpected_shapes(payload):
    assert parse_candidates(payload) == ([], 0)


@pytest.mark.asyncio
async def test_extract_success_submits_through_executor():
    clock = FakeClock()
    executor = make_executor(clock)
    client = AsyncMock()
    client.invoke.return_value = extraction_result({"passenger_name": "John Doe"})
    stage = ExtractionStage(executor, client)
    document = document_from_text("amadeus.txt", "PNR ABC", 4000)

    outcome = await stage.extract(document, file_url="file:///tmp/amadeus.txt")

    assert outcome.outcome is Outcome.SUCCESS
    assert outcome.has_data
    assert executor.last_call_start is not None
    prompt, file_refs, schema = client.invoke.await_args.args
    assert "PNR ABC" in prompt
    assert file_refs == ["file:///tmp/amadeus.txt"]
    assert schema is TICKET_EXTRACTION_SCHEMA


@pytest.mark.asyncio
async def test_extract_without_tickets_is_success_without_data():
    clock = FakeClock()
    client = AsyncMock()
    client.invoke.return_value = extraction_result()
    stage = ExtractionStage(make_executor(clock), client)

    outcome = await stage.extract(document_from_text("a.txt", "nothing here", 4000))

    assert outcome.outcome is Outcome.SUCCESS
    assert outcome.has_data is False


@pytest.mark.asyncio
async def test_extract_dependency_failure_is_tagged_failure():
    clock = FakeClock()
    client = AsyncMock()
    client.invoke.side_effect = DependencyError("502 from extraction service")
    stage = ExtractionStage(make_executor(clock), client)

    outcome = await stage.extract(document_from_text("a.txt", "content", 4000))

    assert outcome.outcome is Outcome.FAILURE
    assert "502" in outcome.error
    assert client.invoke.await_count == 1


@pytest.mark.asyncio
async def test_extract_persistent_rate_limit_escalates():
    clock = FakeClock()
    client = AsyncMock()
    client.invoke.side_effect = RateLimitedError()
    stage = ExtractionStage(make_executor(clock), client)

    outcome = await stage.extract(document_from_text("a.txt", "content", 4000))

    assert outcome.outcome is Outcome.ESCALATE
    assert client.invoke.await_count == 3
