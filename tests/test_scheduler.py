from unittest.mock import AsyncMock

import pytest

from apps.ingestor.scheduler import IngestionScheduler, scan_inbox
from apps.ingestor.service import build_service
from tests.conftest import extraction_result
from utils.config import Settings
from utils.errors import CooldownActiveError
from utils.schemas import DocumentStatus, JobSummary
from utils.sftp import LocalUploader


@pytest.fixture
def inbox(tmp_path):
    for name, content in [
        ("amadeus_01.txt", "PNR A1"),
        ("amadeus_02.txt", "PNR A2"),
        ("sabre_03.xml", "<pnr>S3</pnr>"),
        ("scan.pdf", "%PDF"),
    ]:
        (tmp_path / name).write_text(content, encoding="utf-8")
    return tmp_path


def test_scan_inbox_lists_accepted_files_only(inbox):
    assert [p.name for p in scan_inbox(inbox)] == [
        "amadeus_01.txt",
        "amadeus_02.txt",
        "sabre_03.xml",
    ]


def test_scan_missing_inbox_is_empty(tmp_path):
    assert scan_inbox(tmp_path / "missing") == []


@pytest.mark.asyncio
async def test_sync_inbox_batches_under_cap_and_skips_on_rerun(inbox, clock, stores, agency):
    client = AsyncMock()
    client.invoke.return_value = extraction_result()
    service = build_service(
        Settings(STORAGE_BACKEND="memory"),
        clock,
        stores=stores,
        extraction_client=client,
        uploader=LocalUploader(),
    )
    scheduler = IngestionScheduler(service, agency, inbox, batch_size=2, run_once=True)

    first = await scheduler.sync_inbox()
    second = await scheduler.sync_inbox()

    assert [len(s.documents) for s in first] == [2, 1]
    assert all(d.status is DocumentStatus.NO_DATA for s in first for d in s.documents)
    assert client.invoke.await_count == 3
    assert sum(s.files_skipped for s in second) == 3


@pytest.mark.asyncio
async def test_sync_stops_at_halted_batch(inbox, agency):
    service = AsyncMock()
    service.submit.return_value = JobSummary(halted=True)
    scheduler = IngestionScheduler(service, agency, inbox, batch_size=2)

    summaries = await scheduler.sync_inbox()

    assert len(summaries) == 1
    service.submit.assert_awaited_once()


@pytest.mark.asyncio
async def test_sync_stops_when_batch_rejected(inbox, agency):
    service = AsyncMock()
    service.submit.side_effect = CooldownActiveError(120)
    scheduler = IngestionScheduler(service, agency, inbox, batch_size=2)

    assert await scheduler.sync_inbox() == []
    service.submit.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_once_signals_shutdown(inbox, agency):
    service = AsyncMock()
    service.submit.return_value = JobSummary()
    scheduler = IngestionScheduler(service, agency, inbox, batch_size=5, run_once=True)

    await scheduler.execute_sync()

    assert scheduler.shutdown_event.is_set()


@pytest.mark.asyncio
async def test_empty_inbox_file_does_not_block_its_neighbour(tmp_path, clock, stores, agency, extraction_client):
    (tmp_path / "a_empty.txt").write_text("", encoding="utf-8")
    (tmp_path / "b_good.txt").write_text("PNR GOOD", encoding="utf-8")
    service = build_service(
        Settings(STORAGE_BACKEND="memory"),
        clock,
        stores=stores,
        extraction_client=extraction_client,
        uploader=LocalUploader(),
    )
    scheduler = IngestionScheduler(service, agency, tmp_path, batch_size=2)

    runs = [await scheduler.sync_inbox() for _ in range(3)]

    assert [d.name for d in runs[0][0].documents] == ["b_good.txt"]
    assert runs[0][0].tickets_created == 1
    assert runs[1][0].files_skipped == 1
    assert extraction_client.invoke.await_count == 1
    assert len(await stores.tickets.filter({"agency_id": agency.agency_id})) == 1


def test_load_documents_leaves_out_only_bad_files(tmp_path, agency):
    (tmp_path / "a_empty.txt").write_text("   ", encoding="utf-8")
    (tmp_path / "b_good.txt").write_text("PNR GOOD", encoding="utf-8")
    scheduler = IngestionScheduler(AsyncMock(), agency, tmp_path, batch_size=2, char_budget=3)

    documents = scheduler.load_documents(scan_inbox(tmp_path))

    assert [d.name for d in documents] == ["b_good.txt"]
    assert documents[0].truncated is True
