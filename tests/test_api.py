import pytest
from fastapi.testclient import TestClient

from apps.ingestor.service import build_service
from services.api.app import create_app
from utils.config import Settings
from utils.sftp import LocalUploader

AGENCY = {"agency_id": "agency-1", "agent_email": "agent@example.com"}


@pytest.fixture
def service(clock, stores, extraction_client):
    return build_service(
        Settings(STORAGE_BACKEND="memory"),
        clock,
        stores=stores,
        extraction_client=extraction_client,
        uploader=LocalUploader(),
    )


@pytest.fixture
def client(service):
    with TestClient(create_app(service)) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["cooldown_active"] is False


def test_submit_batch(client, stores):
    response = client.post(
        "/api/batches",
        json={**AGENCY, "documents": [{"name": "amadeus_1.txt", "content": "PNR ABC123"}]},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["tickets_created"] == 1
    assert body["invoices_created"] == 1
    assert body["documents"][0]["status"] == "completed"
    assert len(stores.tickets.records) == 1


def test_batch_above_cap_is_413(client):
    documents = [{"name": f"{i}.txt", "content": f"PNR {i}"} for i in range(3)]

    response = client.post("/api/batches", json={**AGENCY, "documents": documents})

    assert response.status_code == 413
    assert "maximum 2 files" in response.json()["detail"]


def test_empty_batch_is_422(client):
    response = client.post("/api/batches", json={**AGENCY, "documents": []})

    assert response.status_code == 422


def test_cooldown_rejects_with_503_and_retry_after(client):
    forced = client.post("/api/cooldown", json={"seconds": 90})
    assert forced.status_code == 200
    assert forced.json()["remaining"] == 90

    response = client.post(
        "/api/batches",
        json={**AGENCY, "documents": [{"name": "a.txt", "content": "PNR"}]},
    )

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "90"
    assert "System protection" in response.json()["detail"]
    assert client.get("/api/status").json()["cooldown_active"] is True


def test_email_throttle_is_429(client):
    payload = {**AGENCY, "content": "E-TICKET RECEIPT John Doe"}

    assert client.post("/api/emails", json=payload).status_code == 200
    response = client.post("/api/emails", json={**payload, "content": "E-TICKET RECEIPT Jane"})

    assert response.status_code == 429
    assert "Retry-After" in response.headers


def test_blank_email_is_422(client):
    response = client.post("/api/emails", json={**AGENCY, "content": "   "})

    assert response.status_code == 422


def test_status_snapshot(client):
    body = client.get("/api/status").json()

    assert set(body) >= {
        "queue_length",
        "is_processing",
        "estimated_wait_time",
        "backoff_multiplier",
        "consecutive_failures",
        "cooldown_active",
        "cooldown_remaining",
    }
    assert body["backoff_multiplier"] == 1.0
