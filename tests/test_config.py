import pytest
from pydantic import ValidationError

from utils.config import Settings, get_settings


def test_defaults_keep_delay_ordering():
    config = Settings()

    assert config.INTER_DOCUMENT_DELAY_SECONDS > config.RATE_LIMIT_BASE_INTERVAL_SECONDS
    assert config.RATE_LIMIT_BASE_INTERVAL_SECONDS > config.INTER_TICKET_DELAY_SECONDS
    assert config.BATCH_MAX_DOCUMENTS == 2
    assert config.COOLDOWN_DOCUMENT_SECONDS == 300
    assert config.COOLDOWN_BATCH_SECONDS == 600


@pytest.mark.parametrize(
    "overrides",
    [
        {"INTER_DOCUMENT_DELAY_SECONDS": 5.0},
        {"INTER_TICKET_DELAY_SECONDS": 9.0},
        {"RATE_LIMIT_BASE_INTERVAL_SECONDS": 12.0},
    ],
)
def test_delay_ordering_is_enforced(overrides):
    with pytest.raises(ValidationError):
        Settings(**overrides)


def test_negative_durations_rejected():
    with pytest.raises(ValidationError):
        Settings(COOLDOWN_BATCH_SECONDS=-1)


@pytest.mark.parametrize("field", ["STORAGE_BACKEND", "UPLOAD_BACKEND"])
def test_unknown_backend_rejected(field):
    with pytest.raises(ValidationError):
        Settings(**{field: "s3"})


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("BATCH_MAX_DOCUMENTS", "4")
    monkeypatch.setenv("PUBLISH_JOB_EVENTS", "true")

    config = Settings()

    assert config.BATCH_MAX_DOCUMENTS == 4
    assert config.PUBLISH_JOB_EVENTS is True


def test_get_settings_is_cached():
    assert get_settings() is get_settings()
