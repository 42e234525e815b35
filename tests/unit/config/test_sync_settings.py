"""Tests for offline sync settings."""

import pytest
from pydantic import ValidationError

from omnicare_sync.config import Settings

VALID_KEY = "settings-key-0123456789abcdefghi"


def test_defaults():
    settings = Settings(encryption_key=VALID_KEY)

    assert settings.phi_ttl_seconds == 24 * 60 * 60
    assert settings.sensitive_ttl_seconds == 7 * 24 * 60 * 60
    assert settings.general_ttl_seconds == 30 * 24 * 60 * 60
    assert settings.retry_initial_backoff_ms == 1000
    assert settings.retry_backoff_multiplier == 2.0
    assert settings.retry_max_backoff_ms == 30_000
    assert settings.retry_max_retries == 3
    assert settings.conflict_strategy == "last_write_wins"


def test_key_must_be_32_characters():
    with pytest.raises(ValidationError):
        Settings(encryption_key="too-short")


def test_missing_key_generated_outside_production(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "development")

    with pytest.warns(UserWarning):
        settings = Settings(encryption_key="")

    assert len(settings.encryption_key) == 32


@pytest.mark.hipaa_required
def test_missing_key_rejected_in_production(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "production")

    with pytest.raises(ValidationError):
        Settings(encryption_key="")


@pytest.mark.parametrize(
    "field,value",
    [
        ("offline_storage_backend", "floppy"),
        ("sync_direction", "sideways"),
        ("conflict_strategy", "coin_flip"),
        ("retry_max_retries", 0),
    ],
)
def test_invalid_values_rejected(field, value):
    with pytest.raises(ValidationError):
        Settings(encryption_key=VALID_KEY, **{field: value})


def test_environment_variables_override(monkeypatch):
    monkeypatch.setenv("RETRY_MAX_RETRIES", "7")
    monkeypatch.setenv("SYNC_RESOURCE_TYPES", '["Patient", "Observation"]')

    settings = Settings(encryption_key=VALID_KEY)

    assert settings.retry_max_retries == 7
    assert settings.sync_resource_types == ["Patient", "Observation"]


def test_is_production():
    assert Settings(encryption_key=VALID_KEY, environment="Staging").is_production is True
    assert Settings(encryption_key=VALID_KEY, environment="test").is_production is False
