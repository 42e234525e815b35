"""Base configuration settings.

Note: the offline store holds PHI. Encryption keys configured here must come
from a secrets manager or the environment in production, never from source.
"""

import base64
import os
import secrets
import warnings
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Offline sync settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "OmniCare Offline Sync"
    app_version: str = "0.1.0"
    environment: str = "development"
    log_level: str = "INFO"
    log_format: str = "console"

    # Encryption
    encryption_key: str = Field(
        default_factory=lambda: os.getenv("ENCRYPTION_KEY", ""),
        description="Master key for offline data at rest - MUST be 32 chars",
    )
    encryption_salt: str = Field(
        default="omnicare-offline-store",
        description="Salt mixed into per-classification key derivation",
    )
    encryption_kdf_iterations: int = Field(default=100_000, ge=1)

    # Retention (seconds)
    phi_ttl_seconds: int = Field(default=24 * 60 * 60, gt=0)
    sensitive_ttl_seconds: int = Field(default=7 * 24 * 60 * 60, gt=0)
    general_ttl_seconds: int = Field(default=30 * 24 * 60 * 60, gt=0)
    purge_enabled: bool = True
    purge_interval_seconds: float = Field(default=60 * 60, gt=0)

    # Audit
    audit_enabled: bool = True
    audit_max_entries: int = Field(default=10_000, gt=0)
    audit_retention_days: int = Field(default=90, gt=0)

    # Offline storage
    offline_storage_backend: str = "sqlite"
    offline_storage_path: str = Field(
        default_factory=lambda: str(Path.home() / ".omnicare" / "offline"),
        description="Directory holding the offline database",
    )

    # Retry queue
    retry_initial_backoff_ms: float = Field(default=1000, gt=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0)
    retry_max_backoff_ms: float = Field(default=30_000, gt=0)
    retry_max_retries: int = Field(default=3, ge=1)
    retry_check_interval_ms: float = Field(default=500, gt=0)

    # Sync
    sync_batch_size: int = Field(default=50, gt=0)
    sync_request_timeout_seconds: float = Field(default=30, gt=0)
    sync_direction: str = "bidirectional"
    sync_on_queue: bool = True
    sync_resource_types: List[str] = []
    conflict_strategy: str = "last_write_wins"
    auto_resolve_conflicts: bool = True

    # FHIR server
    fhir_base_url: str = "http://localhost:8103/fhir/R4"
    fhir_access_token: Optional[str] = None
    use_mock_fhir: bool = False

    # Network
    network_probe_interval_seconds: float = Field(default=30, gt=0)
    deferrable_resource_types: List[str] = ["Binary", "Media", "DocumentReference"]

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, v: str) -> str:
        """Validate encryption key length and generate if needed."""
        env = os.getenv("ENVIRONMENT", "development").lower()

        if not v:
            if env in ["production", "staging"]:
                raise ValueError(
                    "CRITICAL SECURITY ERROR: encryption_key MUST be set in production. "
                    "Offline PHI cannot be stored without a managed key."
                )
            secure_key = base64.urlsafe_b64encode(secrets.token_bytes(24)).decode()[:32]
            warnings.warn(
                "SECURITY WARNING: encryption_key not set. "
                f"Generated temporary key for development: {secure_key[:8]}... "
                "Data written with it is unreadable after restart.",
                stacklevel=2,
            )
            return secure_key
        elif len(v) != 32:
            raise ValueError(
                f"encryption_key must be exactly 32 characters, got {len(v)}"
            )
        return v

    @field_validator("offline_storage_backend")
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        """Only known backing media are accepted."""
        value = v.lower()
        if value not in ("sqlite", "memory"):
            raise ValueError(f"Unknown offline storage backend: {v}")
        return value

    @field_validator("sync_direction")
    @classmethod
    def validate_sync_direction(cls, v: str) -> str:
        """Validate default sync direction."""
        value = v.lower()
        if value not in ("push", "pull", "bidirectional"):
            raise ValueError(f"Unknown sync direction: {v}")
        return value

    @field_validator("conflict_strategy")
    @classmethod
    def validate_conflict_strategy(cls, v: str) -> str:
        """Validate conflict strategy name."""
        value = v.lower()
        allowed = ("last_write_wins", "local_wins", "remote_wins", "merge", "manual")
        if value not in allowed:
            raise ValueError(f"Unknown conflict strategy: {v}")
        return value

    @property
    def is_production(self) -> bool:
        """Whether running in a production-like environment."""
        return self.environment.lower() in ("production", "staging")
