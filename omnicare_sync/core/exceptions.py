"""Core Exceptions Module.

Error taxonomy for the offline store, the retry queue and the sync engine.
``retryable`` tells the retry queue whether a failed action goes back on
backoff or leaves the queue immediately.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from omnicare_sync.healthcare.fhir_gateway import RemoteResource


class OfflineSyncError(Exception):
    """Base exception for all offline sync errors."""

    retryable = False

    def __init__(self, message: str, code: Optional[str] = None):
        """Initialize exception.

        Args:
            message: Error message
            code: Optional error code
        """
        super().__init__(message)
        self.message = message
        self.code = code


class ConfigurationError(OfflineSyncError):
    """Raised when configuration is invalid or missing."""


class IntegrityError(OfflineSyncError):
    """Stored data failed checksum or authentication tag verification."""

    def __init__(self, message: str = "Stored data failed integrity verification"):
        """Initialize IntegrityError."""
        super().__init__(message, "INTEGRITY_ERROR")


class NotFoundError(OfflineSyncError):
    """Requested record is absent or expired."""

    def __init__(self, message: str = "Record not found"):
        """Initialize NotFoundError."""
        super().__init__(message, "NOT_FOUND")


class AccessDeniedError(OfflineSyncError):
    """Caller does not own the requested record."""

    def __init__(self, message: str = "Access denied"):
        """Initialize AccessDeniedError."""
        super().__init__(message, "ACCESS_DENIED")


class EncryptionError(OfflineSyncError):
    """Raised when encryption or decryption cannot be performed."""


class EncryptionKeyUnavailableError(EncryptionError):
    """The key for a classification is missing or revoked."""

    def __init__(self, message: str = "Encryption key unavailable"):
        """Initialize EncryptionKeyUnavailableError."""
        super().__init__(message, "KEY_UNAVAILABLE")


class InvalidTransitionError(OfflineSyncError):
    """A record state change skipped a required step."""

    def __init__(self, message: str):
        """Initialize InvalidTransitionError."""
        super().__init__(message, "INVALID_TRANSITION")


class TransientNetworkError(OfflineSyncError):
    """Remote call failed for a reason that may go away on retry."""

    retryable = True

    def __init__(self, message: str = "Transient network failure"):
        """Initialize TransientNetworkError."""
        super().__init__(message, "TRANSIENT_NETWORK")


class ConflictError(OfflineSyncError):
    """Local and remote versions diverged."""

    def __init__(
        self,
        message: str = "Version conflict",
        remote: Optional["RemoteResource"] = None,
    ):
        """Initialize ConflictError.

        Args:
            message: Error message
            remote: Current server copy, when it could be read
        """
        super().__init__(message, "CONFLICT")
        self.remote = remote


class PermanentRejectionError(OfflineSyncError):
    """Server rejected the operation for structural reasons."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        """Initialize PermanentRejectionError."""
        super().__init__(message, "PERMANENT_REJECTION")
        self.status_code = status_code
