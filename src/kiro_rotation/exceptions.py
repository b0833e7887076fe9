"""Consolidated exception hierarchy for kiro-rotation.

All exceptions use proper exception chaining with the `from` keyword.
Error types use StrEnum for type safety and autocompletion.
"""

from enum import StrEnum
from pathlib import Path
from typing import Any


class ErrorType(StrEnum):
    """Error type codes attached to every raised error."""

    STORAGE = "storage_error"
    LOCK_TIMEOUT = "lock_timeout_error"
    CONFIGURATION = "configuration_error"
    AUTHENTICATION = "authentication_error"
    RATE_LIMIT = "rate_limit_error"
    INTERNAL = "internal_error"


# ============================================================================
# Base Exceptions
# ============================================================================


class KiroRotationError(Exception):
    """Base exception for all kiro-rotation errors.

    All exceptions inherit from this base class for easy catching.
    Supports structured error details for logging.
    """

    def __init__(
        self,
        message: str,
        *,
        error_type: ErrorType | str = ErrorType.INTERNAL,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if isinstance(error_type, str) and not isinstance(error_type, ErrorType):
            try:
                self.error_type = ErrorType(error_type)
            except ValueError:
                self.error_type = error_type  # type: ignore[assignment]
        else:
            self.error_type = error_type
        self.details = details or {}


# ============================================================================
# Storage Errors
# ============================================================================


class StorageError(KiroRotationError):
    """Persistent storage operation failed."""

    def __init__(
        self,
        message: str,
        *,
        path: Path | str | None = None,
        error_type: ErrorType = ErrorType.STORAGE,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = dict(details or {})
        if path is not None:
            merged["path"] = str(path)
        super().__init__(message, error_type=error_type, details=merged)
        self.path = Path(path) if path is not None else None


class LockAcquisitionError(StorageError):
    """Advisory file lock could not be acquired after all retries.

    The locked operation was not started; in-memory state is unchanged and
    the caller may retry later.
    """

    def __init__(self, path: Path | str, attempts: int) -> None:
        super().__init__(
            f"Could not acquire lock for {path} after {attempts} attempts",
            path=path,
            error_type=ErrorType.LOCK_TIMEOUT,
            details={"attempts": attempts},
        )
        self.attempts = attempts


# ============================================================================
# Configuration Errors
# ============================================================================


class ConfigurationError(KiroRotationError):
    """Raised when a required collaborator or setting is missing or invalid."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            message, error_type=ErrorType.CONFIGURATION, details=details
        )


# ============================================================================
# Account Errors
# ============================================================================


class AuthenticationError(KiroRotationError):
    """Unrecoverable authentication failure for an account.

    Raised by refresh providers and usage fetchers when the credentials are
    rejected and only re-authentication can fix them.
    """

    def __init__(self, message: str = "Authentication failed") -> None:
        super().__init__(message, error_type=ErrorType.AUTHENTICATION)


class NoAccountAvailableError(KiroRotationError):
    """Every account is unhealthy, rate limited or exhausted.

    The pool itself signals this by returning ``None``; callers that prefer
    exceptions raise this with the back-off hint from ``min_wait_time``.
    """

    def __init__(self, retry_after_ms: int = 0) -> None:
        super().__init__(
            "No account currently available",
            error_type=ErrorType.RATE_LIMIT,
            details={"retry_after_ms": retry_after_ms},
        )
        self.retry_after_ms = retry_after_ms
