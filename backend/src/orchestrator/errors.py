"""Exception hierarchy shared by the stores, services and HTTP layer."""

from __future__ import annotations

from enum import Enum
from typing import Any


class OrchestratorError(RuntimeError):
    """Base class for errors that map onto a structured API response."""

    status_code = 500

    def __init__(self, message: str, *, details: Any | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(OrchestratorError):
    """Raised for malformed input such as a bad IP or cron expression."""

    status_code = 400


class NotFoundError(OrchestratorError):
    status_code = 404


class AuthenticationError(OrchestratorError):
    """Raised when an API key is required and missing or unknown."""

    status_code = 401


class ConflictError(OrchestratorError):
    """Raised when a unique constraint would be violated."""

    status_code = 409


class PersistenceError(OrchestratorError):
    """Raised when the store fails mid-transaction; the transaction is rolled back."""

    status_code = 500


class SchedulingError(OrchestratorError):
    """Raised for scheduling problems; never escapes a timer tick."""

    status_code = 500


class DeviceErrorKind(str, Enum):
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    PROTOCOL_ERROR = "protocol_error"
    OTHER = "other"


class DeviceCommunicationError(OrchestratorError):
    """Raised when a WLED controller cannot be contacted or answers badly."""

    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        kind: DeviceErrorKind = DeviceErrorKind.OTHER,
        details: Any | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.kind = kind


__all__ = [
    "AuthenticationError",
    "ConflictError",
    "DeviceCommunicationError",
    "DeviceErrorKind",
    "NotFoundError",
    "OrchestratorError",
    "PersistenceError",
    "SchedulingError",
    "ValidationError",
]
