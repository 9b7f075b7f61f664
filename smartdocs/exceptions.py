# exceptions.py
from enum import Enum


class ErrorKind(str, Enum):
    """Machine-readable error categories surfaced in snapshots and upload results."""

    UNAUTHORIZED = "unauthorized"
    NETWORK_FAILURE = "network_failure"
    NOT_FOUND = "not_found"
    QUOTA_EXCEEDED = "quota_exceeded"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    UNEXPECTED = "unexpected"


class SmartDocsError(Exception):
    """Base class for all errors raised by the sync layer."""

    kind = ErrorKind.UNEXPECTED


class PermanentError(SmartDocsError):
    """An error that will not be fixed by a retry (e.g., a bad credential)."""
    pass


class TransientError(SmartDocsError):
    """A temporary error (e.g., a network failure) that might resolve on a retry."""
    pass


class ConfigurationError(PermanentError):
    """Required storage settings are missing; nothing can run until reconfigured."""

    def __init__(self, message: str, missing: list[str] | None = None):
        super().__init__(message)
        self.missing = missing or []


class ValidationError(PermanentError):
    """An upload candidate was rejected locally, before any network call."""

    kind = ErrorKind.VALIDATION


class GatewayError(SmartDocsError):
    """A storage gateway call failed."""
    pass


class UnauthorizedError(GatewayError, PermanentError):
    kind = ErrorKind.UNAUTHORIZED


class NetworkFailureError(GatewayError, TransientError):
    kind = ErrorKind.NETWORK_FAILURE


class GatewayTimeoutError(NetworkFailureError):
    """The engine stopped waiting for a gateway call. The call itself may still complete."""
    pass


class NotFoundError(GatewayError, PermanentError):
    kind = ErrorKind.NOT_FOUND


class QuotaExceededError(GatewayError, PermanentError):
    kind = ErrorKind.QUOTA_EXCEEDED


class KeyConflictError(GatewayError, PermanentError):
    """The key is already taken; gateways never overwrite an existing object."""

    kind = ErrorKind.CONFLICT
