"""Error taxonomy shared by every gateway component."""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for all errors raised by the gateway."""


class ConfigurationError(GatewayError):
    """Missing or invalid configuration (secret, URL, ...)."""


class ValidationError(GatewayError):
    """Invalid input: bad credential format, malformed import payload."""


class DecryptionError(ValidationError):
    """Ciphertext is malformed or failed authentication."""


class StateError(GatewayError):
    """Operation not allowed in the current lifecycle state."""


class NoAvailableKeyError(StateError):
    """The credential pool has no active key to hand out."""


class NotFoundError(GatewayError):
    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class StorageError(GatewayError):
    """Persistence failure. Always chained to the driver exception."""


class StandardizedError(GatewayError):
    """Error surfaced by the retry engine, with an explicit retry decision."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        status: int | None = None,
        retryable: bool = False,
        original: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status
        self.retryable = retryable
        self.original = original

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "code": self.code,
            "status": self.status,
            "retryable": self.retryable,
            "original": type(self.original).__name__ if self.original is not None else None,
        }


class TransientError(StandardizedError):
    """429, 5xx, timeout, connection reset."""

    def __init__(self, message: str, code: str = "TRANSIENT_ERROR", status: int | None = None, original=None):
        super().__init__(message, code=code, status=status, retryable=True, original=original)


class PermanentError(StandardizedError):
    """Anything the retry engine will not retry."""

    def __init__(self, message: str, code: str = "PERMANENT_ERROR", status: int | None = None, original=None):
        super().__init__(message, code=code, status=status, retryable=False, original=original)
