"""Error taxonomy for the sync engine and the optimistic-write path.

Every failure the remote API can produce maps onto one of four classes.
``retryable`` tells the drain loop whether an item may be attempted again;
``AuthError`` is special-cased by the engine and pauses the whole drain.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for classified sync failures."""

    retryable = False
    code = "SYNC_ERROR"

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    def to_dict(self) -> dict:
        data: dict = {"code": self.code, "message": str(self)}
        if self.status is not None:
            data["status"] = self.status
        return data


class NetworkError(SyncError):
    """Timeout or connection failure; the request may not have arrived."""

    retryable = True
    code = "NETWORK_ERROR"


class ServerUnavailable(SyncError):
    """The server answered with a 5xx-class (or throttling) response."""

    retryable = True
    code = "SERVER_UNAVAILABLE"


class ValidationError(SyncError):
    """The payload was rejected; resubmitting it unchanged cannot succeed."""

    code = "VALIDATION_ERROR"


class AuthError(SyncError):
    """The bearer credential is missing, expired, or rejected."""

    code = "AUTH_ERROR"


class ImmutableEntityError(ValidationError):
    """Raised when an Update targets a committed attendance session."""

    code = "IMMUTABLE_ENTITY"


class UnknownEntityError(ValidationError):
    """Raised when a local write targets an entity absent from the cache."""

    code = "UNKNOWN_ENTITY"


class StorageError(Exception):
    """Raised when the state directory is missing or unusable."""


class QueueItemNotFound(KeyError):
    """Raised when a queue operation names an item that does not exist."""


ERROR_CLASSES: dict[str, type[SyncError]] = {
    cls.code: cls
    for cls in (
        NetworkError,
        ServerUnavailable,
        ValidationError,
        AuthError,
        ImmutableEntityError,
        UnknownEntityError,
    )
}


def error_from_dict(data: dict) -> SyncError:
    """Rebuild a classified error from its ``to_dict()`` form."""
    cls = ERROR_CLASSES.get(data.get("code", ""), SyncError)
    return cls(data.get("message", ""), status=data.get("status"))


def classify_status(status: int, message: str) -> SyncError:
    """Map an HTTP status code onto the error taxonomy."""
    if status in (401, 403):
        return AuthError(message, status=status)
    if status in (408, 429) or status >= 500:
        return ServerUnavailable(message, status=status)
    return ValidationError(message, status=status)
