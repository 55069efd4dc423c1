"""Krios exception classes."""


class KriosException(Exception):
    """Base exception for all Krios client errors."""

    pass


class RequestError(KriosException):
    """Raised when a REST call fails.

    Parameters
    ----------
    message : str
        Human readable error message, taken from the server payload if present.
    status : int | None
        HTTP status code. None for network failures (no response received).
    """

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.message = message
        self.status = status

    def __repr__(self) -> str:
        return f"{type(self).__name__}(status={self.status!r}, message={self.message!r})"


class AuthenticationError(RequestError):
    """Raised when the bearer credential is missing, invalid or expired (401)."""

    pass


class PermissionDenied(RequestError):
    """Raised when the user may not perform the action (403)."""

    pass


class NotFoundError(RequestError):
    """Raised when the requested resource does not exist (404)."""

    pass


class RateLimitError(RequestError):
    """Raised when the server rejects the request as too frequent (429)."""

    pass


class ServerError(RequestError):
    """Raised for 5xx responses."""

    pass


class RoomLoadError(KriosException):
    """Raised when a room could not be loaded. The operation can be retried."""

    def __init__(self, room_id: str, cause: Exception | None = None):
        super().__init__(f"Failed to load room '{room_id}': {cause}")
        self.room_id = room_id
        self.cause = cause


class RemovedFromRoom(KriosException):
    """Terminal signal: the current user can no longer view the room.

    Passed to room listeners when the user was kicked or the room was
    disbanded. It is delivered as a value, never raised by the stores.
    """

    def __init__(self, room_id: str, reason: str):
        super().__init__(f"Removed from room '{room_id}': {reason}")
        self.room_id = room_id
        self.reason = reason
