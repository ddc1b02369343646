from __future__ import annotations


class TandemError(Exception):
    """Base class for errors surfaced by the sync backend."""


class NotFoundError(TandemError):
    pass


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


class ConflictError(TandemError):
    pass


class ValidationError(TandemError):
    pass


class NotConnectedError(TandemError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"Remote calendar is not connected for user: {user_id}")
        self.user_id = user_id


class RemoteFetchError(TandemError):
    """A remote listing call failed. Never to be read as "zero items"."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class RemoteAuthError(RemoteFetchError):
    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=False)


class SyncFailedError(TandemError):
    def __init__(self, cause: Exception | str) -> None:
        super().__init__(f"sync failed: {cause}")
        self.cause = cause
        # Only remote fetch failures know whether a later attempt can succeed.
        self.retryable = bool(getattr(cause, "retryable", False))


class SyncCancelledError(TandemError):
    pass
