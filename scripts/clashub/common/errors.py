from __future__ import annotations


class ClashubError(Exception):
    """Base class for all clashub domain errors."""


class ValidationError(ClashubError):
    """Bad id, bad URL or otherwise malformed user input."""


class InvalidTokenError(ValidationError):
    pass


class AuthError(ClashubError):
    """Wrong, missing or duplicate-setup token."""


class InvalidCurrentTokenError(AuthError):
    pass


class AlreadyInitializedError(AuthError):
    pass


class NotFoundError(ClashubError):
    pass


class UpstreamError(ClashubError):
    """A fetched remote resource answered with a non-2xx status."""

    def __init__(self, status: int, reason: str = "") -> None:
        self.status = status
        self.reason = reason
        super().__init__(f"{status} {reason}".strip())


class FormatError(ClashubError):
    """A fetched document does not have the expected shape."""


class RelayConnectionError(ClashubError):
    """Network-level failure while talking to an upstream target."""


class StoreError(ClashubError):
    """The backing store exists but cannot be read safely for a write."""
