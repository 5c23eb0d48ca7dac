"""Exception hierarchy for the sync client.

Transient and structural sync problems (``TransportError``, ``VersionGap``,
``PatchApplyFailure``) are recovered locally by reconnecting, refreshing or
resyncing. Only failures of caller-initiated mutations reach the caller, as
``OperationFailed``, and only after local state has been resynced.
"""

from __future__ import annotations

from typing import Any, Optional


class RoolError(Exception):
    """Base class for all rool_sync errors."""


class NotAuthenticated(RoolError):
    """Raised when no usable access token is available."""


class TransportError(RoolError):
    """Transient network or stream failure."""


class CredentialsRejected(RoolError):
    """The refresh endpoint explicitly rejected the refresh token."""


class VersionGap(RoolError):
    """An inbound patch skipped one or more versions."""

    def __init__(self, expected: int, received: int):
        super().__init__(f"Version gap: expected {expected}, got {received}")
        self.expected = expected
        self.received = received


class PatchApplyFailure(RoolError):
    """A patch could not be applied to the local document."""


class ValidationError(RoolError):
    """Invalid input to a space operation."""


class ApiError(RoolError):
    """The server answered a request with an application error."""

    def __init__(self, message: str, extensions: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.extensions = extensions or {}


class OperationFailed(RoolError):
    """A mutating call failed. Local state has already been resynced."""

    def __init__(self, operation: str, cause: BaseException):
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause


class UnknownEventType(RoolError):
    """Raised by the strict event parser for unrecognised envelope types."""


__all__ = [
    "RoolError",
    "NotAuthenticated",
    "TransportError",
    "CredentialsRejected",
    "VersionGap",
    "PatchApplyFailure",
    "ValidationError",
    "ApiError",
    "OperationFailed",
    "UnknownEventType",
]
