"""
Client-side synchronization for Rool spaces.

Keeps a local replica of a space's JSON document consistent with the
authoritative server via:
- Optimistic local mutations confirmed by the GraphQL API
- A persistent event stream of versioned JSON patches
- Gap detection with a full resync from the server
- Token refresh shared by every request and stream

Network-facing pieces (httpx, websockets) are lazily imported via
__getattr__ so that ``from rool_sync.patch import ...`` stays lightweight.
"""

from .errors import (
    ApiError,
    CredentialsRejected,
    NotAuthenticated,
    OperationFailed,
    PatchApplyFailure,
    RoolError,
    TransportError,
    UnknownEventType,
    ValidationError,
    VersionGap,
)
from .models import ChangeSource, ConnectionState, Credentials, SpaceInfo
from .notifier import Notifier
from .patch import apply_patch

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "RoolClient": (".client", "RoolClient"),
    "Space": (".space", "Space"),
    "CheckpointController": (".checkpoints", "CheckpointController"),
    "AuthSession": (".auth", "AuthSession"),
    "FileAuthProvider": (".auth", "FileAuthProvider"),
    "MemoryAuthProvider": (".auth", "MemoryAuthProvider"),
    "CredentialStore": (".auth", "CredentialStore"),
    "GraphQLApi": (".api", "GraphQLApi"),
    "StreamTransport": (".transport", "StreamTransport"),
    "BackoffPolicy": (".transport", "BackoffPolicy"),
    "RoolConfig": (".config", "RoolConfig"),
    "SessionContext": (".context", "SessionContext"),
    "parse_event": (".events", "parse_event"),
}


def __getattr__(name: str):
    if name in _LAZY_IMPORTS:
        module_path, attr = _LAZY_IMPORTS[name]
        import importlib

        mod = importlib.import_module(module_path, __name__)
        return getattr(mod, attr)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "ApiError",
    "AuthSession",
    "BackoffPolicy",
    "ChangeSource",
    "CheckpointController",
    "ConnectionState",
    "Credentials",
    "CredentialStore",
    "CredentialsRejected",
    "FileAuthProvider",
    "GraphQLApi",
    "MemoryAuthProvider",
    "NotAuthenticated",
    "Notifier",
    "OperationFailed",
    "PatchApplyFailure",
    "RoolClient",
    "RoolConfig",
    "RoolError",
    "SessionContext",
    "Space",
    "SpaceInfo",
    "StreamTransport",
    "TransportError",
    "UnknownEventType",
    "ValidationError",
    "VersionGap",
    "apply_patch",
    "parse_event",
]
