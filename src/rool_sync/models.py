"""Value types shared across the sync client."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"


class ChangeSource(str, Enum):
    """Origin of a space notification."""

    LOCAL_USER = "local_user"
    REMOTE_USER = "remote_user"
    REMOTE_AGENT = "remote_agent"
    SYSTEM = "system"

    @classmethod
    def from_wire(cls, source: Optional[str]) -> "ChangeSource":
        """Map the wire ``user|agent`` source onto the richer taxonomy."""
        return cls.REMOTE_AGENT if source == "agent" else cls.REMOTE_USER


ROLES = frozenset({"owner", "admin", "editor", "viewer"})


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Credentials:
    """Bearer credentials. ``expires_at`` is epoch seconds."""

    access_token: str
    refresh_token: Optional[str]
    expires_at: float

    def expires_within(self, seconds: float, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return current >= self.expires_at - seconds

    def is_expired(self, now: Optional[float] = None) -> bool:
        return self.expires_within(0, now)


@dataclass(frozen=True)
class AuthUser:
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class ObjectStat:
    modified_at: int
    modified_by: str
    modified_by_name: Optional[str]


@dataclass(frozen=True)
class SpaceInfo:
    id: str
    name: str
    role: str
    owner_id: str = ""
    size: int = 0
    created_at: str = ""
    updated_at: str = ""
    link_access: str = "none"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SpaceInfo":
        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            role=data.get("role") or "owner",
            owner_id=data.get("ownerId") or "",
            size=data.get("size") or 0,
            created_at=data.get("createdAt") or "",
            updated_at=data.get("updatedAt") or "",
            link_access=data.get("linkAccess") or "none",
        )


@dataclass(frozen=True)
class SpaceSnapshot:
    """Authoritative snapshot of a space as returned by the server."""

    id: str
    name: str
    role: str
    user_id: str
    data: dict[str, Any]
    link_access: str = "none"


# -- Space notifications ------------------------------------------------------


@dataclass(frozen=True)
class ObjectCreated:
    object_id: str
    object: dict[str, Any]
    source: ChangeSource


@dataclass(frozen=True)
class ObjectUpdated:
    object_id: str
    object: dict[str, Any]
    source: ChangeSource


@dataclass(frozen=True)
class ObjectDeleted:
    object_id: str
    source: ChangeSource


@dataclass(frozen=True)
class Linked:
    source_id: str
    relation: str
    target_id: str
    source: ChangeSource


@dataclass(frozen=True)
class Unlinked:
    source_id: str
    relation: str
    target_id: str
    source: ChangeSource


@dataclass(frozen=True)
class MetadataUpdated:
    metadata: dict[str, Any]
    source: ChangeSource


@dataclass(frozen=True)
class ConversationUpdated:
    conversation_id: str
    source: ChangeSource


@dataclass(frozen=True)
class ConversationsChanged:
    action: str  # created | deleted | renamed
    conversation_id: str
    source: ChangeSource
    name: Optional[str] = None


@dataclass(frozen=True)
class ConversationIdChanged:
    previous_conversation_id: str
    new_conversation_id: str


@dataclass(frozen=True)
class SpaceReset:
    source: ChangeSource


# -- Client notifications -----------------------------------------------------


@dataclass(frozen=True)
class UserStorageChanged:
    key: str
    value: Any
    source: str  # local | remote


@dataclass
class CurrentUser:
    id: str
    email: str
    name: Optional[str] = None
    slug: str = ""
    plan: str = ""
    storage: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CurrentUser":
        return cls(
            id=data["id"],
            email=data.get("email", ""),
            name=data.get("name"),
            slug=data.get("slug") or "",
            plan=data.get("plan") or "",
            storage=dict(data.get("storage") or {}),
        )


@dataclass(frozen=True)
class ObjectResult:
    """Current local state of an object after a mutation, plus the server message."""

    object: dict[str, Any]
    message: str = ""


@dataclass(frozen=True)
class FindResult:
    objects: list[dict[str, Any]]
    message: str = ""


@dataclass(frozen=True)
class PromptResult:
    message: str
    objects: list[dict[str, Any]]
