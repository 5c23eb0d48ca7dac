"""Event-stream envelope models.

Every message on a stream is a JSON envelope ``{type, timestamp, ...}``.
Known types parse into their pydantic model. Anything else becomes an
``UnknownEvent`` (or raises ``UnknownEventType`` in strict mode) so new
server event types are visible rather than silently dropped.
"""

from __future__ import annotations

import json
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from rool_sync.errors import UnknownEventType

PatchOpName = Literal["add", "remove", "replace", "move", "copy", "test"]


class PatchOp(BaseModel):
    """One RFC 6902 operation."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    op: PatchOpName
    path: str
    value: Any = None
    from_: Optional[str] = Field(default=None, alias="from")

    def to_wire(self) -> dict[str, Any]:
        """Dump with wire keys, keeping an explicit ``null`` value."""
        return self.model_dump(by_alias=True, exclude_unset=True)


class _Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    timestamp: Optional[int] = None


class ConnectedEvent(_Envelope):
    type: Literal["connected"] = "connected"
    # Integer on space streams, opaque string on the client stream
    server_version: Optional[Union[int, str]] = Field(default=None, alias="serverVersion")


class SpacePatchedEvent(_Envelope):
    type: Literal["space_patched"] = "space_patched"
    space_id: Optional[str] = Field(default=None, alias="spaceId")
    patch: list[PatchOp]
    source: Literal["user", "agent"] = "user"
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")

    def wire_patch(self) -> list[dict[str, Any]]:
        return [op.to_wire() for op in self.patch]


class SpaceChangedEvent(_Envelope):
    type: Literal["space_changed"] = "space_changed"
    space_id: Optional[str] = Field(default=None, alias="spaceId")
    source: Literal["user", "agent"] = "user"


class _SpaceLifecycleEvent(_Envelope):
    space_id: str = Field(alias="spaceId")
    name: Optional[str] = None
    owner_id: Optional[str] = Field(default=None, alias="ownerId")
    size: Optional[int] = None
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")
    role: Optional[str] = None
    link_access: Optional[str] = Field(default=None, alias="linkAccess")

    def space_fields(self) -> dict[str, Any]:
        """Wire-keyed dict suitable for ``SpaceInfo.from_dict``."""
        return self.model_dump(by_alias=True, exclude={"type", "timestamp"})


class SpaceCreatedEvent(_SpaceLifecycleEvent):
    type: Literal["space_created"] = "space_created"


class SpaceDeletedEvent(_SpaceLifecycleEvent):
    type: Literal["space_deleted"] = "space_deleted"


class SpaceRenamedEvent(_SpaceLifecycleEvent):
    type: Literal["space_renamed"] = "space_renamed"


class SpaceAccessChangedEvent(_SpaceLifecycleEvent):
    type: Literal["space_access_changed"] = "space_access_changed"


class UserStorageChangedEvent(_Envelope):
    type: Literal["user_storage_changed"] = "user_storage_changed"
    key: str
    value: Any = None


class UnknownEvent(_Envelope):
    type: str
    raw: dict[str, Any] = Field(default_factory=dict)


StreamEvent = Union[
    ConnectedEvent,
    SpacePatchedEvent,
    SpaceChangedEvent,
    SpaceCreatedEvent,
    SpaceDeletedEvent,
    SpaceRenamedEvent,
    SpaceAccessChangedEvent,
    UserStorageChangedEvent,
    UnknownEvent,
]

_EVENT_TYPES: dict[str, type[_Envelope]] = {
    "connected": ConnectedEvent,
    "space_patched": SpacePatchedEvent,
    "space_changed": SpaceChangedEvent,
    "space_created": SpaceCreatedEvent,
    "space_deleted": SpaceDeletedEvent,
    "space_renamed": SpaceRenamedEvent,
    "space_access_changed": SpaceAccessChangedEvent,
    "user_storage_changed": UserStorageChangedEvent,
}


def parse_event(raw: Union[str, bytes, dict[str, Any]], strict: bool = False) -> StreamEvent:
    """Parse one envelope.

    Raises:
        ValueError: malformed JSON, missing ``type``, or a known type whose
            fields fail validation (pydantic's ``ValidationError`` is a
            ``ValueError``).
        UnknownEventType: unrecognised type and ``strict`` is set.
    """
    if isinstance(raw, (str, bytes)):
        raw = json.loads(raw)
    if not isinstance(raw, dict):
        raise ValueError("Event envelope must be a JSON object")

    event_type = raw.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise ValueError("Event envelope has no type")

    model = _EVENT_TYPES.get(event_type)
    if model is None:
        if strict:
            raise UnknownEventType(event_type)
        return UnknownEvent(type=event_type, timestamp=raw.get("timestamp"), raw=raw)
    return model.model_validate(raw)  # type: ignore[return-value]
