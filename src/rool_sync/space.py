"""Local mirror of one space.

A ``Space`` owns the space's document state and is its only writer. Local
mutations are optimistic: the new state is computed and swapped in before the
first ``await``, notifications fire immediately, and the request follows. If
the request fails the space resyncs from the server before the caller sees
``OperationFailed``. Remote patches arrive through the space's
``StreamTransport`` and are reconciled by ``apply``.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import re
import secrets
import string
from collections.abc import Awaitable, Callable
from typing import Any, Optional, TypeVar, Union

from rool_sync.api import GraphQLApi
from rool_sync.checkpoints import CheckpointController
from rool_sync.errors import (
    OperationFailed,
    PatchApplyFailure,
    RoolError,
    ValidationError,
    VersionGap,
)
from rool_sync.events import ConnectedEvent, SpaceChangedEvent, SpacePatchedEvent, StreamEvent
from rool_sync.jsonld import from_jsonld, to_jsonld
from rool_sync.models import (
    ChangeSource,
    ConnectionState,
    ConversationIdChanged,
    ConversationsChanged,
    ConversationUpdated,
    FindResult,
    Linked,
    MetadataUpdated,
    ObjectCreated,
    ObjectDeleted,
    ObjectResult,
    ObjectStat,
    ObjectUpdated,
    PromptResult,
    SpaceReset,
    SpaceSnapshot,
    Unlinked,
    now_ms,
)
from rool_sync.notifier import Notifier
from rool_sync.patch import (
    apply_patch,
    extract_version,
    json_equal,
    parse_pointer,
    patch_changes_anything,
    without_duplicate_adds,
)
from rool_sync.transport import StreamTransport

logger = logging.getLogger(__name__)

T = TypeVar("T")

OBJECT_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
ID_ALPHABET = string.digits + string.ascii_uppercase + string.ascii_lowercase
ID_LENGTH = 6

SPACE_EVENTS = frozenset(
    {
        "object_created",
        "object_updated",
        "object_deleted",
        "linked",
        "unlinked",
        "metadata_updated",
        "conversation_updated",
        "conversations_changed",
        "conversation_id_changed",
        "reset",
        "sync_error",
        "connection_state_changed",
    }
)


def generate_entity_id() -> str:
    """Six random characters from ``[0-9A-Za-z]``."""
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(ID_LENGTH))


def _is_link_list(tokens: list[str]) -> bool:
    """``/objects/{id}/links/{relation}``: targets are unique."""
    return len(tokens) == 4 and tokens[0] == "objects" and tokens[2] == "links"


def _sort_by_modified(entries: list[tuple[str, dict[str, Any]]], order: str) -> None:
    entries.sort(key=lambda item: item[1].get("modifiedAt") or 0, reverse=(order == "desc"))


class Space:
    """One open space."""

    def __init__(
        self,
        api: GraphQLApi,
        snapshot: SpaceSnapshot,
        conversation_id: Optional[str] = None,
        transport_factory: Optional[Callable[["Space"], StreamTransport]] = None,
        on_close: Optional[Callable[[str], Any]] = None,
    ):
        self._api = api
        self._id = snapshot.id
        self._name = snapshot.name
        self._role = snapshot.role
        self._user_id = snapshot.user_id
        self._link_access = snapshot.link_access
        self._state: dict[str, Any] = snapshot.data
        self._conversation_id = conversation_id or generate_entity_id()
        self._on_close = on_close
        self.notifier = Notifier(SPACE_EVENTS, name=f"space:{self._id}")
        self._resync_task: Optional[asyncio.Task[None]] = None
        self._background: set[asyncio.Task[Any]] = set()
        self._closed = False

        self.transport: Optional[StreamTransport] = None
        if transport_factory is not None:
            self.transport = transport_factory(self)
            self.transport.subscribe_state(self._on_connection_state)

        self.history = CheckpointController(self)

    # -- Properties -----------------------------------------------------------

    @property
    def id(self) -> str:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    @property
    def role(self) -> str:
        return self._role

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def link_access(self) -> str:
        return self._link_access

    @property
    def is_read_only(self) -> bool:
        return self._role == "viewer"

    @property
    def version(self) -> int:
        return self._state.get("version") or 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def api(self) -> GraphQLApi:
        return self._api

    @property
    def connection_state(self) -> ConnectionState:
        if self.transport is None:
            return ConnectionState.DISCONNECTED
        return self.transport.state

    @property
    def conversation_id(self) -> str:
        return self._conversation_id

    @conversation_id.setter
    def conversation_id(self, value: str) -> None:
        if value == self._conversation_id:
            return
        previous = self._conversation_id
        self._conversation_id = value
        self.notifier.emit("conversation_id_changed", ConversationIdChanged(previous, value))

    def subscribe(self, kind: str, handler: Callable[..., Any]) -> Callable[[], None]:
        return self.notifier.subscribe(kind, handler)

    # -- Lifecycle ------------------------------------------------------------

    async def connect(self) -> None:
        """Subscribe to the space's event stream. Raises if the first attempt fails."""
        if self.transport is not None:
            await self.transport.subscribe()

    async def close(self) -> None:
        """Detach the transport and drop listeners. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self.transport is not None:
            await self.transport.unsubscribe()
        if self._on_close is not None:
            self._on_close(self._id)
        self.notifier.clear()
        logger.debug("Space %s closed", self._id)

    def _on_connection_state(self, state: ConnectionState) -> None:
        self.notifier.emit("connection_state_changed", state)

    def _spawn(self, coro: Awaitable[T]) -> Optional["asyncio.Task[T]"]:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Space %s: no running loop, dropping background work", self._id)
            if asyncio.iscoroutine(coro):
                coro.close()
            return None
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # -- Reads ----------------------------------------------------------------

    def _objects(self) -> dict[str, Any]:
        return self._state.get("objects") or {}

    def _conversations(self) -> dict[str, Any]:
        return self._state.get("conversations") or {}

    def snapshot(self) -> dict[str, Any]:
        """Deep copy of the whole document state."""
        return copy.deepcopy(self._state)

    def get_object(self, object_id: str) -> Optional[dict[str, Any]]:
        entry = self._objects().get(object_id)
        return copy.deepcopy(entry["data"]) if entry else None

    def stat(self, object_id: str) -> Optional[ObjectStat]:
        entry = self._objects().get(object_id)
        if entry is None:
            return None
        return ObjectStat(
            modified_at=entry.get("modifiedAt") or 0,
            modified_by=entry.get("modifiedBy") or "",
            modified_by_name=entry.get("modifiedByName"),
        )

    def get_object_ids(self, limit: Optional[int] = None, order: str = "desc") -> list[str]:
        entries = list(self._objects().items())
        _sort_by_modified(entries, order)
        ids = [object_id for object_id, _ in entries]
        return ids[:limit] if limit else ids

    async def find_objects(
        self,
        where: Optional[dict[str, Any]] = None,
        prompt: Optional[str] = None,
        limit: Optional[int] = None,
        object_ids: Optional[list[str]] = None,
        order: str = "desc",
        ephemeral: Optional[bool] = None,
    ) -> FindResult:
        """Find objects by exact field match, or ask the server.

        Matching runs locally unless a prompt is given or a ``where`` value
        contains a ``{{placeholder}}``.
        """
        needs_server = bool(prompt) or (where is not None and "{{" in json.dumps(where))
        if needs_server:
            objects, message = await self._api.find_objects(
                self._id,
                self._conversation_id,
                where=where,
                prompt=prompt,
                limit=limit,
                object_ids=object_ids,
                order=order,
                ephemeral=ephemeral,
            )
            return FindResult(objects, message)

        entries = list(self._objects().items())
        if where:
            entries = [
                (object_id, entry)
                for object_id, entry in entries
                if all(
                    key in entry["data"] and json_equal(entry["data"][key], value)
                    for key, value in where.items()
                )
            ]
        if object_ids:
            scope = set(object_ids)
            entries = [(object_id, entry) for object_id, entry in entries if object_id in scope]
        _sort_by_modified(entries, order)
        if limit:
            entries = entries[:limit]
        objects = [copy.deepcopy(entry["data"]) for _, entry in entries]
        return FindResult(objects, f"Found {len(objects)} object(s) matching criteria")

    def get_parents(
        self, object_id: str, relation: Optional[str] = None, limit: Optional[int] = None, order: str = "desc"
    ) -> list[dict[str, Any]]:
        """Objects that link to ``object_id``."""
        parents = [
            (source_id, entry)
            for source_id, entry in self._objects().items()
            if any(
                (relation is None or rel == relation) and object_id in targets
                for rel, targets in (entry.get("links") or {}).items()
            )
        ]
        _sort_by_modified(parents, order)
        if limit:
            parents = parents[:limit]
        return [copy.deepcopy(entry["data"]) for _, entry in parents]

    def get_children(
        self, object_id: str, relation: Optional[str] = None, limit: Optional[int] = None, order: str = "desc"
    ) -> list[dict[str, Any]]:
        """Objects ``object_id`` links to. Dangling targets are skipped."""
        objects = self._objects()
        children = [
            (target_id, objects[target_id])
            for target_id in self.get_children_including_orphans(object_id, relation)
            if target_id in objects
        ]
        _sort_by_modified(children, order)
        if limit:
            children = children[:limit]
        return [copy.deepcopy(entry["data"]) for _, entry in children]

    def get_children_including_orphans(self, object_id: str, relation: Optional[str] = None) -> list[str]:
        entry = self._objects().get(object_id)
        if entry is None:
            return []
        children: list[str] = []
        for rel, targets in (entry.get("links") or {}).items():
            if relation is None or rel == relation:
                children.extend(targets)
        return children

    def get_metadata(self, key: str) -> Any:
        return copy.deepcopy((self._state.get("meta") or {}).get(key))

    def get_all_metadata(self) -> dict[str, Any]:
        return copy.deepcopy(self._state.get("meta") or {})

    def get_interactions(self) -> list[dict[str, Any]]:
        return self.get_interactions_by_id(self._conversation_id)

    def get_interactions_by_id(self, conversation_id: str) -> list[dict[str, Any]]:
        conversation = self._conversations().get(conversation_id) or {}
        return copy.deepcopy(conversation.get("interactions") or [])

    def get_conversation_ids(self) -> list[str]:
        return list(self._conversations())

    def get_system_instruction(self) -> Optional[str]:
        conversation = self._conversations().get(self._conversation_id) or {}
        return conversation.get("systemInstruction")

    async def list_conversations(self) -> list[dict[str, Any]]:
        return await self._api.list_conversations(self._id)

    def export_jsonld(self) -> dict[str, Any]:
        return to_jsonld(self._state)

    # -- Mutation protocol ----------------------------------------------------

    def _replace_objects(self, objects: dict[str, Any]) -> None:
        self._state = {**self._state, "objects": objects}

    def _replace_conversations(self, conversations: dict[str, Any]) -> None:
        self._state = {**self._state, "conversations": conversations}

    async def _commit(self, operation: str, request: Awaitable[T]) -> T:
        """Await the request; on failure resync first, then raise."""
        try:
            return await request
        except RoolError as exc:
            logger.error("Space %s: %s failed: %s", self._id, operation, exc)
            await self.resync_from_server(exc)
            raise OperationFailed(operation, exc) from exc

    def _emit(self, kind: str, payload: Any) -> None:
        self.notifier.emit(kind, payload)

    # -- Objects --------------------------------------------------------------

    async def create_object(
        self,
        data: Optional[dict[str, Any]] = None,
        prompt: Optional[str] = None,
        ephemeral: bool = False,
    ) -> ObjectResult:
        """Create an object. ``data["id"]`` is used when given, else one is generated."""
        data = dict(data or {})
        object_id = data.get("id")
        if object_id is None:
            object_id = generate_entity_id()
        if not isinstance(object_id, str) or not OBJECT_ID_PATTERN.match(object_id):
            raise ValidationError(
                f"Invalid object ID {object_id!r}. IDs must contain only alphanumeric "
                "characters, hyphens, and underscores."
            )
        if object_id in self._objects():
            raise ValidationError(f"Object {object_id!r} already exists")

        data["id"] = object_id
        entry = {
            "links": {},
            "data": data,
            "modifiedAt": now_ms(),
            "modifiedBy": self._user_id,
            "modifiedByName": None,
        }
        self._replace_objects({**self._objects(), object_id: entry})
        self._emit("object_created", ObjectCreated(object_id, copy.deepcopy(data), ChangeSource.LOCAL_USER))

        message = await self._commit(
            "create_object",
            self._api.create_object(
                self._id, copy.deepcopy(data), self._conversation_id, prompt, ephemeral or None
            ),
        )
        return ObjectResult(self.get_object(object_id) or copy.deepcopy(data), message)

    async def update_object(
        self,
        object_id: str,
        data: Optional[dict[str, Any]] = None,
        prompt: Optional[str] = None,
        ephemeral: bool = False,
    ) -> ObjectResult:
        """Update fields of an object. A ``None`` value deletes the field."""
        entry = self._objects().get(object_id)
        if entry is None:
            raise ValidationError(f"Object {object_id!r} not found for update")
        if data is not None and "id" in data:
            raise ValidationError("Cannot change id in update_object. The id field is immutable.")

        if data:
            new_data = dict(entry["data"])
            for key, value in data.items():
                if value is None:
                    new_data.pop(key, None)
                else:
                    new_data[key] = copy.deepcopy(value)
            self._replace_objects({**self._objects(), object_id: {**entry, "data": new_data}})
            self._emit(
                "object_updated", ObjectUpdated(object_id, copy.deepcopy(new_data), ChangeSource.LOCAL_USER)
            )

        message = await self._commit(
            "update_object",
            self._api.update_object(
                self._id,
                object_id,
                self._conversation_id,
                dict(data) if data is not None else None,
                prompt,
                ephemeral or None,
            ),
        )
        current = self.get_object(object_id)
        return ObjectResult(current if current is not None else copy.deepcopy(entry["data"]), message)

    async def delete_objects(self, object_ids: list[str]) -> None:
        """Delete objects with their outbound links. Inbound links are left dangling."""
        if not object_ids:
            return

        objects = dict(self._objects())
        removed_links: list[tuple[str, str, str]] = []
        deleted: list[str] = []
        for object_id in object_ids:
            entry = objects.pop(object_id, None)
            if entry is None:
                continue
            deleted.append(object_id)
            for relation, targets in (entry.get("links") or {}).items():
                removed_links.extend((object_id, relation, target) for target in targets)
        self._replace_objects(objects)

        for source_id, relation, target_id in removed_links:
            self._emit("unlinked", Unlinked(source_id, relation, target_id, ChangeSource.LOCAL_USER))
        for object_id in deleted:
            self._emit("object_deleted", ObjectDeleted(object_id, ChangeSource.LOCAL_USER))

        await self._commit(
            "delete_objects", self._api.delete_objects(self._id, list(object_ids), self._conversation_id)
        )

    # -- Links ----------------------------------------------------------------

    async def link(self, source_id: str, relation: str, target_id: str) -> None:
        entry = self._objects().get(source_id)
        if entry is None:
            raise ValidationError(f"Source object {source_id!r} not found")

        links = entry.get("links") or {}
        targets = links.get(relation) or []
        if target_id not in targets:
            new_links = {**links, relation: [*targets, target_id]}
            self._replace_objects({**self._objects(), source_id: {**entry, "links": new_links}})
            self._emit("linked", Linked(source_id, relation, target_id, ChangeSource.LOCAL_USER))

        await self._commit(
            "link", self._api.link(self._id, source_id, relation, target_id, self._conversation_id)
        )

    async def unlink(
        self, source_id: str, relation: Optional[str] = None, target_id: Optional[str] = None
    ) -> bool:
        """Remove one link, every target of a relation, or every relation.

        Returns True if anything was removed locally.
        """
        entry = self._objects().get(source_id)
        if entry is None:
            raise ValidationError(f"Source object {source_id!r} not found")
        if relation is None and target_id is not None:
            raise ValidationError("unlink with a target requires a relation")

        links = dict(entry.get("links") or {})
        removed: list[tuple[str, str]] = []
        if relation is not None and target_id is not None:
            targets = links.get(relation) or []
            if target_id in targets:
                remaining = [target for target in targets if target != target_id]
                if remaining:
                    links[relation] = remaining
                else:
                    del links[relation]
                removed.append((relation, target_id))
        elif relation is not None:
            removed.extend((relation, target) for target in links.pop(relation, []))
        else:
            for rel, targets in links.items():
                removed.extend((rel, target) for target in targets)
            links = {}

        if removed:
            self._replace_objects({**self._objects(), source_id: {**entry, "links": links}})
            for rel, target in removed:
                self._emit("unlinked", Unlinked(source_id, rel, target, ChangeSource.LOCAL_USER))

        await self._commit(
            "unlink", self._api.unlink(self._id, source_id, relation, target_id, self._conversation_id)
        )
        return bool(removed)

    # -- Metadata -------------------------------------------------------------

    async def set_metadata(self, key: str, value: Any) -> None:
        meta = {**(self._state.get("meta") or {}), key: copy.deepcopy(value)}
        self._state = {**self._state, "meta": meta}
        self._emit("metadata_updated", MetadataUpdated(copy.deepcopy(meta), ChangeSource.LOCAL_USER))
        await self._commit("set_metadata", self._api.set_space_meta(self._id, meta, self._conversation_id))

    # -- Conversations --------------------------------------------------------

    def _new_conversation(self, name: Optional[str] = None) -> dict[str, Any]:
        conversation: dict[str, Any] = {
            "createdAt": now_ms(),
            "createdBy": self._user_id,
            "interactions": [],
        }
        if name is not None:
            conversation["name"] = name
        return conversation

    async def rename_conversation(self, conversation_id: str, name: str) -> None:
        """Rename a conversation, creating it if needed."""
        conversations = dict(self._conversations())
        existing = conversations.get(conversation_id)
        is_new = existing is None
        conversations[conversation_id] = (
            self._new_conversation(name) if is_new else {**existing, "name": name}
        )
        self._replace_conversations(conversations)

        self._emit("conversation_updated", ConversationUpdated(conversation_id, ChangeSource.LOCAL_USER))
        self._emit(
            "conversations_changed",
            ConversationsChanged(
                "created" if is_new else "renamed", conversation_id, ChangeSource.LOCAL_USER, name
            ),
        )
        await self._commit(
            "rename_conversation", self._api.rename_conversation(self._id, conversation_id, name)
        )

    async def delete_conversation(self, conversation_id: Optional[str] = None) -> None:
        """Delete a conversation. Defaults to the active one."""
        target = conversation_id or self._conversation_id
        conversations = dict(self._conversations())
        conversations.pop(target, None)
        self._replace_conversations(conversations)

        self._emit("conversation_updated", ConversationUpdated(target, ChangeSource.LOCAL_USER))
        self._emit("conversations_changed", ConversationsChanged("deleted", target, ChangeSource.LOCAL_USER))
        await self._commit("delete_conversation", self._api.delete_conversation(self._id, target))

    async def set_system_instruction(self, instruction: Optional[str]) -> None:
        """Set or clear (``None``) the active conversation's system instruction."""
        conversations = dict(self._conversations())
        conversation = dict(conversations.get(self._conversation_id) or self._new_conversation())
        if instruction is None:
            conversation.pop("systemInstruction", None)
        else:
            conversation["systemInstruction"] = instruction
        conversations[self._conversation_id] = conversation
        self._replace_conversations(conversations)

        self._emit("conversation_updated", ConversationUpdated(self._conversation_id, ChangeSource.LOCAL_USER))
        await self._commit(
            "set_system_instruction",
            self._api.set_system_instruction(self._id, self._conversation_id, instruction),
        )

    # -- Space-level ----------------------------------------------------------

    async def rename(self, name: str) -> None:
        """Rename the space. The old name is restored if the server refuses."""
        old_name = self._name
        self._name = name
        try:
            await self._api.rename_space(self._id, name)
        except RoolError as exc:
            self._name = old_name
            raise OperationFailed("rename", exc) from exc

    async def prompt(
        self,
        text: str,
        object_ids: Optional[list[str]] = None,
        response_schema: Optional[dict[str, Any]] = None,
        effort: Optional[str] = None,
        ephemeral: Optional[bool] = None,
        read_only: Optional[bool] = None,
    ) -> PromptResult:
        """Ask the agent to work on the space.

        Modified objects are read back from local state; ids the patch
        stream has already deleted are dropped.
        """
        message, modified_ids = await self._api.prompt(
            self._id,
            text,
            self._conversation_id,
            object_ids=object_ids,
            response_schema=response_schema,
            effort=effort,
            ephemeral=ephemeral,
            read_only=read_only,
        )
        objects = [obj for obj in (self.get_object(object_id) for object_id in modified_ids) if obj is not None]
        return PromptResult(message, objects)

    async def import_jsonld(self, document: Any) -> None:
        """Import a JSON-LD graph into this (empty) space: objects first, then links."""
        if self._objects():
            raise ValidationError(
                "Cannot import into non-empty space. Create a new space or delete existing objects first."
            )
        parsed = from_jsonld(document)
        for item in parsed:
            await self.create_object(item.data)
        for item in parsed:
            for relation, target_id in item.relations:
                await self.link(item.id, relation, target_id)

    # -- Remote events --------------------------------------------------------

    def handle_event(self, event: StreamEvent) -> None:
        """Entry point for the space's transport."""
        if self._closed:
            return
        if isinstance(event, SpacePatchedEvent):
            self.apply(event.wire_patch(), event.source)
        elif isinstance(event, SpaceChangedEvent):
            self._spawn(self._reload(ChangeSource.REMOTE_USER))
        elif isinstance(event, ConnectedEvent):
            self._check_server_version(event.server_version)
        else:
            logger.debug("Space %s: ignoring %s event", self._id, event.type)

    def _check_server_version(self, server_version: Union[int, str, None]) -> None:
        try:
            remote = int(server_version) if server_version is not None else None
        except (TypeError, ValueError):
            remote = None
        if remote is not None and remote > self.version:
            logger.warning(
                "Space %s: server is at version %d, local at %d. Resyncing.", self._id, remote, self.version
            )
            self._schedule_resync(VersionGap(self.version + 1, remote))

    async def _reload(self, source: ChangeSource) -> None:
        try:
            snapshot = await self._api.get_space(self._id)
        except RoolError as exc:
            logger.error("Space %s: failed to reload: %s", self._id, exc)
            self._emit("sync_error", exc)
            return
        except Exception as exc:
            logger.exception("Space %s: unexpected error while reloading", self._id)
            self._emit("sync_error", exc)
            return
        if self._closed:
            return
        self._adopt(snapshot)
        self._emit("reset", SpaceReset(source))

    def _adopt(self, snapshot: SpaceSnapshot) -> None:
        self._state = snapshot.data
        self._name = snapshot.name
        self._role = snapshot.role
        self._link_access = snapshot.link_access

    def apply(self, patch: list[dict[str, Any]], source: Union[str, ChangeSource] = "user") -> bool:
        """Reconcile one inbound patch. Returns True if it was applied.

        Stale patches are dropped. A patch that skips versions, or one that
        does not fit the local document, is discarded and a resync is
        scheduled instead.
        """
        change_source = source if isinstance(source, ChangeSource) else ChangeSource.from_wire(source)
        try:
            incoming = extract_version(patch)
        except PatchApplyFailure as exc:
            logger.error("Space %s: malformed version op: %s", self._id, exc)
            self._schedule_resync(exc)
            return False

        if incoming is not None:
            current = self.version
            if incoming > current + 1:
                gap = VersionGap(current + 1, incoming)
                logger.warning("Space %s: %s. Resyncing.", self._id, gap)
                self._schedule_resync(gap)
                return False
            if incoming <= current:
                logger.debug("Space %s: dropping stale patch v%d (at v%d)", self._id, incoming, current)
                return False

        patch = without_duplicate_adds(self._state, patch, _is_link_list)
        will_change = patch_changes_anything(self._state, patch)
        try:
            self._state = apply_patch(self._state, patch)
        except PatchApplyFailure as exc:
            logger.error("Space %s: failed to apply remote patch: %s", self._id, exc)
            self._schedule_resync(exc)
            return False

        if will_change:
            self._emit_patch_notifications(patch, change_source)
        return True

    def _emit_patch_notifications(self, patch: list[dict[str, Any]], source: ChangeSource) -> None:
        objects = self._objects()
        conversations = self._conversations()
        updated_objects: set[str] = set()
        updated_conversations: set[str] = set()
        meta_updated = False

        for op in patch:
            name = op.get("op")
            try:
                tokens = parse_pointer(op.get("path", ""))
            except PatchApplyFailure:
                continue
            if not tokens:
                continue
            root = tokens[0]

            if root == "objects" and len(tokens) >= 2:
                object_id = tokens[1]
                entry = objects.get(object_id)
                if len(tokens) == 2:
                    if name == "add" and entry is not None:
                        self._emit("object_created", ObjectCreated(object_id, copy.deepcopy(entry["data"]), source))
                    elif name == "replace" and entry is not None and object_id not in updated_objects:
                        updated_objects.add(object_id)
                        self._emit("object_updated", ObjectUpdated(object_id, copy.deepcopy(entry["data"]), source))
                    elif name == "remove":
                        self._emit("object_deleted", ObjectDeleted(object_id, source))
                elif tokens[2] == "data":
                    if entry is not None and object_id not in updated_objects:
                        updated_objects.add(object_id)
                        self._emit("object_updated", ObjectUpdated(object_id, copy.deepcopy(entry["data"]), source))
                elif tokens[2] == "links" and len(tokens) >= 4:
                    relation = tokens[3]
                    if name == "remove":
                        # Removed targets are gone before this runs
                        logger.debug("Space %s: link removal on %s.%s not reported", self._id, object_id, relation)
                    elif len(tokens) == 4 and name in ("add", "replace"):
                        for target_id in ((entry or {}).get("links") or {}).get(relation, []):
                            self._emit("linked", Linked(object_id, relation, target_id, source))
                    elif len(tokens) == 5 and name == "add" and isinstance(op.get("value"), str):
                        self._emit("linked", Linked(object_id, relation, op["value"], source))

            elif root == "meta":
                meta_updated = True

            elif root == "conversations" and len(tokens) >= 2:
                conversation_id = tokens[1]
                if conversation_id not in updated_conversations:
                    updated_conversations.add(conversation_id)
                    self._emit("conversation_updated", ConversationUpdated(conversation_id, source))
                conversation = conversations.get(conversation_id) or {}
                if len(tokens) == 2 and name == "add":
                    self._emit(
                        "conversations_changed",
                        ConversationsChanged("created", conversation_id, source, conversation.get("name")),
                    )
                elif len(tokens) == 2 and name == "remove":
                    self._emit("conversations_changed", ConversationsChanged("deleted", conversation_id, source))
                elif len(tokens) >= 3 and tokens[2] == "name":
                    self._emit(
                        "conversations_changed",
                        ConversationsChanged("renamed", conversation_id, source, conversation.get("name")),
                    )

        if meta_updated:
            self._emit("metadata_updated", MetadataUpdated(copy.deepcopy(self._state.get("meta") or {}), source))

    # -- Resync ---------------------------------------------------------------

    def _schedule_resync(self, cause: BaseException) -> None:
        self._spawn(self.resync_from_server(cause))

    async def resync_from_server(self, cause: Optional[BaseException] = None) -> None:
        """Replace local state with a fresh server snapshot.

        Only one resync runs at a time; concurrent callers wait for the
        running one. Never raises: failures are reported via ``sync_error``.
        """
        if self._resync_task is None:
            task = asyncio.ensure_future(self._run_resync(cause))
            task.add_done_callback(self._resync_done)
            self._resync_task = task
        await asyncio.shield(self._resync_task)

    def _resync_done(self, task: "asyncio.Task[None]") -> None:
        if self._resync_task is task:
            self._resync_task = None

    async def _run_resync(self, cause: Optional[BaseException]) -> None:
        error = cause if cause is not None else RoolError("Sync failed")
        logger.warning("Space %s: resyncing from server after: %s", self._id, error)
        try:
            snapshot = await self._api.get_space(self._id)
        except RoolError as exc:
            logger.error("Space %s: failed to resync from server: %s", self._id, exc)
            self._emit("sync_error", error)
            return
        except Exception:
            logger.exception("Space %s: unexpected error while resyncing", self._id)
            self._emit("sync_error", error)
            return
        if self._closed:
            return
        self._adopt(snapshot)
        self._emit("sync_error", error)
        self._emit("reset", SpaceReset(ChangeSource.SYSTEM))
