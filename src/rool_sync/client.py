"""Session facade: authentication, spaces, lifecycle events and user storage."""

from __future__ import annotations

import asyncio
import copy
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from rool_sync.api import GraphQLApi
from rool_sync.auth import AuthProvider, AuthSession
from rool_sync.config import RoolConfig
from rool_sync.context import SessionContext
from rool_sync.errors import NotAuthenticated, RoolError, TransportError
from rool_sync.events import (
    ConnectedEvent,
    SpaceAccessChangedEvent,
    SpaceCreatedEvent,
    SpaceDeletedEvent,
    SpaceRenamedEvent,
    StreamEvent,
    UserStorageChangedEvent,
)
from rool_sync.models import AuthUser, ConnectionState, CurrentUser, SpaceInfo, SpaceSnapshot, UserStorageChanged
from rool_sync.notifier import Notifier
from rool_sync.patch import json_equal
from rool_sync.space import Space
from rool_sync.transport import Connector, StreamTransport, client_scope_url, space_scope_url

logger = logging.getLogger(__name__)

CLIENT_EVENTS = frozenset(
    {
        "space_added",
        "space_removed",
        "space_renamed",
        "user_storage_changed",
        "auth_state_changed",
        "connection_state_changed",
        "error",
    }
)


class RoolClient:
    """Entry point for a sync session.

    Usage::

        async with RoolClient() as client:
            if await client.initialize():
                space = await client.open_space("abc123")
    """

    def __init__(
        self,
        config: Optional[RoolConfig] = None,
        provider: Optional[AuthProvider] = None,
        context: Optional[SessionContext] = None,
        connector: Optional[Connector] = None,
        strict_events: bool = False,
    ):
        self.context = context or SessionContext(config)
        self.auth = AuthSession(self.context, provider)
        self.api = GraphQLApi(self.context, self.auth)
        self.notifier = Notifier(CLIENT_EVENTS, name="client")
        self.current_user: Optional[CurrentUser] = None
        self._connector = connector
        self._strict_events = strict_events
        self._spaces: dict[str, Space] = {}
        self._transport: Optional[StreamTransport] = None
        self._background: set[asyncio.Task[Any]] = set()
        self._closed = False
        self.auth.subscribe("auth_state_changed", self._on_auth_state_changed)

    @property
    def config(self) -> RoolConfig:
        return self.context.config

    @property
    def open_spaces(self) -> list[Space]:
        return list(self._spaces.values())

    @property
    def connection_state(self) -> ConnectionState:
        if self._transport is None:
            return ConnectionState.DISCONNECTED
        return self._transport.state

    def subscribe(self, kind: str, handler: Callable[..., Any]) -> Callable[[], None]:
        return self.notifier.subscribe(kind, handler)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # -- Lifecycle ------------------------------------------------------------

    async def initialize(self) -> bool:
        """Arm authentication and, if logged in, load the user and subscribe.

        Returns True when the session is authenticated.
        """
        authenticated = self.auth.initialize()
        self._load_storage_cache()
        if authenticated:
            try:
                user = await self.get_current_user()
            except RoolError as exc:
                logger.warning("Failed to sync user storage: %s", exc)
            else:
                self.context.storage_cache = dict(user.storage)
                self._save_storage_cache()
            await self._ensure_subscribed()
        return authenticated

    async def login(self, app_name: str = "rool") -> None:
        await self.auth.login(app_name)

    async def logout(self) -> None:
        """Clear credentials, close every space and the client stream."""
        self.auth.logout()
        await self._close_spaces()
        await self._close_transport()
        self.current_user = None

    async def close(self) -> None:
        """Release everything owned by this client. Idempotent."""
        if self._closed:
            return
        self._closed = True
        await self._close_spaces()
        await self._close_transport()
        pending = list(self._background)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self.auth.close()
        await self.context.aclose()
        self.notifier.clear()

    async def __aenter__(self) -> "RoolClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False

    def get_auth_user(self) -> AuthUser:
        return self.auth.get_auth_user()

    def _on_auth_state_changed(self, authenticated: bool) -> None:
        self.notifier.emit("auth_state_changed", authenticated)

    # -- Client stream --------------------------------------------------------

    async def _ensure_subscribed(self) -> None:
        if self._transport is not None and not self._transport.closed:
            return
        transport = StreamTransport(
            self.auth,
            client_scope_url(self.config.stream_url),
            self._handle_client_event,
            name="client",
            connector=self._connector,
            strict=self._strict_events,
        )
        transport.subscribe_state(
            lambda state: self.notifier.emit("connection_state_changed", state)
        )
        self._transport = transport
        try:
            await transport.subscribe()
        except (NotAuthenticated, TransportError) as exc:
            logger.warning("Client event stream unavailable: %s", exc)
            self._transport = None
            await transport.unsubscribe()
            self.notifier.emit("error", exc)

    async def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.unsubscribe()

    def _handle_client_event(self, event: StreamEvent) -> None:
        if isinstance(event, SpaceCreatedEvent):
            self.notifier.emit("space_added", self._space_info(event, default_role="owner"))
        elif isinstance(event, SpaceDeletedEvent):
            self.notifier.emit("space_removed", event.space_id)
        elif isinstance(event, SpaceRenamedEvent):
            self.notifier.emit("space_renamed", event.space_id, event.name or event.space_id)
        elif isinstance(event, SpaceAccessChangedEvent):
            if event.role == "none":
                self.notifier.emit("space_removed", event.space_id)
            else:
                self.notifier.emit("space_added", self._space_info(event, default_role="viewer"))
        elif isinstance(event, UserStorageChangedEvent):
            self._handle_user_storage_changed(event.key, event.value)
        elif isinstance(event, ConnectedEvent):
            logger.debug("Client stream connected (server %s)", event.server_version)
        else:
            logger.debug("Ignoring client event %s", event.type)

    @staticmethod
    def _space_info(event, default_role: str) -> SpaceInfo:
        now = datetime.now(timezone.utc).isoformat()
        fields = event.space_fields()
        fields["id"] = event.space_id
        fields["role"] = fields.get("role") or default_role
        fields["createdAt"] = fields.get("createdAt") or now
        fields["updatedAt"] = fields.get("updatedAt") or now
        return SpaceInfo.from_dict(fields)

    # -- Spaces ---------------------------------------------------------------

    async def list_spaces(self) -> list[SpaceInfo]:
        return await self.api.list_spaces()

    async def open_space(self, space_id: str, conversation_id: Optional[str] = None) -> Space:
        """Fetch a space and wait for its event stream before returning it."""
        self._spawn(self._ensure_subscribed())
        snapshot = await self.api.get_space(space_id)
        return await self._attach(snapshot, conversation_id)

    async def create_space(self, name: str = "Untitled", conversation_id: Optional[str] = None) -> Space:
        self._spawn(self._ensure_subscribed())
        snapshot = await self.api.create_space(name)
        return await self._attach(snapshot, conversation_id)

    async def delete_space(self, space_id: str) -> None:
        """Delete on the server. Open ``Space`` objects for it become stale."""
        await self.api.delete_space(space_id)

    async def _attach(self, snapshot: SpaceSnapshot, conversation_id: Optional[str]) -> Space:
        space = Space(
            self.api,
            snapshot,
            conversation_id=conversation_id,
            transport_factory=self._space_transport,
            on_close=self._unregister,
        )
        try:
            await space.connect()
        except (NotAuthenticated, TransportError):
            await space.close()
            raise
        self._spaces[space.id] = space
        return space

    def _space_transport(self, space: Space) -> StreamTransport:
        return StreamTransport(
            self.auth,
            space_scope_url(self.config.stream_url, space.id, space.conversation_id),
            space.handle_event,
            name=f"space:{space.id}",
            connector=self._connector,
            strict=self._strict_events,
        )

    def _unregister(self, space_id: str) -> None:
        self._spaces.pop(space_id, None)

    async def _close_spaces(self) -> None:
        for space in list(self._spaces.values()):
            await space.close()
        self._spaces.clear()

    # -- User -----------------------------------------------------------------

    async def get_current_user(self) -> CurrentUser:
        user = await self.api.get_account()
        self.current_user = user
        return user

    def _load_storage_cache(self) -> None:
        cached = self.auth.get_storage()
        if cached:
            self.context.storage_cache = dict(cached)

    def _save_storage_cache(self) -> None:
        self.auth.set_storage(self.context.storage_cache)

    def get_user_storage(self, key: str) -> Any:
        return copy.deepcopy(self.context.storage_cache.get(key))

    def get_all_user_storage(self) -> dict[str, Any]:
        return copy.deepcopy(self.context.storage_cache)

    def set_user_storage(self, key: str, value: Any) -> None:
        """Update the cache now and sync to the server in the background.

        ``None`` deletes the key. Server failures are reported through the
        ``error`` notification.
        """
        if value is None:
            self.context.storage_cache.pop(key, None)
        else:
            self.context.storage_cache[key] = copy.deepcopy(value)
        self._save_storage_cache()
        self.notifier.emit("user_storage_changed", UserStorageChanged(key, copy.deepcopy(value), "local"))
        self._spawn(self._push_user_storage(key, value))

    async def _push_user_storage(self, key: str, value: Any) -> None:
        try:
            await self.api.set_user_storage(key, value)
        except RoolError as exc:
            logger.error("Failed to sync user storage %r: %s", key, exc)
            self.notifier.emit("error", exc)

    def _handle_user_storage_changed(self, key: str, value: Any) -> None:
        if json_equal(self.context.storage_cache.get(key), value):
            return
        if value is None:
            self.context.storage_cache.pop(key, None)
        else:
            self.context.storage_cache[key] = value
        self._save_storage_cache()
        self.notifier.emit("user_storage_changed", UserStorageChanged(key, value, "remote"))
