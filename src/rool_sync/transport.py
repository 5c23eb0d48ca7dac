"""Persistent event-stream transport with exponential backoff reconnection."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional, Protocol
from urllib.parse import quote, urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from rool_sync.auth import AuthSession
from rool_sync.errors import NotAuthenticated, TransportError, UnknownEventType
from rool_sync.events import ConnectedEvent, StreamEvent, UnknownEvent, parse_event
from rool_sync.models import ConnectionState
from rool_sync.notifier import Notifier

logger = logging.getLogger(__name__)


class BackoffPolicy:
    """Exponential reconnect delays: 1, 2, 4, 8, 16, 30, 30, ... seconds."""

    INITIAL_DELAY_SECONDS = 1.0
    MAX_DELAY_SECONDS = 30.0
    MULTIPLIER = 2.0

    def __init__(
        self,
        initial: Optional[float] = None,
        maximum: Optional[float] = None,
        multiplier: Optional[float] = None,
    ):
        self.initial = self.INITIAL_DELAY_SECONDS if initial is None else initial
        self.maximum = self.MAX_DELAY_SECONDS if maximum is None else maximum
        self.multiplier = self.MULTIPLIER if multiplier is None else multiplier
        self._current = self.initial

    @property
    def current(self) -> float:
        """Delay the next ``next_delay()`` call will return."""
        return self._current

    def next_delay(self) -> float:
        delay = self._current
        self._current = min(self._current * self.multiplier, self.maximum)
        return delay

    def reset(self) -> None:
        self._current = self.initial


def client_scope_url(stream_url: str) -> str:
    return f"{stream_url}/client"


def space_scope_url(stream_url: str, space_id: str, conversation_id: str) -> str:
    query = urlencode({"conversationId": conversation_id})
    return f"{stream_url}/spaces/{quote(space_id, safe='')}?{query}"


class StreamConnection(Protocol):
    """The subset of a websockets client connection the transport uses."""

    async def recv(self) -> Any: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> Any: ...


Connector = Callable[[str, dict[str, str]], Awaitable[StreamConnection]]


async def websocket_connector(url: str, headers: dict[str, str]) -> StreamConnection:
    return await websockets.connect(url, additional_headers=headers)


class StreamTransport:
    """One persistent event channel for one subscription scope.

    The first ``subscribe()`` raises if the initial connection fails.
    Once connected, drops never raise: the transport reconnects with
    backoff until ``unsubscribe()``, which is terminal.
    """

    EVENTS = frozenset({"connection_state_changed", "error"})

    def __init__(
        self,
        auth: AuthSession,
        url: str,
        on_event: Callable[[StreamEvent], Any],
        name: str = "stream",
        connector: Optional[Connector] = None,
        backoff: Optional[BackoffPolicy] = None,
        strict: bool = False,
    ):
        self.auth = auth
        self.url = url
        self.name = name
        self.notifier = Notifier(self.EVENTS, name=name)
        self._on_event = on_event
        self._connector = connector or websocket_connector
        self.backoff = backoff or BackoffPolicy()
        self._strict = strict
        self._state = ConnectionState.DISCONNECTED
        self._connection: Optional[StreamConnection] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._closed = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_subscribed(self) -> bool:
        return self._task is not None and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe_state(self, handler: Callable[[ConnectionState], Any]) -> Callable[[], None]:
        return self.notifier.subscribe("connection_state_changed", handler)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        self._state = state
        logger.debug("%s: %s", self.name, state.value)
        self.notifier.emit("connection_state_changed", state)

    async def subscribe(self) -> None:
        """Open the channel and wait for the ``connected`` marker.

        Raises:
            NotAuthenticated: no credentials for the first attempt.
            TransportError: the first attempt failed for any other reason.
        """
        if self._closed:
            raise TransportError(f"{self.name}: transport is closed")
        if self._task is not None:
            return
        try:
            connection = await self._open()
        except (NotAuthenticated, TransportError):
            self._set_state(ConnectionState.DISCONNECTED)
            raise
        if self._closed:
            await self._close_connection(connection)
            return
        self._set_state(ConnectionState.CONNECTED)
        self._task = asyncio.ensure_future(self._run(connection))

    async def _open(self) -> StreamConnection:
        token = await self.auth.get_token()
        if not token:
            raise NotAuthenticated("Cannot subscribe: not authenticated")

        self._set_state(ConnectionState.RECONNECTING)
        try:
            connection = await self._connector(self.url, {"Authorization": f"Bearer {token}"})
        except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
            raise TransportError(f"{self.name}: connection failed: {exc}") from exc

        try:
            first = parse_event(await connection.recv())
        except (ConnectionClosed, WebSocketException, OSError, ValueError) as exc:
            await self._close_connection(connection)
            raise TransportError(f"{self.name}: no connected marker: {exc}") from exc
        if not isinstance(first, ConnectedEvent):
            await self._close_connection(connection)
            raise TransportError(f"{self.name}: expected connected, got {first.type}")

        self.backoff.reset()
        self._connection = connection
        self._deliver(first)
        return connection

    async def _run(self, connection: StreamConnection) -> None:
        current: Optional[StreamConnection] = connection
        while current is not None and not self._closed:
            try:
                async for raw in current:
                    self.backoff.reset()
                    self._dispatch(raw)
                    if self._closed:
                        break
            except (ConnectionClosed, WebSocketException, OSError) as exc:
                logger.warning("%s: stream dropped: %s", self.name, exc)
            finally:
                self._connection = None
            if self._closed:
                break
            self._set_state(ConnectionState.DISCONNECTED)
            current = await self._reconnect()

    async def _reconnect(self) -> Optional[StreamConnection]:
        while not self._closed:
            delay = self.backoff.next_delay()
            self._set_state(ConnectionState.RECONNECTING)
            logger.info("%s: reconnecting in %.1fs", self.name, delay)
            await asyncio.sleep(delay)
            if self._closed:
                return None
            try:
                connection = await self._open()
            except NotAuthenticated:
                logger.warning("%s: no credentials yet; will retry", self.name)
                continue
            except TransportError as exc:
                logger.warning("%s: reconnect failed: %s", self.name, exc)
                continue
            except Exception:
                logger.exception("%s: unexpected error while reconnecting", self.name)
                continue
            if self._closed:
                await self._close_connection(connection)
                return None
            self._set_state(ConnectionState.CONNECTED)
            return connection
        return None

    def _dispatch(self, raw: Any) -> None:
        try:
            event = parse_event(raw, strict=self._strict)
        except UnknownEventType as exc:
            logger.error("%s: unknown event type %s", self.name, exc)
            self.notifier.emit("error", exc)
            return
        except ValueError as exc:
            logger.error("%s: failed to parse event: %s", self.name, exc)
            return
        if isinstance(event, UnknownEvent):
            logger.warning("%s: ignoring unknown event type %r", self.name, event.type)
            return
        self._deliver(event)

    def _deliver(self, event: StreamEvent) -> None:
        try:
            self._on_event(event)
        except Exception:
            logger.exception("%s: event handler raised for %s", self.name, event.type)

    async def _close_connection(self, connection: StreamConnection) -> None:
        try:
            await connection.close()
        except (WebSocketException, OSError) as exc:
            logger.debug("%s: error while closing: %s", self.name, exc)

    async def unsubscribe(self) -> None:
        """Close the channel for good. Idempotent."""
        if self._closed:
            return
        self._closed = True
        connection, self._connection = self._connection, None
        if connection is not None:
            await self._close_connection(connection)
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            if task.done():
                if not task.cancelled() and task.exception() is not None:
                    logger.error("%s: stream task had failed: %r", self.name, task.exception())
            else:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._set_state(ConnectionState.DISCONNECTED)
        self.notifier.clear()
