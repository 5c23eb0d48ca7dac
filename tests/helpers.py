"""Fakes and builders shared by the rool_sync tests."""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Optional

from rool_sync.models import Credentials, SpaceSnapshot

_CLOSED = object()


class FakeConnection:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, messages: tuple = ()):
        self.queue: asyncio.Queue = asyncio.Queue()
        for message in messages:
            self.queue.put_nowait(message)
        self.closed = False

    def push(self, event: dict[str, Any]) -> None:
        self.queue.put_nowait(json.dumps(event))

    def drop(self) -> None:
        self.queue.put_nowait(OSError("connection dropped"))

    async def recv(self) -> Any:
        item = await self.queue.get()
        if item is _CLOSED:
            raise OSError("connection closed")
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True
        self.queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        item = await self.queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeConnector:
    """Connector that hands out ``FakeConnection`` objects.

    Each connection starts with ``greeting``, a ``connected`` marker by
    default. The next ``failures`` connection attempts are refused.
    """

    def __init__(self, server_version: Any = 0):
        self.greeting: Optional[dict[str, Any]] = {"type": "connected", "serverVersion": server_version}
        self.failures = 0
        self.calls: list[tuple[str, dict[str, str]]] = []
        self.connections: list[FakeConnection] = []

    async def __call__(self, url: str, headers: dict[str, str]) -> FakeConnection:
        self.calls.append((url, headers))
        if self.failures:
            self.failures -= 1
            raise OSError("connection refused")
        messages = (json.dumps(self.greeting),) if self.greeting is not None else ()
        connection = FakeConnection(messages)
        self.connections.append(connection)
        return connection

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]


async def settle(rounds: int = 10) -> None:
    """Let scheduled callbacks and background tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_document(version: int = 0, objects: Optional[dict[str, Any]] = None, **extra: Any) -> dict[str, Any]:
    document = {"version": version, "objects": objects or {}, "meta": {}, "conversations": {}}
    document.update(extra)
    return document


def make_entry(object_id: str, links: Optional[dict[str, list[str]]] = None, modified_at: int = 0, **fields: Any):
    return {
        "links": links or {},
        "data": {"id": object_id, **fields},
        "modifiedAt": modified_at,
        "modifiedBy": "user-1",
        "modifiedByName": None,
    }


def make_snapshot(space_id: str = "space-1", role: str = "owner", **document: Any) -> SpaceSnapshot:
    return SpaceSnapshot(
        id=space_id,
        name="Test Space",
        role=role,
        user_id="user-1",
        data=make_document(**document),
    )


def valid_credentials(lifetime: float = 3600.0, refresh_token: Optional[str] = "refresh-1") -> Credentials:
    return Credentials(access_token="access-1", refresh_token=refresh_token, expires_at=time.time() + lifetime)


