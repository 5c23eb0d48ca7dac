"""Notification dispatch table.

Spaces, the client and the auth session each own a ``Notifier`` rather than
inheriting from an emitter base class. Handlers are registered per event kind
and ``subscribe`` returns the matching unsubscribe callable.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


class Notifier:
    """Owned dispatch table keyed by event kind."""

    def __init__(self, kinds: frozenset[str] | None = None, name: str = "notifier"):
        self._kinds = kinds
        self._name = name
        self._handlers: dict[str, list[Handler]] = {}

    def _check_kind(self, kind: str) -> None:
        if self._kinds is not None and kind not in self._kinds:
            raise ValueError(f"{self._name}: unknown event kind {kind!r}")

    def subscribe(self, kind: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``kind``. Returns an unsubscribe callable."""
        self._check_kind(kind)
        self._handlers.setdefault(kind, []).append(handler)

        def unsubscribe() -> None:
            self.unsubscribe(kind, handler)

        return unsubscribe

    def once(self, kind: str, handler: Handler) -> Callable[[], None]:
        """Register a handler that is removed after its first call."""

        def wrapper(*args: Any) -> Any:
            self.unsubscribe(kind, wrapper)
            return handler(*args)

        return self.subscribe(kind, wrapper)

    def unsubscribe(self, kind: str, handler: Handler) -> None:
        handlers = self._handlers.get(kind)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            del self._handlers[kind]

    def emit(self, kind: str, *args: Any) -> None:
        """Call every handler for ``kind``.

        Handler exceptions are logged and do not stop dispatch. Coroutine
        results are scheduled on the running loop.
        """
        self._check_kind(kind)
        # Copy so handlers may unsubscribe during dispatch
        for handler in list(self._handlers.get(kind, ())):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception:
                logger.exception("%s: handler for %r raised", self._name, kind)

    def clear(self, kind: str | None = None) -> None:
        """Drop handlers for one kind, or all handlers."""
        if kind is None:
            self._handlers.clear()
        else:
            self._handlers.pop(kind, None)

    def handler_count(self, kind: str) -> int:
        return len(self._handlers.get(kind, ()))
