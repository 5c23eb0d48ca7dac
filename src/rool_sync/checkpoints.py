"""Server-side checkpoint, undo and redo for a space."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from rool_sync.errors import RoolError
from rool_sync.models import ChangeSource, SpaceReset

if TYPE_CHECKING:
    from rool_sync.space import Space

logger = logging.getLogger(__name__)


class CheckpointController:
    """Pass-through to the server's undo history.

    Nothing here touches local state: content changes caused by undo or redo
    arrive through the patch stream like any other change. After a system
    reset the history is cleared, since its pointers refer to discarded state.
    """

    DEFAULT_LABEL = "Change"

    def __init__(self, space: "Space"):
        self._space = space
        space.subscribe("reset", self._on_reset)

    async def checkpoint(self, label: str = DEFAULT_LABEL) -> str:
        """Seal the pending changes under ``label``. Returns the checkpoint id."""
        return await self._space.api.checkpoint(self._space.id, label, self._space.conversation_id)

    async def undo(self) -> bool:
        return await self._space.api.undo(self._space.id, self._space.conversation_id)

    async def redo(self) -> bool:
        return await self._space.api.redo(self._space.id, self._space.conversation_id)

    async def can_undo(self) -> bool:
        can_undo, _ = await self._space.api.checkpoint_status(self._space.id, self._space.conversation_id)
        return can_undo

    async def can_redo(self) -> bool:
        _, can_redo = await self._space.api.checkpoint_status(self._space.id, self._space.conversation_id)
        return can_redo

    async def clear_history(self) -> None:
        await self._space.api.clear_checkpoint_history(self._space.id, self._space.conversation_id)

    def _on_reset(self, event: SpaceReset):
        if event.source is ChangeSource.SYSTEM:
            return self._clear_quietly()
        return None

    async def _clear_quietly(self) -> None:
        try:
            await self.clear_history()
        except RoolError as exc:
            logger.warning("Failed to clear history after resync: %s", exc)
