from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional

logger = logging.getLogger(__name__)


class HistoryStack:
    """Bounded undo/redo over serialized scene snapshots.

    Snapshots are opaque strings (the scene's JSON without full-resolution
    payloads). The top of ``entries`` is always the current state.
    """

    def __init__(self, max_depth: int = 50) -> None:
        self.max_depth = max(1, int(max_depth))
        self.entries: List[str] = []
        self.redo_entries: List[str] = []
        self.suppressed = False

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def current(self) -> Optional[str]:
        return self.entries[-1] if self.entries else None

    @property
    def can_undo(self) -> bool:
        return len(self.entries) > 1

    @property
    def can_redo(self) -> bool:
        return bool(self.redo_entries)

    def snapshot(self, scene_json: str) -> bool:
        """Record ``scene_json``; returns False when suppressed or unchanged."""
        if self.suppressed:
            return False
        if self.entries and self.entries[-1] == scene_json:
            return False
        self.entries.append(scene_json)
        if len(self.entries) > self.max_depth:
            del self.entries[0:len(self.entries) - self.max_depth]
        self.redo_entries.clear()
        return True

    def undo(self) -> Optional[str]:
        if not self.can_undo:
            return None
        self.redo_entries.append(self.entries.pop())
        logger.debug(f"Undo (history={len(self.entries)}, redo={len(self.redo_entries)})")
        return self.entries[-1]

    def redo(self) -> Optional[str]:
        if not self.redo_entries:
            return None
        state = self.redo_entries.pop()
        self.entries.append(state)
        logger.debug(f"Redo (history={len(self.entries)}, redo={len(self.redo_entries)})")
        return state

    def clear(self) -> None:
        self.entries.clear()
        self.redo_entries.clear()

    @contextmanager
    def suppress(self) -> Iterator[None]:
        """Apply a scene (undo/redo replay, sheet load) without snapshotting it."""
        prev = self.suppressed
        self.suppressed = True
        try:
            yield
        finally:
            self.suppressed = prev
