"""Document undo/redo as bounded snapshot stacks of the line list."""

from __future__ import annotations

import json
from collections import deque

from ktiming.timing.model import Line, lines_from_dicts, lines_to_dicts

MAX_UNDO = 50


def _snapshot(lines: list[Line]) -> str:
    return json.dumps(lines_to_dicts(lines), ensure_ascii=False)


def _restore(snapshot: str) -> list[Line]:
    return lines_from_dicts(json.loads(snapshot))


class History:
    """Each entry is a JSON snapshot paired with the action label that preceded it."""

    def __init__(self, max_size: int = MAX_UNDO):
        self._undo: deque[tuple[str, str]] = deque(maxlen=max_size)
        self._redo: deque[tuple[str, str]] = deque(maxlen=max_size)

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def push(self, lines: list[Line], action: str = "") -> None:
        """Record the state before an edit; clears the redo stack."""
        self._undo.append((_snapshot(lines), action))
        self._redo.clear()

    def undo(self, current: list[Line]) -> tuple[list[Line], str] | None:
        if not self._undo:
            return None
        snap, action = self._undo.pop()
        self._redo.append((_snapshot(current), action))
        return _restore(snap), action

    def redo(self, current: list[Line]) -> tuple[list[Line], str] | None:
        if not self._redo:
            return None
        snap, action = self._redo.pop()
        self._undo.append((_snapshot(current), action))
        return _restore(snap), action

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()

    def labels(self) -> list[str]:
        return [action for _, action in self._undo]
