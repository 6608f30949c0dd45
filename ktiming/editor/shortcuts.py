"""Keyboard command map for the timing editor."""

from __future__ import annotations

from enum import Enum


class Command(str, Enum):
    MARK = "mark"
    UNDO_MARK = "undo_mark"
    APPLY_AND_NEXT = "apply_and_next"
    CLOSE = "close"
    AUTO_SPLIT = "auto_split"
    RESTART_LINE = "restart_line"
    TOGGLE_LOOP = "toggle_loop"
    PLAY_PAUSE = "play_pause"
    SEEK_BACK = "seek_back"
    SEEK_FORWARD = "seek_forward"
    SEEK_BACK_LARGE = "seek_back_large"
    SEEK_FORWARD_LARGE = "seek_forward_large"
    PREV_LINE = "prev_line"
    NEXT_LINE = "next_line"
    UNDO = "undo"
    REDO = "redo"


_PLAIN_KEYS: dict[str, Command] = {
    " ": Command.MARK,
    "space": Command.MARK,
    "k": Command.MARK,
    "backspace": Command.UNDO_MARK,
    "enter": Command.APPLY_AND_NEXT,
    "escape": Command.CLOSE,
    "a": Command.AUTO_SPLIT,
    "r": Command.RESTART_LINE,
    "l": Command.TOGGLE_LOOP,
    "p": Command.PLAY_PAUSE,
    "arrowup": Command.PREV_LINE,
    "arrowdown": Command.NEXT_LINE,
}


def resolve_key(key: str, shift: bool = False, ctrl: bool = False) -> Command | None:
    """Map a key name (browser ``KeyboardEvent.key`` style) to an editor command."""
    k = key if key == " " else key.lower()
    if ctrl:
        if k == "z":
            return Command.REDO if shift else Command.UNDO
        if k == "y":
            return Command.REDO
        return None
    if k == "arrowleft":
        return Command.SEEK_BACK_LARGE if shift else Command.SEEK_BACK
    if k == "arrowright":
        return Command.SEEK_FORWARD_LARGE if shift else Command.SEEK_FORWARD
    return _PLAIN_KEYS.get(k)
