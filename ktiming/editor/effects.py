"""Side effects requested by the timing state machine.

Step functions never talk to the transport or the document directly.  They
return a list of effects and the caller performs them in order.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class EffectKind(str, Enum):
    SEEK = "seek"
    PAUSE = "pause"
    PLAY = "play"
    FLUSH = "flush"
    ADVANCE_LINE = "advance_line"
    SWITCH_LINE = "switch_line"
    CLOSE = "close"


@dataclass(frozen=True)
class Effect:
    kind: EffectKind
    time: float | None = None
    line_index: int | None = None
    play: bool = False
    auto: bool = False

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"kind": self.kind.value}
        if self.time is not None:
            d["time"] = self.time
        if self.line_index is not None:
            d["lineIndex"] = self.line_index
        if self.kind == EffectKind.SEEK:
            d["play"] = self.play
        if self.kind == EffectKind.ADVANCE_LINE:
            d["auto"] = self.auto
        return d


def seek(time: float, play: bool = False) -> Effect:
    """Seek the transport; ``play=True`` asks for seek and play as one request."""
    return Effect(EffectKind.SEEK, time=time, play=play)


def pause() -> Effect:
    return Effect(EffectKind.PAUSE)


def play() -> Effect:
    return Effect(EffectKind.PLAY)


def flush(line_index: int) -> Effect:
    """Push the pending edits of a line to the document writer."""
    return Effect(EffectKind.FLUSH, line_index=line_index)


def advance_line(line_index: int, auto: bool = True) -> Effect:
    return Effect(EffectKind.ADVANCE_LINE, line_index=line_index, auto=auto)


def switch_line(line_index: int) -> Effect:
    """Follow the transport to another line without seeking."""
    return Effect(EffectKind.SWITCH_LINE, line_index=line_index)


def close() -> Effect:
    return Effect(EffectKind.CLOSE)
