"""Drag-resize of syllables with neighbour clamping.

``index`` always refers to the syllable order by ``char_start`` and ``t`` is
an absolute playback time (the pointer position mapped onto the timeline).
Every function returns a new Line; out-of-range indices return the line as is.
"""

from __future__ import annotations

from dataclasses import replace
from enum import Enum

from ktiming.timing.model import MIN_SYLLABLE_DURATION, Line

LONG_PRESS_MS = 200


class DragEdge(str, Enum):
    START = "start"
    END = "end"
    BLOCK = "block"


class PressKind(str, Enum):
    TAP = "tap"
    LONG_PRESS = "long_press"


def classify_press(held_ms: float, threshold_ms: float = LONG_PRESS_MS) -> PressKind:
    """A press held at least ``threshold_ms`` becomes a block drag instead of a tap."""
    return PressKind.LONG_PRESS if held_ms >= threshold_ms else PressKind.TAP


def _neighbours(line: Line, index: int):
    syllables = line.sorted_syllables()
    if not 0 <= index < len(syllables):
        return None
    prev_end = syllables[index - 1].end_offset if index > 0 else 0.0
    next_start = syllables[index + 1].start_offset if index < len(syllables) - 1 else line.duration
    return syllables, prev_end, next_start


def drag_start_edge(line: Line, index: int, t: float,
                    min_duration: float = MIN_SYLLABLE_DURATION) -> Line:
    """Move the start handle; the syllable's end stays where it is."""
    found = _neighbours(line, index)
    if found is None:
        return line
    syllables, prev_end, _ = found
    syl = syllables[index]
    end = syl.end_offset
    max_start = end - min_duration
    new_start = max(prev_end, min(max_start, t - line.start_time))
    syllables[index] = replace(syl, start_offset=new_start, duration=end - new_start)
    return line.with_syllables(syllables)


def drag_end_edge(line: Line, index: int, t: float,
                  min_duration: float = MIN_SYLLABLE_DURATION) -> Line:
    """Move the end handle, bounded by the next syllable (or the line end)."""
    found = _neighbours(line, index)
    if found is None:
        return line
    syllables, _, next_start = found
    syl = syllables[index]
    min_end = syl.start_offset + min_duration
    new_end = max(min_end, min(next_start, t - line.start_time))
    syllables[index] = replace(syl, duration=new_end - syl.start_offset)
    return line.with_syllables(syllables)


def move_block(line: Line, index: int, t: float, anchor: float | None = None) -> Line:
    """Shift a whole syllable keeping its duration.

    ``anchor`` is where inside the block the pointer grabbed it (seconds from
    the block start); by default the block is centred on the pointer.
    """
    found = _neighbours(line, index)
    if found is None:
        return line
    syllables, prev_end, next_start = found
    syl = syllables[index]
    grab = syl.duration / 2 if anchor is None else anchor
    target = t - line.start_time - grab
    min_offset = prev_end
    max_offset = next_start - syl.duration
    new_offset = max(min_offset, min(max_offset, target))
    syllables[index] = replace(syl, start_offset=new_offset)
    return line.with_syllables(syllables)


def apply_drag(line: Line, index: int, edge: DragEdge | str, t: float,
               min_duration: float = MIN_SYLLABLE_DURATION, anchor: float | None = None) -> Line:
    edge = DragEdge(edge)
    if edge == DragEdge.START:
        return drag_start_edge(line, index, t, min_duration)
    if edge == DragEdge.END:
        return drag_end_edge(line, index, t, min_duration)
    return move_block(line, index, t, anchor)
