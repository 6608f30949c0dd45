"""Active-span locator: which line is playing at a given time.

Used by the editor (scrub resync) and by the playback/preview path.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from ktiming.timing.model import Line

NOT_FOUND = -1


@dataclass(frozen=True)
class _Span:
    start: float
    end: float
    index: int


class ActiveSpanLocator:
    """Binary search over a start-sorted copy of the lines.

    Lines are located start-inclusive, end-exclusive.  Original indices are
    kept so results refer to the caller's list.
    """

    def __init__(self, lines: list[Line]):
        spans = [_Span(l.start_time, l.end_time, i) for i, l in enumerate(lines)]
        self._spans = sorted(spans, key=lambda s: s.start)

    def __len__(self) -> int:
        return len(self._spans)

    def active_line_index(self, t: float) -> int:
        spans = self._spans
        if not spans or t < spans[0].start or t >= spans[-1].end:
            return NOT_FOUND
        lo, hi = 0, len(spans) - 1
        while lo <= hi:
            mid = (lo + hi) // 2
            span = spans[mid]
            if span.start <= t < span.end:
                return span.index
            if t < span.start:
                hi = mid - 1
            else:
                lo = mid + 1
        return NOT_FOUND

    def is_in_gap(self, t: float) -> bool:
        return self.active_line_index(t) == NOT_FOUND

    def upcoming_lines(self, t: float, count: int = 3) -> list[int]:
        """Original indices of the next ``count`` lines starting after ``t``."""
        if count <= 0:
            return []
        out: list[int] = []
        for span in self._spans:
            if span.start > t:
                out.append(span.index)
                if len(out) >= count:
                    break
        return out

    def time_until_next_line(self, t: float) -> float:
        for span in self._spans:
            if span.start > t:
                return span.start - t
        return math.inf


def mask_progress(t: float, line: Line | None) -> float:
    """Linear fill progress 0..1 across a whole line."""
    if line is None:
        return 0.0
    duration = line.duration
    if duration <= 0 or t < line.start_time:
        return 0.0
    if t >= line.end_time:
        return 1.0
    return (t - line.start_time) / duration
