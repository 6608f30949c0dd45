"""Reactions to the transport's time signal: loop, auto-advance, scrub resync.

``on_tick`` is called for every reported playback time.  It is a pure,
bounded-time function: it returns the effects to perform and the session to
continue with, and never seeks or switches lines on its own.

Decision order for one tick:

1. playing and ``t >= end``: loop (one ``Seek(start, play=True)``), or flush
   and auto-advance to the next line, or pause on the last line.  A late
   tick that lands in a later line still loops or advances by one line.
2. ``t`` far outside the current line (more than ``scrub_tolerance``) and
   another line contains ``t``: the user scrubbed, follow the transport with
   ``SwitchLine`` (no seek).  During playback a forward scrub is therefore
   followed one line per tick.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ktiming.editor import effects as fx
from ktiming.editor.effects import Effect
from ktiming.editor.session import MarkingSession
from ktiming.timing.locator import NOT_FOUND, ActiveSpanLocator
from ktiming.timing.model import Line

SCRUB_TOLERANCE = 0.2


@dataclass
class TickResult:
    session: MarkingSession
    effects: list[Effect] = field(default_factory=list)

    @property
    def line_index(self) -> int:
        return self.session.line_index


def _scrub_target(lines: list[Line], line: Line, index: int, t: float,
                  tolerance: float, locator: ActiveSpanLocator | None) -> int | None:
    if line.start_time - tolerance <= t <= line.end_time + tolerance:
        return None
    locator = locator or ActiveSpanLocator(lines)
    target = locator.active_line_index(t)
    if target == NOT_FOUND or target == index:
        return None
    return target


def on_tick(lines: list[Line], session: MarkingSession, t: float, playing: bool,
            loop: bool, scrub_tolerance: float = SCRUB_TOLERANCE,
            locator: ActiveSpanLocator | None = None) -> TickResult:
    index = session.line_index
    if not 0 <= index < len(lines):
        return TickResult(session=session)
    line = lines[index]

    if playing and t >= line.end_time:
        if loop:
            return TickResult(session=session, effects=[fx.seek(line.start_time, play=True)])
        if index < len(lines) - 1:
            return TickResult(
                session=MarkingSession.for_line(index + 1),
                effects=[fx.flush(index), fx.advance_line(index + 1, auto=True)],
            )
        return TickResult(session=session, effects=[fx.pause()])

    target = _scrub_target(lines, line, index, t, scrub_tolerance, locator)
    if target is not None:
        return TickResult(
            session=MarkingSession.for_line(target),
            effects=[fx.flush(index), fx.switch_line(target)],
        )
    return TickResult(session=session)
