"""Tap-to-mark recording session for one line.

The marking session is an explicit immutable value.  Every step takes the
current Line, the session and the playback time, and returns a ``StepResult``
with the (possibly new) Line, the next session and the effects to perform.
Nothing is mutated in place, so a step is either fully applied or not at all.

States::

    IDLE       mark_start_time is None, no open boundary
    RECORDING  boundary open at mark_start_time

    IDLE      --mark(t)-->  RECORDING(t)
    RECORDING --mark(t)-->  RECORDING(t)   closes a syllable for marking_index
    *         --undo-->     IDLE
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum

from ktiming.editor import effects as fx
from ktiming.editor.effects import Effect
from ktiming.timing.derive import auto_split
from ktiming.timing.model import EPSILON, MIN_SYLLABLE_DURATION, Line, Syllable


class SessionState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"


@dataclass(frozen=True)
class MarkingSession:
    line_index: int
    marking_index: int = 0
    mark_start_time: float | None = None

    @property
    def state(self) -> SessionState:
        return SessionState.IDLE if self.mark_start_time is None else SessionState.RECORDING

    @classmethod
    def for_line(cls, line_index: int) -> MarkingSession:
        return cls(line_index=line_index)

    def to_dict(self) -> dict:
        return {
            "lineIndex": self.line_index,
            "markingIndex": self.marking_index,
            "markStartTime": self.mark_start_time,
            "state": self.state.value,
        }


@dataclass
class StepResult:
    line: Line | None
    session: MarkingSession
    effects: list[Effect] = field(default_factory=list)
    changed: bool = False


def _unchanged(line: Line | None, session: MarkingSession) -> StepResult:
    return StepResult(line=line, session=session)


# ── Transitions ──────────────────────────────────────────────────────────────

def mark(line: Line | None, session: MarkingSession, t: float,
         min_duration: float = MIN_SYLLABLE_DURATION) -> StepResult:
    """Open a boundary, or close the syllable for ``marking_index`` and chain on.

    The closed syllable is clamped to the line and never starts before the
    previous syllable's end.  Whatever covered the character before is
    replaced: a merged syllable that started earlier keeps only its leading
    characters, and later syllables that the new timing runs into are
    dropped so they can be marked again.
    """
    if line is None:
        return _unchanged(line, session)
    n = line.char_count
    mi = session.marking_index
    if not 0 <= mi < n:
        return _unchanged(line, session)

    if session.mark_start_time is None:
        return StepResult(line=line, session=replace(session, mark_start_time=t))

    syllables = _release_char(line, mi, min_duration)
    line_dur = line.duration
    floor = 0.0
    for syl in syllables:
        if syl.char_end <= mi:
            floor = max(floor, syl.end_offset)

    start = max(floor, session.mark_start_time - line.start_time)
    start = min(start, max(0.0, line_dur - min_duration))
    duration = max(min_duration, (t - line.start_time) - start)
    duration = min(duration, max(min_duration, line_dur - start))
    end = start + duration

    syllables = [
        s for s in syllables
        if s.char_end <= mi or s.start_offset >= end - EPSILON
    ]
    syllables.append(Syllable(
        text=line.text[mi],
        duration=duration,
        start_offset=start,
        char_start=mi,
        char_end=mi + 1,
    ))

    return StepResult(
        line=line.with_syllables(syllables),
        session=replace(session, marking_index=mi + 1, mark_start_time=t),
        changed=True,
    )


def _release_char(line: Line, mi: int, min_duration: float) -> list[Syllable]:
    """Sorted syllables with character ``mi`` left uncovered."""
    out: list[Syllable] = []
    for syl in line.sorted_syllables():
        if not syl.covers(mi):
            out.append(syl)
        elif syl.char_start < mi:
            kept = mi - syl.char_start
            share = syl.duration * kept / syl.char_count
            out.append(replace(
                syl,
                text=line.text[syl.char_start:mi],
                duration=min(syl.duration, max(min_duration, share)),
                char_end=mi,
            ))
    return out


def undo_mark(line: Line | None, session: MarkingSession) -> StepResult:
    """Drop the last syllable and step back one character, returning to IDLE."""
    if line is None or session.marking_index <= 0 or not line.syllables:
        return _unchanged(line, session)
    syllables = line.sorted_syllables()[:-1]
    return StepResult(
        line=line.with_syllables(syllables),
        session=replace(session, marking_index=session.marking_index - 1, mark_start_time=None),
        changed=True,
    )


def auto_split_step(line: Line | None, session: MarkingSession) -> StepResult:
    """Replace the line's syllables with an even split; the line counts as fully marked."""
    if line is None:
        return _unchanged(line, session)
    return StepResult(
        line=line.with_syllables(auto_split(line)),
        session=replace(session, marking_index=line.char_count, mark_start_time=None),
        changed=True,
    )


def restart_line(line: Line | None, session: MarkingSession) -> StepResult:
    """Seek back to the line start and reset the cursor; syllables are kept."""
    if line is None:
        return _unchanged(line, session)
    return StepResult(
        line=line,
        session=replace(session, marking_index=0, mark_start_time=None),
        effects=[fx.seek(line.start_time)],
    )
