"""Derivation algorithms: auto-split, split/merge, per-character timing.

All functions are pure: they return new lists/objects and never mutate the
syllables they are given.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from ktiming.timing.model import Line, Syllable

NOT_ACTIVE = -1


@dataclass
class CharTiming:
    """Absolute timing for one code point of a line (derived, never stored)."""
    char: str
    start_time: float
    end_time: float
    syllable_index: int | None = None

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    def to_dict(self) -> dict:
        return {
            "char": self.char,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "duration": self.duration,
            "syllableIndex": self.syllable_index,
        }


# ── Auto-split ───────────────────────────────────────────────────────────────

def auto_split(line: Line) -> list[Syllable]:
    """One syllable per character, the line duration spread evenly."""
    chars = line.chars
    if not chars:
        return []
    char_dur = line.duration / len(chars)
    return [
        Syllable(
            text=ch,
            duration=char_dur,
            start_offset=i * char_dur,
            char_start=i,
            char_end=i + 1,
        )
        for i, ch in enumerate(chars)
    ]


# ── Split / Merge ────────────────────────────────────────────────────────────

def split_syllable(syllables: list[Syllable], index: int, char_offset: int) -> list[Syllable]:
    """Split ``syllables[index]`` at an internal character offset.

    Durations are allocated in proportion to character counts; the second half
    starts where the first one ends.  Offsets outside ``1..len-1`` are a no-op.
    """
    result = list(syllables)
    if not 0 <= index < len(result):
        return result
    syl = result[index]
    n = len(syl.text)
    if not 0 < char_offset < n:
        return result

    first_dur = syl.duration * char_offset / n
    first = Syllable(
        text=syl.text[:char_offset],
        duration=first_dur,
        start_offset=syl.start_offset,
        char_start=syl.char_start,
        char_end=syl.char_start + char_offset,
    )
    second = Syllable(
        text=syl.text[char_offset:],
        duration=syl.duration * (n - char_offset) / n,
        start_offset=syl.start_offset + first_dur,
        char_start=syl.char_start + char_offset,
        char_end=syl.char_end,
    )
    result[index:index + 1] = [first, second]
    return result


def merge_syllables(syllables: list[Syllable], first: int, last: int,
                    keep_span: bool = False) -> list[Syllable]:
    """Merge the contiguous run ``syllables[first..last]`` into one syllable.

    By default the merged duration is the sum of the parts, so any pause
    between them is dropped from the merged timing.  ``keep_span=True`` keeps
    the run's full extent instead (first start to last end).
    """
    result = list(syllables)
    if not (0 <= first < last < len(result)):
        return result
    run = result[first:last + 1]
    if keep_span:
        duration = run[-1].end_offset - run[0].start_offset
    else:
        duration = sum(s.duration for s in run)
    merged = Syllable(
        text="".join(s.text for s in run),
        duration=duration,
        start_offset=run[0].start_offset,
        char_start=run[0].char_start,
        char_end=run[-1].char_end,
    )
    result[first:last + 1] = [merged]
    return result


def shift_syllables(syllables: list[Syllable], delta: float, line_duration: float) -> list[Syllable]:
    """Shift every syllable by ``delta`` seconds, clamped so the run stays inside the line."""
    if not syllables:
        return []
    lo = min(s.start_offset for s in syllables)
    hi = max(s.end_offset for s in syllables)
    delta = max(-lo, min(line_duration - hi, delta))
    return [replace(s, start_offset=s.start_offset + delta) for s in syllables]


# ── Character timing ─────────────────────────────────────────────────────────

def character_timings(line: Line) -> list[CharTiming]:
    """Per-character absolute timing.

    Characters covered by a syllable split that syllable's duration evenly;
    characters no syllable covers fall back to an even subdivision of the
    whole line.
    """
    chars = line.chars
    n = len(chars)
    if n == 0:
        return []
    even = line.duration / n
    owner: dict[int, tuple[int, Syllable]] = {}
    for si, syl in enumerate(line.sorted_syllables()):
        for ci in range(max(0, syl.char_start), min(n, syl.char_end)):
            owner.setdefault(ci, (si, syl))

    out: list[CharTiming] = []
    for i, ch in enumerate(chars):
        hit = owner.get(i)
        if hit is None:
            start = line.start_time + i * even
            out.append(CharTiming(ch, start, start + even))
            continue
        si, syl = hit
        per_char = syl.duration / max(1, syl.char_count)
        pos = i - syl.char_start
        start = line.start_time + syl.start_offset + pos * per_char
        out.append(CharTiming(ch, start, start + per_char, si))
    return out


def active_char_index(timings: list[CharTiming], t: float) -> int:
    for i, ct in enumerate(timings):
        if ct.start_time <= t < ct.end_time:
            return i
    return NOT_ACTIVE


def char_progress(timings: list[CharTiming], index: int, t: float) -> float:
    """Progress 0..1 inside character ``index`` at time ``t``."""
    if not 0 <= index < len(timings):
        return 0.0
    ct = timings[index]
    if t < ct.start_time:
        return 0.0
    if t >= ct.end_time or ct.duration <= 0:
        return 1.0
    return (t - ct.start_time) / ct.duration


def line_progress(timings: list[CharTiming], t: float) -> float:
    """Progress 0..1 from the first character start to the last character end."""
    if not timings:
        return 0.0
    first = timings[0].start_time
    last = timings[-1].end_time
    if t < first:
        return 0.0
    if t >= last or last <= first:
        return 1.0
    return (t - first) / (last - first)


def active_char(line: Line, t: float) -> tuple[int, float]:
    """(active character index, progress within it) for time ``t``.

    Index is ``NOT_ACTIVE`` with progress 0.0 when no character is active.
    """
    timings = character_timings(line)
    idx = active_char_index(timings, t)
    if idx == NOT_ACTIVE:
        return NOT_ACTIVE, 0.0
    return idx, char_progress(timings, idx, t)
