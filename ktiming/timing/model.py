"""Interval model: Line → Syllable → (derived) Character.

A Line owns an authoritative text and an absolute time span.  Syllables are
contiguous slices of that text with their own timing, expressed relative to
the line start.  Character timing is never stored; see ``ktiming.timing.derive``.

Validators report violations and never repair data.  Serialization uses the
camelCase keys of the lyric document format so the external document writer
can consume ``to_dict()`` output as-is.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

# ── Constants ────────────────────────────────────────────────────────────────

MIN_SYLLABLE_DURATION = 0.05
# float slack for comparisons of summed offsets/durations
EPSILON = 1e-6


# ── Data Classes ─────────────────────────────────────────────────────────────

@dataclass
class Syllable:
    """Timed slice of a Line's text. ``start_offset`` is relative to the line start."""
    text: str
    duration: float
    start_offset: float
    char_start: int
    char_end: int

    @property
    def end_offset(self) -> float:
        return self.start_offset + self.duration

    @property
    def char_count(self) -> int:
        return self.char_end - self.char_start

    def covers(self, char_index: int) -> bool:
        return self.char_start <= char_index < self.char_end

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "duration": self.duration,
            "startOffset": self.start_offset,
            "charStart": self.char_start,
            "charEnd": self.char_end,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Syllable:
        text = d.get("text", "")
        char_start = int(d.get("charStart", 0))
        return cls(
            text=text,
            duration=float(d.get("duration", 0.0)),
            start_offset=float(d.get("startOffset", 0.0)),
            char_start=char_start,
            char_end=int(d.get("charEnd", char_start + len(text))),
        )


@dataclass
class Line:
    """One lyric line with an absolute time span and optional syllable timing."""
    text: str
    start_time: float
    end_time: float
    syllables: list[Syllable] | None = None
    char_customizations: dict[int, dict[str, Any]] | None = None
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @property
    def chars(self) -> list[str]:
        return list(self.text)

    @property
    def char_count(self) -> int:
        return len(self.text)

    def has_syllables(self) -> bool:
        return bool(self.syllables)

    def sorted_syllables(self) -> list[Syllable]:
        return sorted(self.syllables or [], key=lambda s: s.char_start)

    def syllable_at_char(self, char_index: int) -> tuple[int, Syllable] | None:
        """Return (index, syllable) of the sorted syllable covering ``char_index``."""
        for i, syl in enumerate(self.sorted_syllables()):
            if syl.covers(char_index):
                return i, syl
        return None

    def with_syllables(self, syllables: list[Syllable] | None) -> Line:
        """Copy of this line with a new syllable list (sorted by char_start)."""
        if syllables is not None:
            syllables = sorted(syllables, key=lambda s: s.char_start)
        return replace(self, syllables=syllables)

    def copy(self) -> Line:
        return Line.from_dict(self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = dict(self.extra)
        d.update({
            "text": self.text,
            "startTime": self.start_time,
            "endTime": self.end_time,
        })
        if self.syllables is not None:
            d["syllables"] = [s.to_dict() for s in self.syllables]
        if self.char_customizations:
            d["charCustomizations"] = {str(k): dict(v) for k, v in self.char_customizations.items()}
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Line:
        known = {"text", "startTime", "endTime", "syllables", "charCustomizations"}
        syllables = d.get("syllables")
        customs = d.get("charCustomizations")
        return cls(
            text=d.get("text", ""),
            start_time=float(d.get("startTime", 0.0)),
            end_time=float(d.get("endTime", 0.0)),
            syllables=[Syllable.from_dict(s) for s in syllables] if syllables is not None else None,
            char_customizations={int(k): dict(v) for k, v in customs.items()} if customs else None,
            extra={k: v for k, v in d.items() if k not in known},
        )


def lines_from_dicts(items: list[dict[str, Any]]) -> list[Line]:
    return [Line.from_dict(d) for d in items]


def lines_to_dicts(lines: list[Line]) -> list[dict[str, Any]]:
    return [line.to_dict() for line in lines]


# ── Validation ───────────────────────────────────────────────────────────────

@dataclass
class Violation:
    """One broken invariant. ``syllable_index`` refers to the char-sorted order."""
    code: str
    message: str
    syllable_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "syllableIndex": self.syllable_index}


def validate_line(line: Line, min_duration: float = MIN_SYLLABLE_DURATION) -> list[Violation]:
    """Check a Line and its syllables against the model invariants.

    Returns every violation found; an empty list means the line is valid.
    """
    out: list[Violation] = []
    if not line.start_time < line.end_time:
        out.append(Violation(
            "line_span", f"startTime {line.start_time} must be before endTime {line.end_time}"))

    line_dur = line.duration
    n_chars = line.char_count
    prev: Syllable | None = None
    for i, syl in enumerate(line.sorted_syllables()):
        if not 0 <= syl.char_start < syl.char_end <= n_chars:
            out.append(Violation(
                "char_range", f"char range [{syl.char_start}, {syl.char_end}) invalid for "
                f"{n_chars} characters", i))
        elif line.text[syl.char_start:syl.char_end] != syl.text:
            out.append(Violation(
                "text_mismatch", f"syllable text {syl.text!r} does not match "
                f"{line.text[syl.char_start:syl.char_end]!r}", i))
        if syl.duration < min_duration - EPSILON:
            out.append(Violation(
                "min_duration", f"duration {syl.duration:.3f}s below {min_duration}s", i))
        if syl.start_offset < -EPSILON:
            out.append(Violation("negative_offset", f"startOffset {syl.start_offset:.3f}s < 0", i))
        if syl.end_offset > line_dur + EPSILON:
            out.append(Violation(
                "exceeds_line", f"ends at {syl.end_offset:.3f}s, line lasts {line_dur:.3f}s", i))
        if prev is not None:
            if syl.char_start < prev.char_end:
                out.append(Violation(
                    "char_overlap", f"characters [{syl.char_start}, {prev.char_end}) claimed twice", i))
            if syl.start_offset < prev.end_offset - EPSILON:
                out.append(Violation(
                    "time_overlap", f"starts at {syl.start_offset:.3f}s before previous end "
                    f"{prev.end_offset:.3f}s", i))
        prev = syl
    return out


def validate_lines(lines: list[Line], min_duration: float = MIN_SYLLABLE_DURATION) -> dict[int, list[Violation]]:
    """Validate every line; only lines with violations appear in the result."""
    report: dict[int, list[Violation]] = {}
    for idx, line in enumerate(lines):
        v = validate_line(line, min_duration)
        if v:
            report[idx] = v
    return report


def implicit_char_duration(line: Line) -> float:
    """Equal per-character duration used for display when a line has no syllables."""
    if line.char_count == 0:
        return 0.0
    return line.duration / line.char_count
