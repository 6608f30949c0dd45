"""Tests for derivation algorithms: auto-split, split/merge, shift, character timing."""

from __future__ import annotations

import pytest

from ktiming.timing.derive import (
    NOT_ACTIVE,
    active_char,
    auto_split,
    char_progress,
    character_timings,
    line_progress,
    merge_syllables,
    shift_syllables,
    split_syllable,
)
from ktiming.timing.model import Line, Syllable, validate_line


def _syl(text, start, dur, cs):
    return Syllable(text=text, duration=dur, start_offset=start, char_start=cs, char_end=cs + len(text))


class TestAutoSplit:
    def test_one_syllable_per_char(self):
        syls = auto_split(Line("abcd", 1.0, 3.0))
        assert [s.text for s in syls] == ["a", "b", "c", "d"]
        assert [s.start_offset for s in syls] == pytest.approx([0.0, 0.5, 1.0, 1.5])
        assert all(s.duration == pytest.approx(0.5) for s in syls)

    def test_idempotent(self):
        line = Line("Hello", 0.0, 2.5)
        first = auto_split(line)
        second = auto_split(line.with_syllables(first))
        assert first == second

    def test_result_is_valid(self):
        line = Line("karaoke", 0.0, 3.5)
        assert validate_line(line.with_syllables(auto_split(line))) == []

    def test_empty_text(self):
        assert auto_split(Line("", 0.0, 1.0)) == []

    def test_code_points(self):
        syls = auto_split(Line("阳光", 0.0, 1.0))
        assert [(s.text, s.char_start, s.char_end) for s in syls] == [("阳", 0, 1), ("光", 1, 2)]


class TestSplit:
    def test_proportional(self):
        syls = [_syl("abcd", 0.2, 0.8, 0)]
        first, second = split_syllable(syls, 0, 1)
        assert (first.text, second.text) == ("a", "bcd")
        assert first.duration == pytest.approx(0.2)
        assert second.duration == pytest.approx(0.6)
        assert second.start_offset == pytest.approx(first.start_offset + first.duration)
        assert (first.char_end, second.char_start) == (1, 1)

    @pytest.mark.parametrize("offset", [0, 4, -1, 9])
    def test_out_of_range_offset_is_noop(self, offset):
        syls = [_syl("abcd", 0.0, 0.8, 0)]
        assert split_syllable(syls, 0, offset) == syls

    def test_out_of_range_index_is_noop(self):
        syls = [_syl("ab", 0.0, 0.8, 0)]
        assert split_syllable(syls, 3, 1) == syls

    def test_does_not_mutate_input(self):
        syls = [_syl("ab", 0.0, 0.8, 0)]
        split_syllable(syls, 0, 1)
        assert len(syls) == 1


class TestMerge:
    def test_sums_durations(self):
        syls = [_syl("a", 0.0, 0.3, 0), _syl("b", 0.5, 0.2, 1), _syl("c", 0.7, 0.1, 2)]
        merged = merge_syllables(syls, 0, 1)
        assert len(merged) == 2
        m = merged[0]
        assert (m.text, m.char_start, m.char_end) == ("ab", 0, 2)
        assert m.start_offset == 0.0
        assert m.duration == pytest.approx(0.5)

    def test_keep_span_absorbs_pause(self):
        syls = [_syl("a", 0.0, 0.3, 0), _syl("b", 0.5, 0.2, 1)]
        [m] = merge_syllables(syls, 0, 1, keep_span=True)
        assert m.duration == pytest.approx(0.7)

    def test_invalid_range_is_noop(self):
        syls = [_syl("a", 0.0, 0.3, 0), _syl("b", 0.5, 0.2, 1)]
        assert merge_syllables(syls, 1, 1) == syls
        assert merge_syllables(syls, 0, 5) == syls


class TestShift:
    def test_shift_forward(self):
        syls = [_syl("a", 0.0, 0.3, 0), _syl("b", 0.3, 0.3, 1)]
        out = shift_syllables(syls, 0.2, 2.0)
        assert [s.start_offset for s in out] == pytest.approx([0.2, 0.5])

    def test_clamped_to_line(self):
        syls = [_syl("a", 0.5, 0.3, 0), _syl("b", 0.8, 0.3, 1)]
        assert shift_syllables(syls, -5.0, 2.0)[0].start_offset == pytest.approx(0.0)
        assert shift_syllables(syls, 5.0, 2.0)[-1].end_offset == pytest.approx(2.0)

    def test_empty(self):
        assert shift_syllables([], 1.0, 2.0) == []


class TestCharacterTimings:
    def test_even_inside_syllable(self):
        line = Line("abcd", 10.0, 12.0, [_syl("ab", 0.0, 0.4, 0), _syl("cd", 1.0, 1.0, 2)])
        ct = character_timings(line)
        assert [c.start_time for c in ct] == pytest.approx([10.0, 10.2, 11.0, 11.5])
        assert [c.syllable_index for c in ct] == [0, 0, 1, 1]

    def test_no_syllables_even_over_line(self):
        ct = character_timings(Line("abcd", 0.0, 2.0))
        assert [c.start_time for c in ct] == pytest.approx([0.0, 0.5, 1.0, 1.5])
        assert all(c.syllable_index is None for c in ct)

    def test_uncovered_char_falls_back_to_line_grid(self):
        line = Line("abcd", 0.0, 4.0, [_syl("ab", 0.0, 0.5, 0)])
        ct = character_timings(line)
        assert ct[2].start_time == pytest.approx(2.0)
        assert ct[3].end_time == pytest.approx(4.0)
        assert ct[2].syllable_index is None

    def test_empty(self):
        assert character_timings(Line("", 0.0, 1.0)) == []


class TestActiveChar:
    LINE = Line("Hi", 0.0, 2.0, [_syl("H", 0.5, 0.7, 0), _syl("i", 1.2, 0.8, 1)])

    def test_active_in_first(self):
        idx, progress = active_char(self.LINE, 0.85)
        assert idx == 0
        assert progress == pytest.approx(0.5)

    def test_before_first_syllable(self):
        assert active_char(self.LINE, 0.2) == (NOT_ACTIVE, 0.0)

    def test_end_is_exclusive(self):
        idx, _ = active_char(self.LINE, 1.2)
        assert idx == 1
        assert active_char(self.LINE, 2.0)[0] == NOT_ACTIVE

    def test_char_progress_bounds(self):
        ct = character_timings(self.LINE)
        assert char_progress(ct, 0, 0.0) == 0.0
        assert char_progress(ct, 0, 5.0) == 1.0
        assert char_progress(ct, 9, 1.0) == 0.0

    def test_line_progress(self):
        ct = character_timings(self.LINE)
        assert line_progress(ct, 0.0) == 0.0
        assert line_progress(ct, 1.25) == pytest.approx(0.5)
        assert line_progress(ct, 3.0) == 1.0
