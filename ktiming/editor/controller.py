"""TimingController: the editor-facing wrapper around the timing state machine.

Owns a working copy of the line list, the current ``MarkingSession``, loop
mode, document history and an in-progress drag.  Every public method runs
synchronously and returns the effects the host must perform (seek, pause,
flush...).  Edits land in ``self.lines`` immediately; ``Flush`` effects tell
the host when a line is done and can be written to the document.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ktiming.editor import effects as fx
from ktiming.editor.drag import DragEdge, PressKind, apply_drag, classify_press
from ktiming.editor.effects import Effect
from ktiming.editor.history import History
from ktiming.editor.session import (
    MarkingSession,
    StepResult,
    auto_split_step,
    mark,
    restart_line,
    undo_mark,
)
from ktiming.editor.shortcuts import Command, resolve_key
from ktiming.editor.transport import on_tick
from ktiming.timing.derive import merge_syllables, shift_syllables, split_syllable
from ktiming.timing.locator import ActiveSpanLocator
from ktiming.timing.model import Line
from ktiming.utils.config import EditorConfig
from ktiming.utils.logging import debug


@dataclass
class _DragState:
    line_index: int
    syllable_index: int
    edge: DragEdge
    before: list[Line]
    anchor: float | None = None


class TimingController:
    def __init__(self, lines: list[Line], config: EditorConfig | None = None):
        self.config = config or EditorConfig()
        self.lines: list[Line] = [line.copy() for line in lines]
        self.session = MarkingSession.for_line(0)
        self.loop = self.config.loop_default
        self.history = History(self.config.history_size)
        self.selected_char: int | None = None
        self._drag: _DragState | None = None
        self._locator = ActiveSpanLocator(self.lines)

    # ── State ────────────────────────────────────────────────────────────────

    @property
    def line_index(self) -> int:
        return self.session.line_index

    @property
    def current_line(self) -> Line | None:
        if 0 <= self.line_index < len(self.lines):
            return self.lines[self.line_index]
        return None

    @property
    def dragging(self) -> bool:
        return self._drag is not None

    def to_dict(self) -> dict[str, Any]:
        line = self.current_line
        return {
            "session": self.session.to_dict(),
            "loop": self.loop,
            "line": line.to_dict() if line else None,
            "lineCount": len(self.lines),
            "selectedChar": self.selected_char,
            "canUndo": self.history.can_undo,
            "canRedo": self.history.can_redo,
        }

    def _apply(self, result: StepResult, action: str) -> list[Effect]:
        if result.changed and result.line is not None:
            self.history.push(self.lines, action)
            self.lines[self.line_index] = result.line
            debug(f"{action}: line {self.line_index} now has {len(result.line.syllables or [])} syllables")
        self.session = result.session
        return result.effects

    def _replace_current(self, line: Line, action: str) -> None:
        self.history.push(self.lines, action)
        self.lines[self.line_index] = line

    # ── Marking ──────────────────────────────────────────────────────────────

    def mark(self, t: float) -> list[Effect]:
        result = mark(self.current_line, self.session, t, self.config.min_syllable_duration)
        return self._apply(result, "Mark Syllable")

    def undo_mark(self) -> list[Effect]:
        return self._apply(undo_mark(self.current_line, self.session), "Undo Mark")

    def auto_split(self) -> list[Effect]:
        return self._apply(auto_split_step(self.current_line, self.session), "Auto Split")

    def restart_line(self) -> list[Effect]:
        return self._apply(restart_line(self.current_line, self.session), "Restart Line")

    # ── Transport ────────────────────────────────────────────────────────────

    def tick(self, t: float, playing: bool) -> list[Effect]:
        result = on_tick(self.lines, self.session, t, playing, self.loop,
                         self.config.scrub_tolerance, self._locator)
        if result.session.line_index != self.line_index:
            self._drag = None
            self.selected_char = None
        self.session = result.session
        return result.effects

    def toggle_loop(self) -> bool:
        self.loop = not self.loop
        return self.loop

    def seek_step(self, t: float, delta: float) -> list[Effect]:
        """Seek relative to ``t``, kept inside the current line."""
        line = self.current_line
        if line is None:
            return []
        target = max(line.start_time, min(line.end_time, t + delta))
        return [fx.seek(target)]

    @staticmethod
    def play_pause(playing: bool) -> list[Effect]:
        return [fx.pause()] if playing else [fx.play()]

    # ── Navigation ───────────────────────────────────────────────────────────

    def go_to_line(self, index: int, t: float | None = None, auto: bool = False) -> list[Effect]:
        """Make ``index`` the current line.

        A manual change seeks to the line start unless ``t`` is already inside
        the line; an automatic change (``auto=True``) never seeks.
        """
        if not 0 <= index < len(self.lines):
            return []
        self.session = MarkingSession.for_line(index)
        self.selected_char = None
        self._drag = None
        line = self.lines[index]
        if auto or (t is not None and line.start_time <= t <= line.end_time):
            return []
        return [fx.seek(line.start_time)]

    def prev_line(self, t: float | None = None) -> list[Effect]:
        if self.line_index <= 0:
            return []
        return self.go_to_line(self.line_index - 1, t)

    def next_line(self, t: float | None = None) -> list[Effect]:
        if self.line_index >= len(self.lines) - 1:
            return []
        return self.go_to_line(self.line_index + 1, t)

    def apply_and_next(self, t: float | None = None) -> list[Effect]:
        if self.current_line is None:
            return []
        return [fx.flush(self.line_index), *self.next_line(t)]

    # ── Selection / customization ────────────────────────────────────────────

    def select_char(self, char_index: int | None) -> list[Effect]:
        """Select a character and seek to the start of the syllable holding it."""
        line = self.current_line
        if char_index is None or line is None or not 0 <= char_index < line.char_count:
            self.selected_char = None
            return []
        self.selected_char = char_index
        hit = line.syllable_at_char(char_index)
        if hit is None:
            return []
        return [fx.seek(line.start_time + hit[1].start_offset)]

    def set_char_customization(self, char_index: int, value: dict[str, Any] | None) -> bool:
        line = self.current_line
        if line is None or not 0 <= char_index < line.char_count:
            return False
        customs = dict(line.char_customizations or {})
        if value:
            customs[char_index] = dict(value)
        else:
            customs.pop(char_index, None)
        updated = line.copy()
        updated.char_customizations = customs or None
        self._replace_current(updated, "Char Customization")
        return True

    # ── Drag ─────────────────────────────────────────────────────────────────

    def press(self, syllable_index: int, held_ms: float, t: float) -> list[Effect]:
        """Resolve a press on a syllable block: a tap selects, a long press starts a block drag."""
        line = self.current_line
        if line is None:
            return []
        syllables = line.sorted_syllables()
        if not 0 <= syllable_index < len(syllables):
            return []
        if classify_press(held_ms, self.config.long_press_ms) == PressKind.TAP:
            return self.select_char(syllables[syllable_index].char_start)
        self.begin_drag(syllable_index, DragEdge.BLOCK, t)
        return []

    def begin_drag(self, syllable_index: int, edge: DragEdge | str, t: float | None = None) -> bool:
        line = self.current_line
        if line is None or not 0 <= syllable_index < len(line.syllables or []):
            return False
        edge = DragEdge(edge)
        anchor = None
        if edge == DragEdge.BLOCK and t is not None:
            syl = line.sorted_syllables()[syllable_index]
            anchor = max(0.0, min(syl.duration, t - line.start_time - syl.start_offset))
        self._drag = _DragState(self.line_index, syllable_index, edge,
                                [l.copy() for l in self.lines], anchor)
        return True

    def drag(self, t: float) -> Line | None:
        """Apply one pointer move of the active drag; not recorded in history until ``end_drag``."""
        state = self._drag
        line = self.current_line
        if state is None or line is None or state.line_index != self.line_index:
            return None
        updated = apply_drag(line, state.syllable_index, state.edge, t,
                             self.config.min_syllable_duration, state.anchor)
        self.lines[self.line_index] = updated
        return updated

    def end_drag(self) -> list[Effect]:
        state = self._drag
        self._drag = None
        if state is None:
            return []
        if state.before[state.line_index].to_dict() == self.lines[state.line_index].to_dict():
            return []
        self.history.push(state.before, f"Drag {state.edge.value}")
        return [fx.flush(state.line_index)]

    def drag_to(self, syllable_index: int, edge: DragEdge | str, t: float) -> list[Effect]:
        """One-shot drag: begin, move to ``t``, commit."""
        if not self.begin_drag(syllable_index, edge, None):
            return []
        self.drag(t)
        return self.end_drag()

    # ── Split / merge ────────────────────────────────────────────────────────

    def split(self, syllable_index: int, char_offset: int) -> bool:
        line = self.current_line
        if line is None or not line.syllables:
            return False
        syllables = line.sorted_syllables()
        new = split_syllable(syllables, syllable_index, char_offset)
        if len(new) == len(syllables):
            return False
        self._replace_current(line.with_syllables(new), "Split Syllable")
        return True

    def merge(self, first: int, last: int, keep_span: bool = False) -> bool:
        line = self.current_line
        if line is None or not line.syllables:
            return False
        syllables = line.sorted_syllables()
        new = merge_syllables(syllables, first, last, keep_span=keep_span)
        if len(new) == len(syllables):
            return False
        self._replace_current(line.with_syllables(new), "Merge Syllables")
        mi = min(self.session.marking_index, line.char_count)
        merged = next((s for s in new if s.char_start < mi < s.char_end), None)
        if merged is not None:
            mi = merged.char_end
        self.session = MarkingSession(self.line_index, mi)
        return True

    def nudge(self, delta: float) -> bool:
        """Shift all syllables of the current line together."""
        line = self.current_line
        if line is None or not line.syllables:
            return False
        shifted = shift_syllables(line.sorted_syllables(), delta, line.duration)
        self._replace_current(line.with_syllables(shifted), "Nudge Line")
        return True

    # ── Undo / redo ──────────────────────────────────────────────────────────

    def _restore(self, restored: tuple[list[Line], str] | None) -> bool:
        if restored is None:
            return False
        self.lines = restored[0]
        self._locator = ActiveSpanLocator(self.lines)
        self._drag = None
        line = self.current_line
        limit = line.char_count if line else 0
        self.session = MarkingSession(self.line_index, min(self.session.marking_index, limit))
        debug(f"History: restored before '{restored[1]}'")
        return True

    def undo(self) -> bool:
        return self._restore(self.history.undo(self.lines))

    def redo(self) -> bool:
        return self._restore(self.history.redo(self.lines))

    # ── Keyboard ─────────────────────────────────────────────────────────────

    def handle_key(self, key: str, t: float, playing: bool = False,
                   shift: bool = False, ctrl: bool = False) -> list[Effect]:
        cmd = resolve_key(key, shift=shift, ctrl=ctrl)
        if cmd is None:
            return []
        return self.run_command(cmd, t, playing)

    def run_command(self, cmd: Command, t: float, playing: bool = False) -> list[Effect]:
        step = self.config.seek_step
        large = self.config.seek_step_large
        if cmd == Command.MARK:
            return self.mark(t)
        if cmd == Command.UNDO_MARK:
            return self.undo_mark()
        if cmd == Command.APPLY_AND_NEXT:
            return self.apply_and_next(t)
        if cmd == Command.CLOSE:
            return [fx.flush(self.line_index), fx.close()]
        if cmd == Command.AUTO_SPLIT:
            return self.auto_split()
        if cmd == Command.RESTART_LINE:
            return self.restart_line()
        if cmd == Command.TOGGLE_LOOP:
            self.toggle_loop()
            return []
        if cmd == Command.PLAY_PAUSE:
            return self.play_pause(playing)
        if cmd == Command.SEEK_BACK:
            return self.seek_step(t, -step)
        if cmd == Command.SEEK_FORWARD:
            return self.seek_step(t, step)
        if cmd == Command.SEEK_BACK_LARGE:
            return self.seek_step(t, -large)
        if cmd == Command.SEEK_FORWARD_LARGE:
            return self.seek_step(t, large)
        if cmd == Command.PREV_LINE:
            return self.prev_line(t)
        if cmd == Command.NEXT_LINE:
            return self.next_line(t)
        if cmd == Command.UNDO:
            self.undo()
            return []
        if cmd == Command.REDO:
            self.redo()
            return []
        return []
