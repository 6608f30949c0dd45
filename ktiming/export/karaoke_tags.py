r"""Karaoke tag codec (\k, \kf, \K).

Decoding is a two-step process: a small lexer turns the tagged source into a
typed token stream (``TagToken`` / ``TextToken``), then a parser walks the
stream and emits Syllables.  Durations are handled in whole centiseconds so
pause accumulation does not drift.

Format variations handled::

    {\k50}Text            50 cs (0.5 s) for "Text"
    {\kf50} / {\K50}      same timing, different fill modes
    {\kf130}{\kf10}阳     130 cs pause, then 10 cs for "阳" (pause + syllable pairs)

Any other brace block (``{\1c&H..&}``, ``{\i1}``...) is stripped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Union

from ktiming.exceptions import TagSyntaxError
from ktiming.timing.model import Line, Syllable
from ktiming.utils.logging import debug, warn

KARAOKE_MODES = ("k", "kf", "K")
DEFAULT_SYLLABLE_CS = 10

_OVERRIDE_RE = re.compile(r"(kf|k|K)\s*(\d+)\s*")
_BLOCK_RE = re.compile(r"\{[^}]*\}")


# ── Tokens ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TagToken:
    centiseconds: int

    @property
    def seconds(self) -> float:
        return self.centiseconds / 100


@dataclass(frozen=True)
class TextToken:
    content: str


Token = Union[TagToken, TextToken]


@dataclass
class DecodeResult:
    clean_text: str
    syllables: list[Syllable] | None
    warnings: list[str] = field(default_factory=list)

    @property
    def has_timing(self) -> bool:
        return self.syllables is not None


# ── Lexer ────────────────────────────────────────────────────────────────────

def _karaoke_duration(block: str) -> int | None:
    r"""Centiseconds of the first \k/\kf/\K override in a brace block, else None."""
    for override in block.split("\\")[1:]:
        m = _OVERRIDE_RE.fullmatch(override)
        if m:
            return int(m.group(2))
    return None


def tokenize(source: str) -> tuple[list[Token], list[str]]:
    """Split a tagged string into tag/text tokens.

    Returns ``(tokens, warnings)``.  An unterminated ``{`` is reported and the
    rest of the input is kept as literal text.
    """
    tokens: list[Token] = []
    warnings: list[str] = []
    buf: list[str] = []

    def flush() -> None:
        if buf:
            tokens.append(TextToken("".join(buf)))
            buf.clear()

    i = 0
    n = len(source)
    while i < n:
        ch = source[i]
        if ch != "{":
            buf.append(ch)
            i += 1
            continue
        close = source.find("}", i + 1)
        if close == -1:
            warnings.append(f"unterminated tag at position {i}")
            buf.append(source[i:])
            break
        cs = _karaoke_duration(source[i + 1:close])
        if cs is not None:
            flush()
            tokens.append(TagToken(cs))
        i = close + 1
    flush()
    return tokens, warnings


# ── Parser ───────────────────────────────────────────────────────────────────

def parse_tokens(tokens: list[Token],
                 default_cs: int = DEFAULT_SYLLABLE_CS) -> tuple[str, list[Syllable] | None]:
    """Walk the token stream and build syllables.

    A tag followed by another tag (or the end) is a pause and only advances
    the running offset.  A tag followed by text gives that text its duration;
    text without a duration gets ``default_cs``.  Returns ``(clean_text, None)``
    when the stream carries no duration tags at all.
    """
    clean: list[str] = []
    syllables: list[Syllable] = []
    n_chars = 0
    offset_cs = 0
    pending_cs = 0
    saw_tag = False

    for i, tok in enumerate(tokens):
        if isinstance(tok, TagToken):
            saw_tag = True
            nxt = tokens[i + 1] if i + 1 < len(tokens) else None
            if isinstance(nxt, TextToken):
                pending_cs = tok.centiseconds
            else:
                offset_cs += tok.centiseconds
                pending_cs = 0
            continue

        dur_cs = pending_cs if pending_cs > 0 else default_cs
        length = len(tok.content)
        syllables.append(Syllable(
            text=tok.content,
            duration=dur_cs / 100,
            start_offset=offset_cs / 100,
            char_start=n_chars,
            char_end=n_chars + length,
        ))
        clean.append(tok.content)
        n_chars += length
        offset_cs += dur_cs
        pending_cs = 0

    text = "".join(clean)
    if not saw_tag or not syllables:
        return text, None
    return text, syllables


def decode(source: str, default_duration: float = DEFAULT_SYLLABLE_CS / 100,
           strict: bool = False) -> DecodeResult:
    """Decode a karaoke-tagged string into clean text and syllables.

    Malformed input is logged once and decoded leniently; with ``strict=True``
    it raises :class:`TagSyntaxError` instead.
    """
    tokens, warnings = tokenize(source)
    if warnings and strict:
        raise TagSyntaxError(f"{warnings[0]} in {source[:40]!r}")
    for w in warnings:
        warn(f"Karaoke tags: {w} in {source[:40]!r}")
    text, syllables = parse_tokens(tokens, default_cs=max(1, round(default_duration * 100)))
    if syllables is None:
        debug(f"No karaoke timing in {source[:40]!r}")
    return DecodeResult(clean_text=text, syllables=syllables, warnings=warnings)


def decode_line(source: str, start_time: float, end_time: float,
                default_duration: float = DEFAULT_SYLLABLE_CS / 100) -> Line:
    """Build a Line from a tagged source; syllables stay None without timing."""
    result = decode(source, default_duration)
    return Line(text=result.clean_text, start_time=start_time, end_time=end_time,
                syllables=result.syllables)


def strip_tags(source: str) -> str:
    """Remove every brace block, keeping only the literal text."""
    return _BLOCK_RE.sub("", source)


# ── Encoder ──────────────────────────────────────────────────────────────────

def _tag(mode: str, cs: int) -> str:
    return f"{{\\{mode}{cs}}}"


def encode(syllables: list[Syllable], mode: str = "k", text: str | None = None) -> str:
    r"""Encode syllables as ``{\k##}text`` runs.

    Gaps between one syllable's end and the next one's start (and before the
    first syllable) become separate pause tags.  With ``text`` given, the
    characters no syllable covers are written untagged: a leading run is
    timed by the decoder's default, later runs ride on the syllable before.
    """
    if mode not in KARAOKE_MODES:
        raise ValueError(f"unsupported karaoke mode: {mode}")
    parts: list[str] = []
    cursor_cs = 0
    char_pos = 0
    for syl in sorted(syllables, key=lambda s: s.char_start):
        if not syl.text:
            continue
        if text is not None and syl.char_start > char_pos:
            if not parts:
                cursor_cs += DEFAULT_SYLLABLE_CS
            parts.append(text[char_pos:syl.char_start])
        start_cs = round(syl.start_offset * 100)
        if start_cs > cursor_cs:
            parts.append(_tag(mode, start_cs - cursor_cs))
        else:
            start_cs = cursor_cs
        dur_cs = max(1, round(syl.duration * 100))
        parts.append(f"{_tag(mode, dur_cs)}{syl.text}")
        cursor_cs = start_cs + dur_cs
        char_pos = max(char_pos, syl.char_end)
    if text is not None and char_pos < len(text):
        parts.append(text[char_pos:])
    return "".join(parts)


def encode_line(line: Line, mode: str = "k") -> str:
    """Tagged text for a line; plain text when the line carries no syllables."""
    if not line.syllables:
        return line.text
    covered = sum(s.char_count for s in line.syllables)
    if covered != line.char_count:
        debug(f"Line {line.text[:30]!r}: {line.char_count - covered} untimed characters written untagged")
    return encode(line.syllables, mode, text=line.text)
