"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ktiming.timing.model import Line


# ── Enums ─────────────────────────────────────────────────────────────────────

class KaraokeModeEnum(str, Enum):
    k = "k"
    kf = "kf"
    K = "K"


class DragEdgeEnum(str, Enum):
    start = "start"
    end = "end"
    block = "block"


class FeatureKindEnum(str, Enum):
    waveform = "waveform"
    spectrogram = "spectrogram"


# ── Timing documents ─────────────────────────────────────────────────────────

class SyllableSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str
    duration: float = Field(ge=0)
    start_offset: float = Field(default=0.0, alias="startOffset")
    char_start: int = Field(ge=0, alias="charStart")
    char_end: int = Field(ge=0, alias="charEnd")


class LineSchema(BaseModel):
    """A lyric line in document form; unknown keys are carried through untouched."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    text: str
    start_time: float = Field(alias="startTime")
    end_time: float = Field(alias="endTime")
    syllables: list[SyllableSchema] | None = None
    char_customizations: dict[int, dict[str, Any]] | None = Field(default=None, alias="charCustomizations")

    def to_line(self) -> Line:
        return Line.from_dict(self.model_dump(by_alias=True, exclude_none=True))


def to_lines(items: list[LineSchema]) -> list[Line]:
    return [item.to_line() for item in items]


# ── Request Models ────────────────────────────────────────────────────────────

class DecodeRequest(BaseModel):
    text: str
    start_time: float | None = None
    end_time: float | None = None
    default_duration: float = Field(default=0.1, gt=0)


class EncodeRequest(BaseModel):
    line: LineSchema
    mode: KaraokeModeEnum | None = None


class LinesRequest(BaseModel):
    lines: list[LineSchema]


class LineRequest(BaseModel):
    line: LineSchema


class SplitRequest(BaseModel):
    line: LineSchema
    index: int
    char_offset: int


class MergeRequest(BaseModel):
    line: LineSchema
    first: int
    last: int
    keep_span: bool = False


class LocateRequest(BaseModel):
    lines: list[LineSchema]
    t: float
    count: int = Field(default=3, ge=0)


class SessionCreate(BaseModel):
    lines: list[LineSchema] = Field(min_length=1)
    loop: bool | None = None


class TimeRequest(BaseModel):
    t: float


class TickRequest(BaseModel):
    t: float
    playing: bool = True


class DragRequest(BaseModel):
    syllable_index: int
    edge: DragEdgeEnum
    t: float


class KeyRequest(BaseModel):
    key: str
    t: float
    playing: bool = False
    shift: bool = False
    ctrl: bool = False


class GoToLineRequest(BaseModel):
    index: int
    t: float | None = None


class FeatureSubmit(BaseModel):
    source: str
    kind: FeatureKindEnum
    fft_size: int | None = None
    hop_size: int | None = None
    buckets_per_second: float | None = Field(default=None, gt=0)


# ── Response Models ───────────────────────────────────────────────────────────

class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "1.0.0"
    ffmpeg: bool = False
    numpy: bool = False


class DecodeResponse(BaseModel):
    clean_text: str
    syllables: list[dict[str, Any]] | None = None
    warnings: list[str] = []
    line: dict[str, Any] | None = None


class SessionResponse(BaseModel):
    session_id: str
    state: dict[str, Any]
    effects: list[dict[str, Any]] = []
