"""Configuration management with YAML support and pydantic models."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator


class EditorConfig(BaseModel):
    min_syllable_duration: float = Field(default=0.05, gt=0)
    default_syllable_duration: float = Field(default=0.1, gt=0)
    scrub_tolerance: float = Field(default=0.2, ge=0)
    long_press_ms: int = Field(default=200, ge=0)
    loop_default: bool = True
    seek_step: float = 0.1
    seek_step_large: float = 1.0
    history_size: int = Field(default=50, ge=1)


class TagConfig(BaseModel):
    mode: str = "k"  # k | kf | K

    @field_validator("mode")
    @classmethod
    def _check_mode(cls, v: str) -> str:
        if v not in ("k", "kf", "K"):
            raise ValueError(f"unsupported karaoke tag mode: {v}")
        return v


class AudioConfig(BaseModel):
    buckets_per_second: int = Field(default=200, gt=0)
    fft_size: int = 512
    hop_size: int = 0          # 0 = fft_size // 4 (75% overlap)
    log_offset: float = 10.0
    epsilon: float = 1e-10
    progress_every: int = Field(default=100, gt=0)
    decode_sample_rate: int = 0  # 0 = keep the source rate (ffmpeg decodes at 44100)

    @field_validator("fft_size")
    @classmethod
    def _check_fft_size(cls, v: int) -> int:
        if v < 2 or v & (v - 1):
            raise ValueError(f"fft_size must be a power of two, got {v}")
        return v

    @property
    def effective_hop_size(self) -> int:
        return self.hop_size or max(1, self.fft_size // 4)


class CacheConfig(BaseModel):
    enabled: bool = True
    disk: bool = False
    id_method: str = "hash"  # hash | mtime


class AppConfig(BaseModel):
    editor: EditorConfig = EditorConfig()
    tags: TagConfig = TagConfig()
    audio: AudioConfig = AudioConfig()
    cache: CacheConfig = CacheConfig()


def load_config(path: str | Path | None = None) -> AppConfig:
    if path is None:
        candidates = [Path("ktiming.yaml"), Path("config.yaml"), Path("config.yml")]
        for c in candidates:
            if c.exists():
                path = c
                break
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p) as f:
                data = yaml.safe_load(f) or {}
            return AppConfig(**data)
    return AppConfig()


def merge_cli_overrides(cfg: AppConfig, overrides: dict[str, Any]) -> AppConfig:
    data = cfg.model_dump()
    for key, val in overrides.items():
        if val is None:
            continue
        parts = key.split(".")
        d = data
        for p in parts[:-1]:
            d = d.setdefault(p, {})
        d[parts[-1]] = val
    return AppConfig(**data)


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Process-wide config, loaded lazily from the default search path."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(cfg: AppConfig | None) -> None:
    global _config
    _config = cfg


DEFAULT_CONFIG_YAML = """\
# ktiming configuration

editor:
  min_syllable_duration: 0.05   # seconds, floor for marked/dragged syllables
  default_syllable_duration: 0.1  # used for untagged text runs when decoding
  scrub_tolerance: 0.2          # seconds outside the line before resyncing
  long_press_ms: 200            # hold time that turns a press into a block drag
  loop_default: true
  seek_step: 0.1
  seek_step_large: 1.0          # shift + arrow
  history_size: 50

tags:
  mode: k                       # k | kf | K

audio:
  buckets_per_second: 200
  fft_size: 512                 # power of two
  hop_size: 0                   # 0 = fft_size / 4
  log_offset: 10.0
  epsilon: 1.0e-10
  progress_every: 100           # frames between progress messages
  decode_sample_rate: 0         # 0 = source rate

cache:
  enabled: true
  disk: false                   # persist features as .npz next to the audio
  id_method: hash               # hash | mtime
"""
