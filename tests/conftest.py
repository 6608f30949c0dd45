"""Shared test fixtures.

Provides:
- Sample lines (document dicts and Line objects)
- A WAV writer producing sine tones on disk
- FastAPI TestClient with an isolated session registry and an in-process
  feature service
"""

from __future__ import annotations

import json
import wave
from pathlib import Path

import numpy as np
import pytest
from fastapi.testclient import TestClient


# ── Seed data ────────────────────────────────────────────────────────────────

SAMPLE_LINES = [
    {"text": "Hi", "startTime": 0.0, "endTime": 2.0},
    {"text": "Hello", "startTime": 2.0, "endTime": 4.5},
    {"text": "world", "startTime": 5.0, "endTime": 7.0},
]


@pytest.fixture
def sample_line_dicts():
    """Return a deep copy of the sample lines in document form."""
    return json.loads(json.dumps(SAMPLE_LINES))


@pytest.fixture
def sample_lines(sample_line_dicts):
    from ktiming.timing.model import lines_from_dicts
    return lines_from_dicts(sample_line_dicts)


@pytest.fixture
def lines_file(tmp_path, sample_line_dicts):
    p = tmp_path / "lines.json"
    p.write_text(json.dumps(sample_line_dicts), encoding="utf-8")
    return p


# ── Audio ────────────────────────────────────────────────────────────────────

def write_sine_wav(path: Path, freq: float = 440.0, duration: float = 1.0,
                   sample_rate: int = 44100, amplitude: float = 0.5, channels: int = 1) -> Path:
    t = np.arange(int(duration * sample_rate)) / sample_rate
    tone = amplitude * np.sin(2 * np.pi * freq * t)
    pcm = (tone * 32767).astype(np.int16)
    if channels > 1:
        pcm = np.repeat(pcm[:, None], channels, axis=1).ravel()
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm.tobytes())
    return path


@pytest.fixture
def sine_wav(tmp_path):
    return write_sine_wav(tmp_path / "tone.wav")


# ── Config isolation ─────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def _default_config():
    """Every test starts from the built-in defaults, not a ktiming.yaml on disk."""
    from ktiming.utils.config import AppConfig, set_config
    set_config(AppConfig())
    yield
    set_config(None)


# ── TestClient ───────────────────────────────────────────────────────────────

@pytest.fixture
def client(tmp_path, monkeypatch):
    """FastAPI TestClient with a clean session registry and foreground feature jobs."""
    from ktiming.api import sessions
    from ktiming.audio.service import FeatureService
    from ktiming.utils.config import AudioConfig, CacheConfig

    monkeypatch.setenv("KTIMING_LOG_DIR", str(tmp_path / "logs"))
    import ktiming.utils.logging as log_mod
    monkeypatch.setattr(log_mod, "LOG_DIR", tmp_path / "logs")

    sessions.clear_sessions()
    sessions.set_feature_service(FeatureService(AudioConfig(), CacheConfig(), background=False))

    from main import app
    with TestClient(app, raise_server_exceptions=False) as c:
        sessions.set_feature_service(FeatureService(AudioConfig(), CacheConfig(), background=False))
        yield c

    sessions.clear_sessions()
    sessions.set_feature_service(None)
