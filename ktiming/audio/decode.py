"""Audio decoding to mono float PCM.

PCM WAV files are read directly with :mod:`wave`; everything else goes
through an ``ffmpeg`` pipe emitting signed 16-bit little-endian mono.
"""

from __future__ import annotations

import shutil
import subprocess
import wave
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from ktiming.exceptions import AudioDecodeError
from ktiming.utils.logging import audio_log

SUPPORTED_FORMATS = {".mp3", ".wav", ".flac", ".m4a", ".aac", ".ogg", ".opus", ".wma"}
FFMPEG_SAMPLE_RATE = 44100

_WAV_DTYPES = {1: np.uint8, 2: np.int16, 4: np.int32}


@dataclass
class PcmAudio:
    samples: np.ndarray   # float32 mono in [-1, 1]
    sample_rate: int

    @property
    def duration(self) -> float:
        return self.samples.shape[0] / self.sample_rate if self.sample_rate else 0.0


def is_supported_audio(path: Path) -> bool:
    return path.suffix.lower() in SUPPORTED_FORMATS


def _to_float(raw: bytes, sample_width: int, channels: int) -> np.ndarray:
    dtype = _WAV_DTYPES.get(sample_width)
    if dtype is None:
        raise AudioDecodeError(f"unsupported WAV sample width: {sample_width * 8} bit")
    data = np.frombuffer(raw, dtype=dtype).astype(np.float32)
    if sample_width == 1:
        data = (data - 128.0) / 128.0
    else:
        data /= float(2 ** (8 * sample_width - 1))
    if channels > 1:
        usable = data.shape[0] - data.shape[0] % channels
        data = data[:usable].reshape(-1, channels).mean(axis=1)
    return data


def read_wav(path: Path) -> PcmAudio:
    try:
        with wave.open(str(path), "rb") as wf:
            channels = wf.getnchannels()
            width = wf.getsampwidth()
            rate = wf.getframerate()
            raw = wf.readframes(wf.getnframes())
    except (wave.Error, EOFError) as e:
        raise AudioDecodeError(f"cannot read WAV {path.name}: {e}") from e
    return PcmAudio(_to_float(raw, width, channels), rate)


def decode_with_ffmpeg(path: Path, sample_rate: int = FFMPEG_SAMPLE_RATE) -> PcmAudio:
    if shutil.which("ffmpeg") is None:
        raise AudioDecodeError("ffmpeg not found; install it to decode non-WAV audio")
    cmd = [
        "ffmpeg", "-v", "error", "-i", str(path),
        "-f", "s16le", "-acodec", "pcm_s16le",
        "-ac", "1", "-ar", str(sample_rate),
        "-",
    ]
    audio_log(f"Decoding: {' '.join(cmd)}", level="debug")
    r = subprocess.run(cmd, capture_output=True)
    if r.returncode != 0:
        stderr = r.stderr.decode("utf-8", errors="replace").strip()
        raise AudioDecodeError(f"ffmpeg failed for {path.name}: {stderr}")
    return PcmAudio(_to_float(r.stdout, 2, 1), sample_rate)


def load_audio(path: str | Path, sample_rate: int = 0) -> PcmAudio:
    """Decode ``path`` to mono float PCM.

    ``sample_rate=0`` keeps the WAV's own rate (44.1 kHz for ffmpeg decodes).
    A WAV that ``wave`` can't handle (float, compressed) falls through to ffmpeg.
    """
    p = Path(path)
    if not p.is_file():
        raise AudioDecodeError(f"audio file not found: {p}")
    if p.suffix.lower() == ".wav":
        try:
            pcm = read_wav(p)
        except AudioDecodeError as e:
            audio_log(f"{e}; retrying with ffmpeg", level="warning")
        else:
            if not sample_rate or sample_rate == pcm.sample_rate:
                audio_log(f"Loaded {p.name}: {pcm.duration:.2f}s @ {pcm.sample_rate} Hz", level="debug")
                return pcm
    pcm = decode_with_ffmpeg(p, sample_rate or FFMPEG_SAMPLE_RATE)
    audio_log(f"Decoded {p.name}: {pcm.duration:.2f}s @ {pcm.sample_rate} Hz", level="debug")
    return pcm
