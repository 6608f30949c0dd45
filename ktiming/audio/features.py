"""Waveform peaks and STFT spectrogram for the timing editor's audio lanes.

Both features are display-only.  Samples are mono float PCM in [-1, 1];
results are float32 arrays normalised to [0, 1] and sliceable by absolute
time so the editor can pull the range of a single line.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Any, Callable

import numpy as np

from ktiming.exceptions import FeatureExtractionError

DEFAULT_BUCKETS_PER_SECOND = 200
DEFAULT_FFT_SIZE = 512
LOG_EPSILON = 1e-10
LOG_OFFSET = 10.0
PROGRESS_EVERY = 100

ProgressCallback = Callable[[float], None]


# ── Feature buffers ──────────────────────────────────────────────────────────

@dataclass
class Waveform:
    peaks: np.ndarray            # float32, one peak per bucket
    buckets_per_second: float
    duration: float
    start_time: float = 0.0      # absolute time of peaks[0]

    @property
    def num_buckets(self) -> int:
        return int(self.peaks.shape[0])

    def slice(self, start: float, end: float) -> Waveform | None:
        """Buckets covering ``[start, end)``; ``None`` when the range holds no bucket."""
        bps = self.buckets_per_second
        first = max(0, math.floor((start - self.start_time) * bps))
        last = min(self.num_buckets, math.ceil((end - self.start_time) * bps))
        if first >= last:
            return None
        return replace(
            self,
            peaks=self.peaks[first:last].copy(),
            duration=(last - first) / bps,
            start_time=self.start_time + first / bps,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "peaks": self.peaks.tolist(),
            "bucketsPerSecond": self.buckets_per_second,
            "duration": self.duration,
            "startTime": self.start_time,
        }


@dataclass
class Spectrogram:
    magnitudes: np.ndarray       # float32, flat frame-major: [frame * num_bins + bin]
    num_frames: int
    num_bins: int
    sample_rate: int
    hop_size: int
    fft_size: int
    duration: float
    start_time: float = 0.0

    @property
    def frames_per_second(self) -> float:
        return self.sample_rate / self.hop_size

    @property
    def matrix(self) -> np.ndarray:
        """``(num_frames, num_bins)`` view of the magnitudes."""
        return self.magnitudes.reshape(self.num_frames, self.num_bins)

    def slice(self, start: float, end: float) -> Spectrogram | None:
        fps = self.frames_per_second
        first = max(0, math.floor((start - self.start_time) * fps))
        last = min(self.num_frames, math.ceil((end - self.start_time) * fps))
        if first >= last:
            return None
        flat = self.magnitudes[first * self.num_bins:last * self.num_bins].copy()
        return replace(
            self,
            magnitudes=flat,
            num_frames=last - first,
            duration=(last - first) / fps,
            start_time=self.start_time + first / fps,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": self.magnitudes.tolist(),
            "numFrames": self.num_frames,
            "numBins": self.num_bins,
            "sampleRate": self.sample_rate,
            "hopSize": self.hop_size,
            "fftSize": self.fft_size,
            "framesPerSecond": self.frames_per_second,
            "duration": self.duration,
            "startTime": self.start_time,
        }


# ── Waveform ─────────────────────────────────────────────────────────────────

def extract_waveform(samples: np.ndarray, sample_rate: int,
                     buckets_per_second: float = DEFAULT_BUCKETS_PER_SECOND) -> Waveform:
    """Max absolute amplitude per time bucket, normalised by the global peak.

    Bucket ``i`` spans samples ``floor(i*sr/bps)`` up to the next edge, so the
    bucket grid stays aligned with absolute time for any sample rate.
    """
    if sample_rate <= 0 or buckets_per_second <= 0:
        raise FeatureExtractionError(
            f"invalid waveform parameters: sample_rate={sample_rate}, "
            f"buckets_per_second={buckets_per_second}")
    data = np.abs(np.asarray(samples, dtype=np.float32).ravel())
    n = data.shape[0]
    duration = n / sample_rate
    if n == 0:
        return Waveform(np.zeros(0, dtype=np.float32), buckets_per_second, 0.0)

    count = math.ceil(n * buckets_per_second / sample_rate)
    edges = np.floor(np.arange(count + 1) * (sample_rate / buckets_per_second)).astype(np.int64)
    edges = np.minimum(edges, n)
    starts, ends = edges[:-1], edges[1:]
    ends[-1] = n

    peaks = np.maximum.reduceat(data, starts).astype(np.float32)
    # reduceat yields data[start] for empty buckets (sample rate below bucket rate)
    peaks[ends <= starts] = 0.0

    top = float(peaks.max())
    if top > 0:
        peaks /= top
    return Waveform(peaks, buckets_per_second, duration)


# ── FFT ──────────────────────────────────────────────────────────────────────

def hanning_window(size: int) -> np.ndarray:
    """Symmetric Hann window, ``0.5 * (1 - cos(2*pi*i / (size - 1)))``."""
    if size == 1:
        return np.ones(1)
    i = np.arange(size)
    return 0.5 * (1.0 - np.cos(2.0 * np.pi * i / (size - 1)))


def _bit_reverse_permutation(n: int) -> np.ndarray:
    bits = n.bit_length() - 1
    idx = np.arange(n)
    rev = np.zeros(n, dtype=np.int64)
    for b in range(bits):
        rev |= ((idx >> b) & 1) << (bits - 1 - b)
    return rev


def fft_inplace(real: np.ndarray, imag: np.ndarray) -> None:
    """Iterative radix-2 Cooley-Tukey FFT over the last axis, in place.

    ``real`` and ``imag`` are C-contiguous float arrays of equal shape whose
    last dimension is a power of two; leading dimensions are a batch of frames
    transformed together.  Bit-reversal permutation first, then butterfly
    stages with the span doubling from 2 up to ``n``.
    """
    if real.shape != imag.shape:
        raise ValueError("real and imag must have the same shape")
    n = real.shape[-1]
    if n <= 1:
        return
    if n & (n - 1):
        raise ValueError(f"FFT length must be a power of two, got {n}")
    if not (real.flags.c_contiguous and imag.flags.c_contiguous):
        raise ValueError("fft_inplace needs C-contiguous arrays")

    perm = _bit_reverse_permutation(n)
    real[...] = real[..., perm]
    imag[...] = imag[..., perm]

    batch = real.shape[:-1]
    length = 2
    while length <= n:
        half = length // 2
        angle = -2.0 * np.pi * np.arange(half) / length
        cos, sin = np.cos(angle), np.sin(angle)

        re = real.reshape(*batch, n // length, length)
        im = imag.reshape(*batch, n // length, length)
        even_re, odd_re = re[..., :half], re[..., half:]
        even_im, odd_im = im[..., :half], im[..., half:]

        t_re = odd_re * cos - odd_im * sin
        t_im = odd_re * sin + odd_im * cos
        odd_re[...] = even_re - t_re
        odd_im[...] = even_im - t_im
        even_re += t_re
        even_im += t_im
        length <<= 1


# ── Spectrogram ──────────────────────────────────────────────────────────────

def spectrogram_shape(num_samples: int, fft_size: int, hop_size: int) -> tuple[int, int]:
    """``(num_frames, num_bins)`` for a signal of ``num_samples``."""
    if num_samples < fft_size:
        return 0, fft_size // 2
    return (num_samples - fft_size) // hop_size + 1, fft_size // 2


def extract_spectrogram(
    samples: np.ndarray,
    sample_rate: int,
    fft_size: int = DEFAULT_FFT_SIZE,
    hop_size: int | None = None,
    *,
    epsilon: float = LOG_EPSILON,
    log_offset: float = LOG_OFFSET,
    progress: ProgressCallback | None = None,
    progress_every: int = PROGRESS_EVERY,
) -> Spectrogram:
    """Log-compressed STFT magnitudes normalised to [0, 1].

    Each frame is Hann-windowed and transformed with :func:`fft_inplace`;
    the first ``fft_size/2`` bins are kept as ``|X| / fft_size``, mapped
    through ``log10(m + epsilon) + log_offset`` and divided by the global
    maximum (negatives clamp to 0).  ``progress`` receives the fraction of
    frames processed every ``progress_every`` frames.
    """
    if fft_size < 2 or fft_size & (fft_size - 1):
        raise FeatureExtractionError(f"fft_size must be a power of two, got {fft_size}")
    hop = hop_size or max(1, fft_size // 4)
    if sample_rate <= 0 or hop <= 0:
        raise FeatureExtractionError(
            f"invalid spectrogram parameters: sample_rate={sample_rate}, hop_size={hop}")

    data = np.asarray(samples, dtype=np.float64).ravel()
    n = data.shape[0]
    num_frames, num_bins = spectrogram_shape(n, fft_size, hop)
    duration = n / sample_rate
    if num_frames == 0:
        return Spectrogram(np.zeros(0, dtype=np.float32), 0, num_bins,
                           sample_rate, hop, fft_size, duration)

    frames = np.lib.stride_tricks.sliding_window_view(data, fft_size)[::hop][:num_frames]
    window = hanning_window(fft_size)
    out = np.empty((num_frames, num_bins), dtype=np.float64)
    chunk = max(1, progress_every)

    for first in range(0, num_frames, chunk):
        if progress is not None:
            progress(first / num_frames)
        last = min(num_frames, first + chunk)
        real = np.ascontiguousarray(frames[first:last] * window)
        imag = np.zeros_like(real)
        fft_inplace(real, imag)
        out[first:last] = np.hypot(real[:, :num_bins], imag[:, :num_bins]) / fft_size

    out = np.log10(out + epsilon) + log_offset
    top = float(out.max())
    if top > 0:
        out = np.maximum(0.0, out / top)

    return Spectrogram(out.astype(np.float32).ravel(), num_frames, num_bins,
                       sample_rate, hop, fft_size, duration)
