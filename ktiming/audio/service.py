"""Feature job manager: cache per audio source, job status, time slices."""

from __future__ import annotations

import threading
import time
import uuid
import zipfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

import numpy as np

from ktiming.audio.features import Spectrogram, Waveform
from ktiming.audio.worker import (
    ErrorMessage,
    Feature,
    FeatureExtractor,
    FeatureKind,
    FeatureRequest,
    ProgressMessage,
    ResultMessage,
    extract_sync,
)
from ktiming.exceptions import KTimingError
from ktiming.utils.cache import (
    evict_stale,
    get_file_id,
    load_cached_arrays,
    params_key,
    save_cached_arrays,
)
from ktiming.utils.config import AudioConfig, CacheConfig
from ktiming.utils.logging import audio_log, set_job_id


class JobStatus(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STATES = {JobStatus.completed, JobStatus.failed, JobStatus.cancelled}


@dataclass
class FeatureJob:
    job_id: str
    kind: FeatureKind
    source: str
    status: JobStatus = JobStatus.pending
    progress: float = 0.0
    error: str = ""
    cached: bool = False
    created_at: float = field(default_factory=time.time)
    feature: Feature | None = field(default=None, repr=False)
    _file_id: str = field(default="", repr=False)
    _params: dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "source": self.source,
            "status": self.status.value,
            "progress": round(self.progress, 4),
            "error": self.error,
            "cached": self.cached,
        }
        if isinstance(self.feature, Waveform):
            d["buckets"] = self.feature.num_buckets
            d["duration"] = self.feature.duration
        elif isinstance(self.feature, Spectrogram):
            d["num_frames"] = self.feature.num_frames
            d["num_bins"] = self.feature.num_bins
            d["frames_per_second"] = self.feature.frames_per_second
            d["duration"] = self.feature.duration
        return d


# ── npz (de)serialisation ────────────────────────────────────────────────────

def _to_arrays(feature: Feature) -> dict[str, np.ndarray]:
    if isinstance(feature, Waveform):
        meta = [feature.buckets_per_second, feature.duration]
        return {"peaks": feature.peaks, "meta": np.asarray(meta, dtype=np.float64)}
    meta = [feature.num_frames, feature.num_bins, feature.sample_rate,
            feature.hop_size, feature.fft_size, feature.duration]
    return {"magnitudes": feature.magnitudes, "meta": np.asarray(meta, dtype=np.float64)}


def _from_arrays(kind: FeatureKind, arrays: dict[str, np.ndarray]) -> Feature:
    meta = arrays["meta"].tolist()
    if kind == FeatureKind.WAVEFORM:
        return Waveform(arrays["peaks"].astype(np.float32), meta[0], meta[1])
    frames, bins, rate, hop, fft, duration = meta
    return Spectrogram(arrays["magnitudes"].astype(np.float32), int(frames), int(bins),
                       int(rate), int(hop), int(fft), duration)


class FeatureService:
    """Runs feature requests and caches results by source identity and parameters.

    With ``background=False`` requests run synchronously in the caller's
    thread (CLI, tests); otherwise each goes to a :class:`FeatureExtractor`
    worker process and the job is polled.
    """

    def __init__(self, audio: AudioConfig | None = None, cache: CacheConfig | None = None,
                 background: bool = True):
        self.audio = audio or AudioConfig()
        self.cache_config = cache or CacheConfig()
        self.background = background
        self._jobs: dict[str, FeatureJob] = {}
        self._lock = threading.Lock()
        # source path -> (file id, {params key: feature})
        self._cache: dict[str, tuple[str, dict[str, Feature]]] = {}
        self._extractor: FeatureExtractor | None = None

    # ── Jobs ─────────────────────────────────────────────────────────────────

    def get(self, job_id: str) -> FeatureJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def jobs(self) -> list[FeatureJob]:
        with self._lock:
            return list(self._jobs.values())

    def _update(self, job_id: str, **kwargs: Any) -> FeatureJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status in TERMINAL_STATES:
                return None
            for k, v in kwargs.items():
                setattr(job, k, v)
            return job

    def submit(self, source: str | Path, kind: FeatureKind | str,
               on_progress: Callable[[float], None] | None = None, **overrides: Any) -> FeatureJob:
        """Start (or serve from cache) a feature extraction for an audio file.

        ``overrides`` replace request parameters (``fft_size``, ``hop_size``,
        ``buckets_per_second``...) for this request only.  ``on_progress`` is
        only called for foreground (``background=False``) runs.
        """
        kind = FeatureKind(kind)
        path = Path(source)
        request = FeatureRequest.from_config(kind, self.audio, source=str(path))
        for key, val in overrides.items():
            if val is not None:
                setattr(request, key, val)

        job = FeatureJob(job_id=uuid.uuid4().hex[:12], kind=kind, source=str(path))
        job._params = request.params()
        with self._lock:
            self._jobs[job.job_id] = job
        set_job_id(job.job_id)

        try:
            job._file_id = get_file_id(path, self.cache_config.id_method) if path.is_file() else ""
        except OSError as e:
            self._fail(job.job_id, f"cannot read {path}: {e}")
            return job

        hit = self._lookup(path, job._file_id, job._params, kind)
        if hit is not None:
            self._complete(job.job_id, hit, cached=True)
            audio_log(f"[{job.job_id}] cache hit for {kind.value} of {path.name}")
            return job

        self._update(job.job_id, status=JobStatus.running)
        if not self.background:
            def report(p: float) -> None:
                self._update(job.job_id, progress=p)
                if on_progress is not None:
                    on_progress(p)

            try:
                feature = extract_sync(request, report)
            except KTimingError as e:
                self._fail(job.job_id, str(e))
            else:
                self._store(job, feature)
            return job

        with self._lock:
            for other in self._jobs.values():
                if (other.job_id != job.job_id and other.kind == kind and other.source == job.source
                        and other.status == JobStatus.running):
                    other.status = JobStatus.cancelled
                    other.error = f"superseded by {job.job_id}"
        try:
            self._get_extractor().submit(request, request_id=job.job_id)
        except OSError as e:
            self._fail(job.job_id, f"cannot start worker: {e}")
        return job

    def cancel(self, job_id: str) -> bool:
        job = self.get(job_id)
        if job is None or job.status in TERMINAL_STATES:
            return False
        if self._extractor is not None:
            self._extractor.cancel(job_id)
        self._update(job_id, status=JobStatus.cancelled)
        return True

    def wait(self, job_id: str, timeout: float = 30.0, interval: float = 0.05) -> FeatureJob | None:
        """Poll until the job reaches a terminal state or ``timeout`` elapses."""
        deadline = time.monotonic() + timeout
        while True:
            job = self.get(job_id)
            if job is None or job.status in TERMINAL_STATES or time.monotonic() >= deadline:
                return job
            time.sleep(interval)

    def slice(self, job_id: str, start: float, end: float) -> Feature | None:
        job = self.get(job_id)
        if job is None or job.feature is None:
            return None
        return job.feature.slice(start, end)

    def shutdown(self) -> None:
        if self._extractor is not None:
            self._extractor.shutdown()
            self._extractor = None

    # ── Cache ────────────────────────────────────────────────────────────────

    def clear(self, source: str | Path | None = None) -> None:
        with self._lock:
            if source is None:
                self._cache.clear()
            else:
                self._cache.pop(str(Path(source)), None)

    def _lookup(self, path: Path, file_id: str, params: dict[str, Any],
                kind: FeatureKind) -> Feature | None:
        if not self.cache_config.enabled or not file_id:
            return None
        pkey = params_key(params)
        with self._lock:
            entry = self._cache.get(str(path))
            if entry is not None and entry[0] != file_id:
                audio_log(f"{path.name} changed on disk, evicting cached features")
                del self._cache[str(path)]
                entry = None
            if entry is not None and pkey in entry[1]:
                return entry[1][pkey]
        if self.cache_config.disk:
            try:
                evict_stale(path, file_id)
                arrays = load_cached_arrays(path, file_id, params)
                feature = _from_arrays(kind, arrays) if arrays is not None else None
            except (OSError, ValueError, KeyError, zipfile.BadZipFile) as e:
                audio_log(f"disk cache unreadable for {path.name}, recomputing: {e}", level="warning")
                return None
            if feature is not None:
                self._remember(path, file_id, pkey, feature)
                return feature
        return None

    def _remember(self, path: Path, file_id: str, pkey: str, feature: Feature) -> None:
        with self._lock:
            entry = self._cache.get(str(path))
            if entry is None or entry[0] != file_id:
                entry = (file_id, {})
                self._cache[str(path)] = entry
            entry[1][pkey] = feature

    def _store(self, job: FeatureJob, feature: Feature) -> None:
        if self.cache_config.enabled and job._file_id:
            path = Path(job.source)
            self._remember(path, job._file_id, params_key(job._params), feature)
            if self.cache_config.disk:
                try:
                    save_cached_arrays(path, job._file_id, job._params, _to_arrays(feature))
                except OSError as e:
                    audio_log(f"[{job.job_id}] disk cache not written, keeping in memory: {e}",
                              level="warning")
        self._complete(job.job_id, feature)

    def _complete(self, job_id: str, feature: Feature, cached: bool = False) -> None:
        self._update(job_id, status=JobStatus.completed, progress=1.0, feature=feature, cached=cached)

    def _fail(self, job_id: str, message: str) -> None:
        audio_log(f"[{job_id}] failed: {message}", level="error")
        self._update(job_id, status=JobStatus.failed, error=message)

    # ── Extractor callbacks (listener thread) ────────────────────────────────

    def _get_extractor(self) -> FeatureExtractor:
        if self._extractor is None:
            self._extractor = FeatureExtractor(
                on_progress=self._on_progress,
                on_result=self._on_result,
                on_error=self._on_error,
            )
        return self._extractor

    def _on_progress(self, msg: ProgressMessage) -> None:
        self._update(msg.request_id, progress=msg.progress)

    def _on_result(self, msg: ResultMessage) -> None:
        job = self.get(msg.request_id)
        if job is not None and job.status not in TERMINAL_STATES:
            self._store(job, msg.feature)

    def _on_error(self, msg: ErrorMessage) -> None:
        self._fail(msg.request_id, msg.error)
