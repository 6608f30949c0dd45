"""Background feature extraction in worker processes.

Every request runs in its own ``spawn`` process so FFT work never blocks the
editor.  The child talks back over a shared queue with three message kinds:
``ProgressMessage`` (any number), then exactly one ``ResultMessage`` or
``ErrorMessage``.  A listener thread in the parent dispatches them to the
callbacks given to :class:`FeatureExtractor`.

Requests for the same source and feature kind supersede each other: only the
latest one's messages are delivered, older results are dropped on arrival.
"""

from __future__ import annotations

import multiprocessing as mp
import queue
import threading
import traceback
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Union

import numpy as np

from ktiming.audio.decode import load_audio
from ktiming.audio.features import (
    DEFAULT_BUCKETS_PER_SECOND,
    DEFAULT_FFT_SIZE,
    LOG_EPSILON,
    LOG_OFFSET,
    PROGRESS_EVERY,
    Spectrogram,
    Waveform,
    extract_spectrogram,
    extract_waveform,
)
from ktiming.exceptions import FeatureExtractionError, KTimingError
from ktiming.utils.config import AudioConfig
from ktiming.utils.logging import audio_log

Feature = Union[Waveform, Spectrogram]


class FeatureKind(str, Enum):
    WAVEFORM = "waveform"
    SPECTROGRAM = "spectrogram"


@dataclass
class FeatureRequest:
    """One extraction job.  Either ``samples`` + ``sample_rate`` or a ``source`` path."""
    kind: FeatureKind
    source: str = ""
    samples: np.ndarray | None = None
    sample_rate: int = 0
    buckets_per_second: float = DEFAULT_BUCKETS_PER_SECOND
    fft_size: int = DEFAULT_FFT_SIZE
    hop_size: int = 0
    epsilon: float = LOG_EPSILON
    log_offset: float = LOG_OFFSET
    progress_every: int = PROGRESS_EVERY
    decode_sample_rate: int = 0

    @classmethod
    def from_config(cls, kind: FeatureKind | str, cfg: AudioConfig, **kwargs: Any) -> FeatureRequest:
        return cls(
            kind=FeatureKind(kind),
            buckets_per_second=cfg.buckets_per_second,
            fft_size=cfg.fft_size,
            hop_size=cfg.effective_hop_size,
            epsilon=cfg.epsilon,
            log_offset=cfg.log_offset,
            progress_every=cfg.progress_every,
            decode_sample_rate=cfg.decode_sample_rate,
            **kwargs,
        )

    @property
    def effective_hop_size(self) -> int:
        return self.hop_size or max(1, self.fft_size // 4)

    @property
    def source_key(self) -> str:
        """Requests sharing this key supersede each other."""
        return f"{self.kind.value}:{self.source}"

    def params(self) -> dict[str, Any]:
        if self.kind == FeatureKind.WAVEFORM:
            return {"kind": self.kind.value, "bps": self.buckets_per_second,
                    "sr": self.decode_sample_rate}
        return {"kind": self.kind.value, "fft": self.fft_size,
                "hop": self.effective_hop_size, "eps": self.epsilon,
                "offset": self.log_offset, "sr": self.decode_sample_rate}


# ── Messages ─────────────────────────────────────────────────────────────────

@dataclass
class ProgressMessage:
    request_id: str
    task: str
    progress: float


@dataclass
class ResultMessage:
    request_id: str
    task: str
    feature: Feature


@dataclass
class ErrorMessage:
    request_id: str
    task: str
    error: str


WorkerMessage = Union[ProgressMessage, ResultMessage, ErrorMessage]


def _compute(request: FeatureRequest, on_progress: Callable[[float], None]) -> Feature:
    samples, rate = request.samples, request.sample_rate
    if samples is None:
        if not request.source:
            raise FeatureExtractionError("request has neither samples nor a source path")
        pcm = load_audio(request.source, request.decode_sample_rate)
        samples, rate = pcm.samples, pcm.sample_rate

    on_progress(0.0)
    if request.kind == FeatureKind.WAVEFORM:
        return extract_waveform(samples, rate, request.buckets_per_second)
    return extract_spectrogram(
        samples, rate, request.fft_size, request.effective_hop_size,
        epsilon=request.epsilon, log_offset=request.log_offset,
        progress=on_progress, progress_every=request.progress_every,
    )


def run_request(request_id: str, request: FeatureRequest,
                emit: Callable[[WorkerMessage], None]) -> None:
    """Run one request, reporting through ``emit``; never raises."""
    task = request.kind.value
    try:
        feature = _compute(request, lambda p: emit(ProgressMessage(request_id, task, p)))
    except KTimingError as e:
        emit(ErrorMessage(request_id, task, str(e)))
    except Exception as e:
        emit(ErrorMessage(request_id, task, f"{type(e).__name__}: {e}\n{traceback.format_exc()}"))
    else:
        emit(ResultMessage(request_id, task, feature))


def _worker_main(request_id: str, request: FeatureRequest, out: Any) -> None:
    run_request(request_id, request, out.put)


def extract_sync(request: FeatureRequest,
                 progress: Callable[[float], None] | None = None) -> Feature:
    """Run a request in the calling thread; raises instead of emitting an error message."""
    return _compute(request, progress or (lambda p: None))


# ── Extractor ────────────────────────────────────────────────────────────────

@dataclass
class ExtractionHandle:
    request_id: str
    source_key: str
    process: Any = None
    cancelled: bool = False
    finished: bool = False
    _done: threading.Event = field(default_factory=threading.Event, repr=False)

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)


class FeatureExtractor:
    """Dispatches requests to spawned worker processes.

    Callbacks run on the listener thread and receive the message objects.
    """

    POLL_INTERVAL = 0.25

    def __init__(
        self,
        on_progress: Callable[[ProgressMessage], None] | None = None,
        on_result: Callable[[ResultMessage], None] | None = None,
        on_error: Callable[[ErrorMessage], None] | None = None,
    ):
        self.on_progress = on_progress
        self.on_result = on_result
        self.on_error = on_error
        self._ctx = mp.get_context("spawn")
        self._queue = self._ctx.Queue()
        self._handles: dict[str, ExtractionHandle] = {}
        self._latest: dict[str, str] = {}
        self._lock = threading.Lock()
        self._listener: threading.Thread | None = None
        self._stopping = threading.Event()

    def submit(self, request: FeatureRequest, request_id: str | None = None) -> ExtractionHandle:
        rid = request_id or uuid.uuid4().hex[:12]
        handle = ExtractionHandle(rid, request.source_key)
        process = self._ctx.Process(
            target=_worker_main, args=(rid, request, self._queue),
            daemon=True, name=f"ktiming-{request.kind.value}-{rid}",
        )
        with self._lock:
            superseded = self._latest.get(handle.source_key)
            self._latest[handle.source_key] = rid
            self._handles[rid] = handle
            handle.process = process
        if superseded:
            audio_log(f"[{rid}] supersedes {superseded} for {handle.source_key}", level="debug")
        self._ensure_listener()
        process.start()
        audio_log(f"[{rid}] started {request.kind.value} worker pid={process.pid}")
        return handle

    def cancel(self, request_id: str) -> bool:
        with self._lock:
            handle = self._handles.get(request_id)
            if handle is None or handle.finished:
                return False
            handle.cancelled = True
            handle.finished = True
            if self._latest.get(handle.source_key) == request_id:
                del self._latest[handle.source_key]
        if handle.process is not None and handle.process.is_alive():
            handle.process.terminate()
            handle.process.join(timeout=5.0)
        handle._done.set()
        audio_log(f"[{request_id}] cancelled")
        return True

    def is_current(self, request_id: str) -> bool:
        with self._lock:
            handle = self._handles.get(request_id)
            return handle is not None and self._latest.get(handle.source_key) == request_id

    def shutdown(self) -> None:
        with self._lock:
            pending = [rid for rid, h in self._handles.items() if not h.finished]
        for rid in pending:
            self.cancel(rid)
        self._stopping.set()
        if self._listener is not None:
            self._listener.join(timeout=5.0)
            self._listener = None
        self._queue.close()

    # ── Listener ─────────────────────────────────────────────────────────────

    def _ensure_listener(self) -> None:
        if self._listener is not None and self._listener.is_alive():
            return
        self._stopping.clear()
        self._listener = threading.Thread(target=self._listen, name="ktiming-feature-listener", daemon=True)
        self._listener.start()

    def _listen(self) -> None:
        while not self._stopping.is_set():
            try:
                msg = self._queue.get(timeout=self.POLL_INTERVAL)
            except queue.Empty:
                self._reap_crashed()
                continue
            except (EOFError, OSError):
                break
            self._dispatch(msg)

    def _reap_crashed(self) -> None:
        """Turn a worker that died without reporting into a terminal error."""
        with self._lock:
            dead = [
                h for h in self._handles.values()
                if not h.finished and h.process is not None
                and h.process.exitcode not in (None, 0)
            ]
        for h in dead:
            self._dispatch(ErrorMessage(h.request_id, "", f"worker exited with code {h.process.exitcode}"))

    def _dispatch(self, msg: WorkerMessage) -> None:
        with self._lock:
            handle = self._handles.get(msg.request_id)
            if handle is None or handle.finished:
                return
            current = self._latest.get(handle.source_key) == msg.request_id
            terminal = not isinstance(msg, ProgressMessage)
            if terminal:
                handle.finished = True
                if current:
                    del self._latest[handle.source_key]

        # wait() only returns once the callback has run
        try:
            if terminal and handle.process is not None:
                handle.process.join(timeout=5.0)
            if current:
                self._deliver(msg)
            elif terminal:
                audio_log(f"[{msg.request_id}] discarded stale {type(msg).__name__}", level="debug")
        finally:
            if terminal:
                handle._done.set()

    def _deliver(self, msg: WorkerMessage) -> None:
        """Run the callback for ``msg``. A result that cannot be handled becomes an error."""
        try:
            if isinstance(msg, ProgressMessage):
                if self.on_progress:
                    self.on_progress(msg)
            elif isinstance(msg, ResultMessage):
                audio_log(f"[{msg.request_id}] {msg.task} completed")
                if self.on_result:
                    self.on_result(msg)
            else:
                audio_log(f"[{msg.request_id}] {msg.task} failed: {msg.error}", level="error")
                if self.on_error:
                    self.on_error(msg)
        except Exception as e:
            audio_log(f"[{msg.request_id}] {type(msg).__name__} handler raised: {e}", level="error")
            audio_log(traceback.format_exc(), level="debug")
            if isinstance(msg, ResultMessage):
                self._deliver(ErrorMessage(msg.request_id, msg.task, f"result handling failed: {e}"))
