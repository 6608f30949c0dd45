"""In-memory registry of editor sessions and the shared feature service."""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from typing import Iterator

from ktiming.audio.service import FeatureService
from ktiming.editor.controller import TimingController
from ktiming.timing.model import Line
from ktiming.utils.config import get_config
from ktiming.utils.logging import debug, set_session_id

_sessions: dict[str, TimingController] = {}
_session_locks: dict[str, threading.RLock] = {}
_sessions_lock = threading.Lock()

_feature_service: FeatureService | None = None
_service_lock = threading.Lock()


def create_session(lines: list[Line], loop: bool | None = None) -> tuple[str, TimingController]:
    sid = uuid.uuid4().hex[:12]
    ctrl = TimingController(lines, get_config().editor)
    if loop is not None:
        ctrl.loop = loop
    with _sessions_lock:
        _sessions[sid] = ctrl
        _session_locks[sid] = threading.RLock()
    set_session_id(sid)
    debug(f"Editor session created with {len(lines)} lines")
    return sid, ctrl


def get_session(sid: str) -> TimingController | None:
    with _sessions_lock:
        return _sessions.get(sid)


@contextmanager
def locked_session(sid: str) -> Iterator[TimingController | None]:
    """Yield the session's controller with its lock held (``None`` if unknown)."""
    with _sessions_lock:
        ctrl = _sessions.get(sid)
        lock = _session_locks.get(sid)
    if ctrl is None or lock is None:
        yield None
        return
    with lock:
        set_session_id(sid)
        yield ctrl


def delete_session(sid: str) -> bool:
    with _sessions_lock:
        _session_locks.pop(sid, None)
        return _sessions.pop(sid, None) is not None


def clear_sessions() -> None:
    with _sessions_lock:
        _sessions.clear()
        _session_locks.clear()


def get_feature_service() -> FeatureService:
    global _feature_service
    with _service_lock:
        if _feature_service is None:
            cfg = get_config()
            _feature_service = FeatureService(cfg.audio, cfg.cache)
        return _feature_service


def set_feature_service(service: FeatureService | None) -> None:
    global _feature_service
    with _service_lock:
        if _feature_service is not None and _feature_service is not service:
            _feature_service.shutdown()
        _feature_service = service
