"""FastAPI routes for the karaoke timing engine."""

from __future__ import annotations

import math
from pathlib import Path
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from ktiming.api import sessions
from ktiming.api.models import (
    DecodeRequest,
    DecodeResponse,
    DragRequest,
    EncodeRequest,
    FeatureSubmit,
    GoToLineRequest,
    HealthResponse,
    KeyRequest,
    LineRequest,
    LinesRequest,
    LocateRequest,
    MergeRequest,
    SessionCreate,
    SessionResponse,
    SplitRequest,
    TickRequest,
    TimeRequest,
    to_lines,
)
from ktiming.audio.service import JobStatus
from ktiming.editor.controller import TimingController
from ktiming.editor.effects import Effect
from ktiming.exceptions import TagSyntaxError
from ktiming.export.karaoke_tags import decode, encode_line
from ktiming.timing.derive import auto_split, character_timings, merge_syllables, split_syllable
from ktiming.timing.locator import ActiveSpanLocator, mask_progress
from ktiming.timing.model import validate_lines
from ktiming.utils.config import get_config

VERSION = "1.0.0"

router = APIRouter(prefix="/api", tags=["api"])


# ── Health ────────────────────────────────────────────────────────────────────

@router.get("/health", response_model=HealthResponse)
async def health():
    from ktiming.utils.deps_check import check_ffmpeg, check_numpy
    return HealthResponse(status="ok", version=VERSION,
                          ffmpeg=check_ffmpeg().available, numpy=check_numpy().available)


# ── Tags ──────────────────────────────────────────────────────────────────────

@router.post("/tags/decode", response_model=DecodeResponse)
async def decode_tags(req: DecodeRequest, strict: bool = False):
    try:
        result = decode(req.text, req.default_duration, strict=strict)
    except TagSyntaxError as e:
        raise HTTPException(400, str(e))
    resp = DecodeResponse(
        clean_text=result.clean_text,
        syllables=[s.to_dict() for s in result.syllables] if result.syllables is not None else None,
        warnings=result.warnings,
    )
    if req.start_time is not None and req.end_time is not None:
        resp.line = {
            "text": result.clean_text,
            "startTime": req.start_time,
            "endTime": req.end_time,
        }
        if result.syllables is not None:
            resp.line["syllables"] = resp.syllables
    return resp


@router.post("/tags/encode")
async def encode_tags(req: EncodeRequest):
    mode = req.mode.value if req.mode else get_config().tags.mode
    return {"text": encode_line(req.line.to_line(), mode), "mode": mode}


# ── Line operations ───────────────────────────────────────────────────────────

@router.post("/lines/validate")
async def validate(req: LinesRequest):
    found = validate_lines(to_lines(req.lines), get_config().editor.min_syllable_duration)
    return {
        "valid": not found,
        "violations": {str(i): [v.to_dict() for v in vs] for i, vs in found.items()},
    }


@router.post("/lines/autosplit")
async def autosplit(req: LineRequest):
    line = req.line.to_line()
    return {"line": line.with_syllables(auto_split(line)).to_dict()}


@router.post("/lines/split")
async def split(req: SplitRequest):
    line = req.line.to_line()
    syllables = split_syllable(line.sorted_syllables(), req.index, req.char_offset)
    return {"line": line.with_syllables(syllables if line.syllables is not None else None).to_dict()}


@router.post("/lines/merge")
async def merge(req: MergeRequest):
    line = req.line.to_line()
    syllables = merge_syllables(line.sorted_syllables(), req.first, req.last, keep_span=req.keep_span)
    return {"line": line.with_syllables(syllables if line.syllables is not None else None).to_dict()}


@router.post("/lines/timings")
async def timings(req: LineRequest):
    return {"chars": [c.to_dict() for c in character_timings(req.line.to_line())]}


@router.post("/locate")
async def locate(req: LocateRequest):
    lines = to_lines(req.lines)
    loc = ActiveSpanLocator(lines)
    idx = loc.active_line_index(req.t)
    until = loc.time_until_next_line(req.t)
    return {
        "index": idx,
        "in_gap": loc.is_in_gap(req.t),
        "upcoming": loc.upcoming_lines(req.t, req.count),
        "time_until_next": None if math.isinf(until) else until,
        "mask_progress": mask_progress(req.t, lines[idx] if idx >= 0 else None),
    }


# ── Editor sessions ───────────────────────────────────────────────────────────

def _response(sid: str, ctrl: TimingController, effects: list[Effect] | None = None) -> SessionResponse:
    return SessionResponse(session_id=sid, state=ctrl.to_dict(),
                           effects=[e.to_dict() for e in effects or []])


def _not_found() -> HTTPException:
    return HTTPException(404, "Session not found")


@router.post("/sessions", response_model=SessionResponse)
async def create_session(req: SessionCreate):
    sid, ctrl = sessions.create_session(to_lines(req.lines), req.loop)
    return _response(sid, ctrl)


@router.get("/sessions/{sid}", response_model=SessionResponse)
async def get_session(sid: str):
    with sessions.locked_session(sid) as ctrl:
        if ctrl is None:
            raise _not_found()
        return _response(sid, ctrl)


@router.get("/sessions/{sid}/lines")
async def get_session_lines(sid: str):
    with sessions.locked_session(sid) as ctrl:
        if ctrl is None:
            raise _not_found()
        return {"lines": [line.to_dict() for line in ctrl.lines]}


@router.delete("/sessions/{sid}")
async def delete_session(sid: str):
    if not sessions.delete_session(sid):
        raise _not_found()
    return {"deleted": sid}


@router.post("/sessions/{sid}/mark", response_model=SessionResponse)
async def mark(sid: str, req: TimeRequest):
    with sessions.locked_session(sid) as ctrl:
        if ctrl is None:
            raise _not_found()
        return _response(sid, ctrl, ctrl.mark(req.t))


@router.post("/sessions/{sid}/undo-mark", response_model=SessionResponse)
async def undo_mark(sid: str):
    with sessions.locked_session(sid) as ctrl:
        if ctrl is None:
            raise _not_found()
        return _response(sid, ctrl, ctrl.undo_mark())


@router.post("/sessions/{sid}/auto-split", response_model=SessionResponse)
async def session_auto_split(sid: str):
    with sessions.locked_session(sid) as ctrl:
        if ctrl is None:
            raise _not_found()
        return _response(sid, ctrl, ctrl.auto_split())


@router.post("/sessions/{sid}/restart", response_model=SessionResponse)
async def restart(sid: str):
    with sessions.locked_session(sid) as ctrl:
        if ctrl is None:
            raise _not_found()
        return _response(sid, ctrl, ctrl.restart_line())


@router.post("/sessions/{sid}/tick", response_model=SessionResponse)
async def tick(sid: str, req: TickRequest):
    with sessions.locked_session(sid) as ctrl:
        if ctrl is None:
            raise _not_found()
        return _response(sid, ctrl, ctrl.tick(req.t, req.playing))


@router.post("/sessions/{sid}/drag", response_model=SessionResponse)
async def drag(sid: str, req: DragRequest):
    with sessions.locked_session(sid) as ctrl:
        if ctrl is None:
            raise _not_found()
        return _response(sid, ctrl, ctrl.drag_to(req.syllable_index, req.edge.value, req.t))


@router.post("/sessions/{sid}/key", response_model=SessionResponse)
async def key(sid: str, req: KeyRequest):
    with sessions.locked_session(sid) as ctrl:
        if ctrl is None:
            raise _not_found()
        effects = ctrl.handle_key(req.key, req.t, playing=req.playing, shift=req.shift, ctrl=req.ctrl)
        return _response(sid, ctrl, effects)


@router.post("/sessions/{sid}/line", response_model=SessionResponse)
async def go_to_line(sid: str, req: GoToLineRequest):
    with sessions.locked_session(sid) as ctrl:
        if ctrl is None:
            raise _not_found()
        if not 0 <= req.index < len(ctrl.lines):
            raise HTTPException(400, f"Line index out of range: {req.index}")
        return _response(sid, ctrl, ctrl.go_to_line(req.index, req.t))


@router.post("/sessions/{sid}/undo", response_model=SessionResponse)
async def undo(sid: str):
    with sessions.locked_session(sid) as ctrl:
        if ctrl is None:
            raise _not_found()
        ctrl.undo()
        return _response(sid, ctrl)


@router.post("/sessions/{sid}/redo", response_model=SessionResponse)
async def redo(sid: str):
    with sessions.locked_session(sid) as ctrl:
        if ctrl is None:
            raise _not_found()
        ctrl.redo()
        return _response(sid, ctrl)


# ── Audio features ────────────────────────────────────────────────────────────

@router.post("/features")
def submit_features(req: FeatureSubmit):
    if not Path(req.source).is_file():
        raise HTTPException(404, f"Not found: {req.source}")
    service = sessions.get_feature_service()
    job = service.submit(req.source, req.kind.value, fft_size=req.fft_size,
                         hop_size=req.hop_size, buckets_per_second=req.buckets_per_second)
    return job.to_dict()


@router.get("/features/{job_id}")
async def feature_status(job_id: str):
    job = sessions.get_feature_service().get(job_id)
    if job is None:
        raise HTTPException(404, "Job not found")
    return job.to_dict()


@router.delete("/features/{job_id}")
async def cancel_features(job_id: str):
    service = sessions.get_feature_service()
    if service.get(job_id) is None:
        raise HTTPException(404, "Job not found")
    return {"cancelled": service.cancel(job_id)}


@router.get("/features/{job_id}/slice")
async def feature_slice(job_id: str, start: float = Query(...), end: float = Query(...)) -> dict[str, Any]:
    service = sessions.get_feature_service()
    job = service.get(job_id)
    if job is None:
        raise HTTPException(404, "Job not found")
    if job.status != JobStatus.completed:
        raise HTTPException(409, f"Job is {job.status.value}")
    part = service.slice(job_id, start, end)
    return {"job_id": job_id, "feature": part.to_dict() if part is not None else None}
