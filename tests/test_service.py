"""Tests for feature jobs: caching, status, slicing and the worker processes."""

from __future__ import annotations

import threading
import time

import numpy as np
import pytest

from ktiming.audio.features import Spectrogram, Waveform
from ktiming.audio.service import FeatureService, JobStatus
from ktiming.audio.worker import (
    ErrorMessage,
    FeatureExtractor,
    FeatureKind,
    FeatureRequest,
    ProgressMessage,
    ResultMessage,
    extract_sync,
    run_request,
)
from ktiming.exceptions import FeatureExtractionError
from ktiming.utils.cache import CACHE_DIR_NAME
from ktiming.utils.config import AudioConfig, CacheConfig

from conftest import write_sine_wav


@pytest.fixture
def service():
    svc = FeatureService(AudioConfig(), CacheConfig(), background=False)
    yield svc
    svc.shutdown()


# ── Requests ─────────────────────────────────────────────────────────────────

class TestRequest:
    def test_from_config(self):
        req = FeatureRequest.from_config("spectrogram", AudioConfig(fft_size=1024), source="a.wav")
        assert req.kind == FeatureKind.SPECTROGRAM
        assert req.hop_size == 256
        assert req.source_key == "spectrogram:a.wav"

    def test_params_depend_on_kind(self):
        wf = FeatureRequest(FeatureKind.WAVEFORM)
        spec = FeatureRequest(FeatureKind.SPECTROGRAM)
        assert "fft" not in wf.params()
        assert spec.params()["hop"] == 128

    def test_run_request_emits_progress_then_result(self):
        messages = []
        req = FeatureRequest(FeatureKind.SPECTROGRAM, samples=np.zeros(2048), sample_rate=8000)
        run_request("r1", req, messages.append)
        assert all(isinstance(m, ProgressMessage) for m in messages[:-1])
        assert isinstance(messages[-1], ResultMessage)
        assert messages[-1].request_id == "r1"

    def test_run_request_reports_errors(self):
        messages = []
        run_request("r2", FeatureRequest(FeatureKind.WAVEFORM), messages.append)
        [msg] = messages
        assert isinstance(msg, ErrorMessage)
        assert "neither samples nor a source" in msg.error

    def test_extract_sync_raises(self):
        with pytest.raises(FeatureExtractionError):
            extract_sync(FeatureRequest(FeatureKind.WAVEFORM))


# ── Service (foreground) ─────────────────────────────────────────────────────

class TestService:
    def test_waveform_job(self, service, sine_wav):
        job = service.submit(sine_wav, "waveform")
        assert job.status == JobStatus.completed
        assert isinstance(job.feature, Waveform)
        assert job.feature.num_buckets == 200
        assert not job.cached
        d = job.to_dict()
        assert d["status"] == "completed"
        assert d["buckets"] == 200

    def test_second_request_served_from_cache(self, service, sine_wav):
        first = service.submit(sine_wav, FeatureKind.SPECTROGRAM)
        second = service.submit(sine_wav, FeatureKind.SPECTROGRAM)
        assert second.cached
        assert second.feature is first.feature

    def test_different_params_miss_cache(self, service, sine_wav):
        service.submit(sine_wav, "spectrogram")
        job = service.submit(sine_wav, "spectrogram", fft_size=256)
        assert not job.cached
        assert job.feature.num_bins == 128

    def test_changed_file_evicts(self, service, sine_wav):
        service.submit(sine_wav, "waveform")
        write_sine_wav(sine_wav, freq=880.0, duration=0.5)
        job = service.submit(sine_wav, "waveform")
        assert not job.cached
        assert job.feature.num_buckets == 100

    def test_clear(self, service, sine_wav):
        service.submit(sine_wav, "waveform")
        service.clear(sine_wav)
        assert not service.submit(sine_wav, "waveform").cached

    def test_cache_disabled(self, sine_wav):
        svc = FeatureService(cache=CacheConfig(enabled=False), background=False)
        svc.submit(sine_wav, "waveform")
        assert not svc.submit(sine_wav, "waveform").cached

    def test_disk_cache_survives_service(self, sine_wav):
        cfg = CacheConfig(disk=True)
        FeatureService(cache=cfg, background=False).submit(sine_wav, "spectrogram")
        assert list((sine_wav.parent / CACHE_DIR_NAME).glob("*.npz"))
        job = FeatureService(cache=cfg, background=False).submit(sine_wav, "spectrogram")
        assert job.cached
        assert isinstance(job.feature, Spectrogram)
        assert job.feature.num_bins == 256

    def test_disk_cache_write_failure_keeps_memory_cache(self, sine_wav, monkeypatch):
        def refuse(*args, **kwargs):
            raise PermissionError("read-only directory")

        monkeypatch.setattr("ktiming.audio.service.save_cached_arrays", refuse)
        svc = FeatureService(cache=CacheConfig(disk=True), background=False)
        job = svc.submit(sine_wav, "waveform")
        assert job.status == JobStatus.completed
        assert svc.submit(sine_wav, "waveform").cached

    def test_unreadable_disk_cache_is_recomputed(self, sine_wav, monkeypatch):
        def broken(*args, **kwargs):
            raise OSError("disk gone")

        monkeypatch.setattr("ktiming.audio.service.load_cached_arrays", broken)
        svc = FeatureService(cache=CacheConfig(disk=True), background=False)
        job = svc.submit(sine_wav, "waveform")
        assert job.status == JobStatus.completed
        assert not job.cached

    def test_progress_callback(self, service, sine_wav):
        seen = []
        job = service.submit(sine_wav, "spectrogram", on_progress=seen.append)
        assert seen and seen[0] == 0.0
        assert job.progress == 1.0

    def test_missing_file_fails(self, service, tmp_path):
        job = service.submit(tmp_path / "missing.wav", "waveform")
        assert job.status == JobStatus.failed
        assert "not found" in job.error

    def test_slice(self, service, sine_wav):
        job = service.submit(sine_wav, "waveform")
        part = service.slice(job.job_id, 0.5, 0.6)
        assert part.num_buckets == 20
        assert part.start_time == pytest.approx(0.5)
        assert service.slice("nope", 0, 1) is None

    def test_cancel_finished_job(self, service, sine_wav):
        job = service.submit(sine_wav, "waveform")
        assert not service.cancel(job.job_id)
        assert not service.cancel("nope")

    def test_jobs_listing(self, service, sine_wav):
        service.submit(sine_wav, "waveform")
        service.submit(sine_wav, "spectrogram")
        assert {j.kind for j in service.jobs()} == {FeatureKind.WAVEFORM, FeatureKind.SPECTROGRAM}


# ── Worker processes ─────────────────────────────────────────────────────────

class TestBackground:
    def test_service_runs_job_in_worker(self, tmp_path):
        wav = write_sine_wav(tmp_path / "bg.wav", duration=0.5)
        svc = FeatureService(background=True)
        try:
            job = svc.submit(wav, "waveform")
            done = svc.wait(job.job_id, timeout=60)
            assert done.status == JobStatus.completed
            assert done.feature.num_buckets == 100
            assert svc.submit(wav, "waveform").cached
        finally:
            svc.shutdown()

    def test_superseded_result_is_discarded(self):
        results: list[str] = []
        lock = threading.Lock()

        def on_result(msg):
            with lock:
                results.append(msg.request_id)

        extractor = FeatureExtractor(on_result=on_result)
        try:
            samples = np.zeros(4096, dtype=np.float32)
            req = FeatureRequest(FeatureKind.WAVEFORM, source="same", samples=samples, sample_rate=8000)
            old = extractor.submit(req, request_id="old")
            new = extractor.submit(req, request_id="new")
            assert not extractor.is_current("old")
            assert new.wait(60)
            assert old.wait(60)
            assert results == ["new"]
        finally:
            extractor.shutdown()

    def test_wait_returns_after_result_callback(self):
        results: list[str] = []

        def slow_on_result(msg):
            time.sleep(0.3)
            results.append(msg.request_id)

        extractor = FeatureExtractor(on_result=slow_on_result)
        try:
            req = FeatureRequest(FeatureKind.WAVEFORM, source="slow", samples=np.zeros(4096, dtype=np.float32),
                                 sample_rate=8000)
            handle = extractor.submit(req)
            assert handle.wait(60)
            assert results == [handle.request_id]
        finally:
            extractor.shutdown()

    def test_raising_result_callback_becomes_error(self):
        errors: list[ErrorMessage] = []

        def on_result(msg):
            raise RuntimeError("cannot store")

        extractor = FeatureExtractor(on_result=on_result, on_error=errors.append)
        try:
            samples = np.zeros(4096, dtype=np.float32)
            first = extractor.submit(FeatureRequest(FeatureKind.WAVEFORM, source="a", samples=samples,
                                                    sample_rate=8000))
            assert first.wait(60)
            second = extractor.submit(FeatureRequest(FeatureKind.WAVEFORM, source="b", samples=samples,
                                                     sample_rate=8000))
            assert second.wait(60)
            assert [e.request_id for e in errors] == [first.request_id, second.request_id]
            assert "cannot store" in errors[0].error
        finally:
            extractor.shutdown()

    def test_background_job_completes_when_disk_cache_fails(self, tmp_path, monkeypatch):
        def refuse(*args, **kwargs):
            raise PermissionError("read-only directory")

        monkeypatch.setattr("ktiming.audio.service.save_cached_arrays", refuse)
        wav = write_sine_wav(tmp_path / "ro.wav", duration=0.5)
        svc = FeatureService(cache=CacheConfig(disk=True), background=True)
        try:
            job = svc.submit(wav, "waveform")
            assert svc.wait(job.job_id, timeout=60).status == JobStatus.completed
        finally:
            svc.shutdown()

    def test_cancel_terminates_worker(self):
        errors: list[ErrorMessage] = []
        extractor = FeatureExtractor(on_error=errors.append)
        try:
            samples = np.zeros(44100 * 30, dtype=np.float32)
            req = FeatureRequest(FeatureKind.SPECTROGRAM, source="long", samples=samples,
                                 sample_rate=44100, fft_size=4096, hop_size=32)
            handle = extractor.submit(req)
            assert extractor.cancel(handle.request_id)
            assert handle.cancelled and handle.wait(1)
            assert not extractor.cancel(handle.request_id)
            assert errors == []
        finally:
            extractor.shutdown()
