"""Tests for audio decoding and the feature cache helpers."""

from __future__ import annotations

import os
import shutil
import wave

import numpy as np
import pytest

from ktiming.audio.decode import is_supported_audio, load_audio, read_wav
from ktiming.exceptions import AudioDecodeError
from ktiming.utils.cache import (
    CACHE_DIR_NAME,
    cache_key,
    evict_stale,
    get_file_id,
    load_cached_arrays,
    params_key,
    save_cached_arrays,
)

from conftest import write_sine_wav

requires_ffmpeg = pytest.mark.skipif(shutil.which("ffmpeg") is None, reason="ffmpeg not installed")


class TestDecode:
    def test_read_wav(self, sine_wav):
        pcm = read_wav(sine_wav)
        assert pcm.sample_rate == 44100
        assert pcm.duration == pytest.approx(1.0)
        assert pcm.samples.dtype == np.float32
        assert np.abs(pcm.samples).max() == pytest.approx(0.5, abs=1e-3)

    def test_stereo_is_mixed_to_mono(self, tmp_path):
        path = write_sine_wav(tmp_path / "stereo.wav", channels=2, duration=0.5)
        pcm = read_wav(path)
        assert pcm.samples.ndim == 1
        assert pcm.samples.shape[0] == 22050

    def test_8bit(self, tmp_path):
        path = tmp_path / "u8.wav"
        with wave.open(str(path), "wb") as wf:
            wf.setnchannels(1)
            wf.setsampwidth(1)
            wf.setframerate(8000)
            wf.writeframes(bytes([128, 255, 0, 128]))
        pcm = read_wav(path)
        np.testing.assert_allclose(pcm.samples, [0.0, 127 / 128, -1.0, 0.0])

    def test_load_audio_keeps_wav_rate(self, sine_wav):
        assert load_audio(sine_wav).sample_rate == 44100

    def test_missing_file(self, tmp_path):
        with pytest.raises(AudioDecodeError):
            load_audio(tmp_path / "nope.wav")

    def test_corrupt_wav(self, tmp_path):
        bad = tmp_path / "bad.wav"
        bad.write_bytes(b"definitely not audio")
        with pytest.raises(AudioDecodeError):
            load_audio(bad)

    @requires_ffmpeg
    def test_resample_through_ffmpeg(self, sine_wav):
        pcm = load_audio(sine_wav, sample_rate=22050)
        assert pcm.sample_rate == 22050
        assert pcm.duration == pytest.approx(1.0, abs=0.01)

    def test_supported_formats(self, tmp_path):
        assert is_supported_audio(tmp_path / "a.MP3")
        assert not is_supported_audio(tmp_path / "a.txt")


class TestCache:
    def test_file_id_follows_content(self, tmp_path):
        path = write_sine_wav(tmp_path / "a.wav", freq=440.0)
        first = get_file_id(path)
        assert get_file_id(path) == first
        write_sine_wav(path, freq=880.0)
        assert get_file_id(path) != first

    def test_mtime_method(self, sine_wav):
        fid = get_file_id(sine_wav, method="mtime")
        assert fid.endswith(f"_{os.path.getsize(sine_wav)}")

    def test_params_key_is_order_independent(self):
        assert params_key({"a": 1, "b": 2}) == params_key({"b": 2, "a": 1})
        assert params_key({"a": 1}) != params_key({"a": 2})

    def test_cache_key(self, sine_wav):
        key = cache_key(sine_wav, "abc", {"fft": 512})
        assert key.startswith("tone__abc__")

    def test_save_and_load(self, sine_wav):
        arrays = {"peaks": np.arange(4, dtype=np.float32)}
        save_cached_arrays(sine_wav, "id1", {"bps": 200}, arrays)
        loaded = load_cached_arrays(sine_wav, "id1", {"bps": 200})
        np.testing.assert_array_equal(loaded["peaks"], arrays["peaks"])
        assert load_cached_arrays(sine_wav, "id1", {"bps": 100}) is None
        assert load_cached_arrays(sine_wav, "id2", {"bps": 200}) is None

    def test_evict_stale(self, tmp_path):
        tone = write_sine_wav(tmp_path / "tone.wav")
        other = write_sine_wav(tmp_path / "tone2.wav")
        arrays = {"x": np.zeros(1)}
        save_cached_arrays(tone, "old", {}, arrays)
        save_cached_arrays(tone, "new", {}, arrays)
        save_cached_arrays(other, "old", {}, arrays)
        assert evict_stale(tone, "new") == 1
        remaining = sorted(p.name for p in (tmp_path / CACHE_DIR_NAME).iterdir())
        assert len(remaining) == 2
        assert any(name.startswith("tone2__old__") for name in remaining)
        assert any(name.startswith("tone__new__") for name in remaining)

    def test_evict_without_cache_dir(self, sine_wav):
        assert evict_stale(sine_wav, "x") == 0
