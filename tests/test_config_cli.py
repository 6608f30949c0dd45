"""Tests for YAML config loading and the typer CLI."""

from __future__ import annotations

import json

import numpy as np
import pytest
import yaml
from pydantic import ValidationError
from typer.testing import CliRunner

from ktiming.cli import app
from ktiming.utils.config import (
    DEFAULT_CONFIG_YAML,
    AppConfig,
    AudioConfig,
    TagConfig,
    load_config,
    merge_cli_overrides,
)

runner = CliRunner()


# ── Config ────────────────────────────────────────────────────────────────────

class TestConfig:
    def test_default_yaml_matches_defaults(self):
        assert AppConfig(**yaml.safe_load(DEFAULT_CONFIG_YAML)) == AppConfig()

    def test_load_from_file(self, tmp_path):
        p = tmp_path / "ktiming.yaml"
        p.write_text("editor:\n  scrub_tolerance: 0.5\naudio:\n  fft_size: 1024\n")
        cfg = load_config(p)
        assert cfg.editor.scrub_tolerance == 0.5
        assert cfg.audio.fft_size == 1024
        assert cfg.audio.effective_hop_size == 256
        assert cfg.tags.mode == "k"

    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_config(tmp_path / "none.yaml") == AppConfig()

    def test_overrides_skip_none(self):
        cfg = merge_cli_overrides(AppConfig(), {"tags.mode": "kf", "audio.hop_size": None})
        assert cfg.tags.mode == "kf"
        assert cfg.audio.hop_size == 0

    def test_validation(self):
        with pytest.raises(ValidationError):
            AudioConfig(fft_size=500)
        with pytest.raises(ValidationError):
            TagConfig(mode="ko")


# ── CLI ───────────────────────────────────────────────────────────────────────

class TestCli:
    def test_decode_json(self):
        result = runner.invoke(app, ["decode", "{\\k50}Hel{\\k30}lo", "--start", "1", "--json"])
        assert result.exit_code == 0
        assert '"startOffset"' in result.output
        assert '"Hello"' in result.output

    def test_decode_strict_fails(self):
        result = runner.invoke(app, ["decode", "{\\k10}a{oops", "--strict"])
        assert result.exit_code == 1

    def test_encode(self, tmp_path):
        doc = [{"text": "ab", "startTime": 0, "endTime": 1, "syllables": [
            {"text": "ab", "duration": 0.4, "startOffset": 0.1, "charStart": 0, "charEnd": 2}]}]
        p = tmp_path / "lines.json"
        p.write_text(json.dumps(doc))
        result = runner.invoke(app, ["encode", "-i", str(p), "--mode", "kf"])
        assert result.exit_code == 0
        assert "{\\kf10}{\\kf40}ab" in result.output

    def test_autosplit(self, lines_file, tmp_path):
        out = tmp_path / "out.json"
        result = runner.invoke(app, ["autosplit", "-i", str(lines_file), "-o", str(out)])
        assert result.exit_code == 0
        lines = json.loads(out.read_text())
        assert [len(line["syllables"]) for line in lines] == [2, 5, 5]

    def test_autosplit_tagged(self, tmp_path):
        p = tmp_path / "tagged.json"
        p.write_text(json.dumps({"lines": [{"text": "{\\k50}Hi", "startTime": 0, "endTime": 1}]}))
        out = tmp_path / "out.json"
        result = runner.invoke(app, ["autosplit", "-i", str(p), "-o", str(out), "--tagged"])
        assert result.exit_code == 0
        [line] = json.loads(out.read_text())
        assert line["text"] == "Hi"
        assert len(line["syllables"]) == 1

    def test_validate(self, lines_file, tmp_path):
        assert runner.invoke(app, ["validate", "-i", str(lines_file)]).exit_code == 0
        bad = tmp_path / "bad.json"
        bad.write_text(json.dumps([{"text": "a", "startTime": 1, "endTime": 1}]))
        assert runner.invoke(app, ["validate", "-i", str(bad)]).exit_code == 1

    def test_missing_input(self, tmp_path):
        result = runner.invoke(app, ["validate", "-i", str(tmp_path / "none.json")])
        assert result.exit_code == 1

    def test_locate(self, lines_file):
        result = runner.invoke(app, ["locate", "-i", str(lines_file), "-t", "3.0"])
        assert result.exit_code == 0
        assert "world" in result.output

    def test_waveform_json(self, sine_wav, tmp_path):
        out = tmp_path / "wave.json"
        result = runner.invoke(app, ["waveform", "-i", str(sine_wav), "-o", str(out), "--bps", "100"])
        assert result.exit_code == 0
        data = json.loads(out.read_text())
        assert len(data["peaks"]) == 100
        assert data["bucketsPerSecond"] == 100

    def test_spectrogram_npz_slice(self, sine_wav, tmp_path):
        out = tmp_path / "spec.npz"
        result = runner.invoke(app, ["spectrogram", "-i", str(sine_wav), "-o", str(out),
                                     "--fft-size", "256", "--hop-size", "441",
                                     "--start", "0.0", "--end", "0.5"])
        assert result.exit_code == 0
        with np.load(out) as data:
            assert data["data"].shape == (50, 128)

    def test_spectrogram_bad_fft(self, sine_wav):
        result = runner.invoke(app, ["spectrogram", "-i", str(sine_wav), "--fft-size", "500"])
        assert result.exit_code == 1

    def test_init_config(self, tmp_path):
        path = tmp_path / "ktiming.yaml"
        assert runner.invoke(app, ["init-config", "--path", str(path)]).exit_code == 0
        assert load_config(path) == AppConfig()
        result = runner.invoke(app, ["init-config", "--path", str(path)], input="n\n")
        assert result.exit_code == 0
