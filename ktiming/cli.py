"""Command-line interface with typer subcommands."""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Optional

import numpy as np
import typer
from dotenv import load_dotenv
from rich.prompt import Confirm
from rich.table import Table

from ktiming.exceptions import KTimingError
from ktiming.export.karaoke_tags import decode, decode_line, encode_line
from ktiming.timing.derive import auto_split
from ktiming.timing.locator import ActiveSpanLocator, mask_progress
from ktiming.timing.model import Line, lines_from_dicts, lines_to_dicts, validate_lines
from ktiming.utils.config import AppConfig, DEFAULT_CONFIG_YAML, load_config, merge_cli_overrides
from ktiming.utils.deps_check import check_all, print_dep_status
from ktiming.utils.logging import (
    Verbosity, console, error, info, make_progress, setup_logging, success, warn,
)

load_dotenv()

app = typer.Typer(
    name="ktiming",
    help="Karaoke syllable timing: tag codec, line tools and audio features.",
    rich_markup_mode="rich",
    no_args_is_help=True,
)


# ── Enums ─────────────────────────────────────────────────────────────────────

class KaraokeMode(str, Enum):
    k = "k"
    kf = "kf"
    K = "K"


# ── Helper functions ──────────────────────────────────────────────────────────

def _setup(silent: bool, verbose: bool, config: Optional[Path],
           overrides: dict[str, Any] | None = None) -> AppConfig:
    verbosity = Verbosity.SILENT if silent else (Verbosity.VERBOSE if verbose else Verbosity.NORMAL)
    setup_logging(verbosity, file_logs=False)
    cfg = load_config(config)
    if overrides:
        cfg = merge_cli_overrides(cfg, overrides)
    return cfg


def _load_lines(path: Path) -> list[Line]:
    """Read a JSON lines document: either a list of lines or ``{"lines": [...]}``."""
    if not path.is_file():
        error(f"Input not found: {path}")
        raise typer.Exit(1)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        error(f"Invalid JSON in {path}: {e}")
        raise typer.Exit(1)
    items = data.get("lines", []) if isinstance(data, dict) else data
    return lines_from_dicts(items)


def _write_json(data: Any, output: Optional[Path]) -> None:
    text = json.dumps(data, indent=2, ensure_ascii=False)
    if output is None:
        console.print_json(text)
    else:
        output.write_text(text, encoding="utf-8")
        success(f"Wrote {output}")


def _syllable_table(line: Line) -> Table:
    table = Table(title=line.text or "(empty)", show_lines=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Text")
    table.add_column("Start", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Chars", justify="right")
    for i, syl in enumerate(line.sorted_syllables()):
        table.add_row(str(i), syl.text, f"{syl.start_offset:.2f}", f"{syl.duration:.2f}",
                      f"{syl.char_start}-{syl.char_end}")
    return table


# ── TAGS ──────────────────────────────────────────────────────────────────────

@app.command(name="decode")
def decode_cmd(
    text: Annotated[str, typer.Argument(help="Tagged source, e.g. '{\\k50}Hel{\\k30}lo'")],
    start: Annotated[Optional[float], typer.Option(help="Line start time (s)")] = None,
    end: Annotated[Optional[float], typer.Option(help="Line end time (s)")] = None,
    default_duration: Annotated[Optional[float], typer.Option(help="Duration for untagged text (s)")] = None,
    strict: Annotated[bool, typer.Option("--strict", help="Fail on malformed tags")] = False,
    as_json: Annotated[bool, typer.Option("--json", help="Print JSON instead of a table")] = False,
    silent: Annotated[bool, typer.Option("--silent")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
    config: Annotated[Optional[Path], typer.Option("--config")] = None,
):
    """Decode karaoke tags into clean text and syllables."""
    cfg = _setup(silent, verbose, config, {"editor.default_syllable_duration": default_duration})
    try:
        result = decode(text, cfg.editor.default_syllable_duration, strict=strict)
    except KTimingError as e:
        error(str(e))
        raise typer.Exit(1)

    s = start if start is not None else 0.0
    e = end if end is not None else s + sum(x.duration for x in result.syllables or [])
    line = Line(text=result.clean_text, start_time=s, end_time=e, syllables=result.syllables)
    if as_json:
        _write_json(line.to_dict(), None)
    elif result.syllables is None:
        info(f"No timing tags: {result.clean_text!r}")
    else:
        console.print(_syllable_table(line))


@app.command(name="encode")
def encode_cmd(
    input: Annotated[Path, typer.Option("--input", "-i", help="Lines JSON")],
    mode: Annotated[Optional[KaraokeMode], typer.Option(help="Tag flavour")] = None,
    silent: Annotated[bool, typer.Option("--silent")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
    config: Annotated[Optional[Path], typer.Option("--config")] = None,
):
    """Encode each line's syllables as karaoke tags, one line per output row."""
    cfg = _setup(silent, verbose, config, {"tags.mode": mode.value if mode else None})
    for line in _load_lines(input):
        console.print(encode_line(line, cfg.tags.mode), markup=False, highlight=False)


# ── LINES ─────────────────────────────────────────────────────────────────────

@app.command(name="autosplit")
def autosplit_cmd(
    input: Annotated[Path, typer.Option("--input", "-i", help="Lines JSON")],
    output: Annotated[Optional[Path], typer.Option("--output", "-o")] = None,
    all_lines: Annotated[bool, typer.Option("--all", help="Also re-split lines that already have syllables")] = False,
    tagged: Annotated[bool, typer.Option("--tagged", help="Treat line text as karaoke-tagged source")] = False,
    silent: Annotated[bool, typer.Option("--silent")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
    config: Annotated[Optional[Path], typer.Option("--config")] = None,
):
    """Give lines one evenly timed syllable per character."""
    cfg = _setup(silent, verbose, config)
    lines = _load_lines(input)
    out: list[Line] = []
    changed = 0
    for line in lines:
        if tagged:
            decoded = decode_line(line.text, line.start_time, line.end_time,
                                  cfg.editor.default_syllable_duration)
            decoded.extra = line.extra
            decoded.char_customizations = line.char_customizations
            line = decoded
        if all_lines or not line.has_syllables():
            line = line.with_syllables(auto_split(line))
            changed += 1
        out.append(line)
    info(f"Auto-split {changed}/{len(lines)} line(s)")
    _write_json(lines_to_dicts(out), output)


@app.command(name="validate")
def validate_cmd(
    input: Annotated[Path, typer.Option("--input", "-i", help="Lines JSON")],
    silent: Annotated[bool, typer.Option("--silent")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
    config: Annotated[Optional[Path], typer.Option("--config")] = None,
):
    """Check syllable ordering, bounds and coverage; exits 1 on violations."""
    cfg = _setup(silent, verbose, config)
    lines = _load_lines(input)
    found = validate_lines(lines, cfg.editor.min_syllable_duration)
    if not found:
        success(f"{len(lines)} line(s) valid")
        return
    for idx, violations in found.items():
        for v in violations:
            where = f" syllable {v.syllable_index}" if v.syllable_index is not None else ""
            warn(f"Line {idx}{where}: ({v.code}) {v.message}")
    error(f"{sum(len(v) for v in found.values())} violation(s) in {len(found)} line(s)")
    raise typer.Exit(1)


@app.command(name="locate")
def locate_cmd(
    input: Annotated[Path, typer.Option("--input", "-i", help="Lines JSON")],
    time: Annotated[float, typer.Option("--time", "-t", help="Playback time (s)")],
    count: Annotated[int, typer.Option(help="Upcoming lines to list")] = 3,
    silent: Annotated[bool, typer.Option("--silent")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
):
    """Show which line is active at a playback time."""
    _setup(silent, verbose, None)
    lines = _load_lines(input)
    loc = ActiveSpanLocator(lines)
    idx = loc.active_line_index(time)
    if idx >= 0:
        line = lines[idx]
        info(f"Active line {idx}: {line.text!r} ({mask_progress(time, line):.0%})")
    else:
        wait = loc.time_until_next_line(time)
        info("No active line" + (f", next in {wait:.2f}s" if wait != float("inf") else ""))
    for i in loc.upcoming_lines(time, count):
        console.print(f"  [dim]next[/dim] {i}: {lines[i].text}  @ {lines[i].start_time:.2f}s")


# ── AUDIO FEATURES ────────────────────────────────────────────────────────────

def _run_feature(kind: str, input: Path, output: Optional[Path], cfg: AppConfig,
                 start: Optional[float], end: Optional[float], **overrides: Any) -> None:
    from ktiming.audio.service import FeatureService, JobStatus

    service = FeatureService(cfg.audio, cfg.cache, background=False)
    with make_progress() as progress:
        task = progress.add_task(f"{kind.capitalize()} {input.name}", total=1.0)
        job = service.submit(input, kind, on_progress=lambda p: progress.update(task, completed=p),
                             **overrides)
        progress.update(task, completed=1.0)
    if job.status != JobStatus.completed or job.feature is None:
        error(f"{kind} failed: {job.error}")
        raise typer.Exit(1)

    feature = job.feature
    if start is not None or end is not None:
        part = feature.slice(start or 0.0, end if end is not None else feature.duration)
        if part is None:
            error("Requested range holds no data")
            raise typer.Exit(1)
        feature = part

    summary = job.to_dict()
    info(", ".join(f"{k}={v}" for k, v in summary.items()
                   if k in ("buckets", "num_frames", "num_bins", "duration", "cached")))
    if output is None:
        return
    if output.suffix == ".npz":
        arrays = {"data": feature.peaks} if kind == "waveform" else {"data": feature.matrix}
        np.savez_compressed(output, **arrays)
        success(f"Wrote {output}")
    else:
        _write_json(feature.to_dict(), output)


@app.command()
def waveform(
    input: Annotated[Path, typer.Option("--input", "-i", help="Audio file")],
    output: Annotated[Optional[Path], typer.Option("--output", "-o", help=".json or .npz")] = None,
    bps: Annotated[Optional[float], typer.Option("--bps", help="Buckets per second")] = None,
    start: Annotated[Optional[float], typer.Option(help="Slice start (s)")] = None,
    end: Annotated[Optional[float], typer.Option(help="Slice end (s)")] = None,
    silent: Annotated[bool, typer.Option("--silent")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
    config: Annotated[Optional[Path], typer.Option("--config")] = None,
):
    """Extract normalised waveform peaks from an audio file."""
    cfg = _setup(silent, verbose, config, {"audio.buckets_per_second": bps})
    _run_feature("waveform", input, output, cfg, start, end)


@app.command()
def spectrogram(
    input: Annotated[Path, typer.Option("--input", "-i", help="Audio file")],
    output: Annotated[Optional[Path], typer.Option("--output", "-o", help=".json or .npz")] = None,
    fft_size: Annotated[Optional[int], typer.Option(help="FFT window (power of two)")] = None,
    hop_size: Annotated[Optional[int], typer.Option(help="Samples between frames (default fft/4)")] = None,
    start: Annotated[Optional[float], typer.Option(help="Slice start (s)")] = None,
    end: Annotated[Optional[float], typer.Option(help="Slice end (s)")] = None,
    silent: Annotated[bool, typer.Option("--silent")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
    config: Annotated[Optional[Path], typer.Option("--config")] = None,
):
    """Compute a log-scaled STFT spectrogram from an audio file."""
    try:
        cfg = _setup(silent, verbose, config, {"audio.fft_size": fft_size, "audio.hop_size": hop_size})
    except ValueError as e:
        error(f"Invalid audio settings: {e}")
        raise typer.Exit(1)
    _run_feature("spectrogram", input, output, cfg, start, end)


# ── INIT CONFIG / DOCTOR ──────────────────────────────────────────────────────

@app.command(name="init-config")
def init_config(
    path: Annotated[Path, typer.Option("--path", help="Where to write the config")] = Path("ktiming.yaml"),
    force: Annotated[bool, typer.Option("--force")] = False,
):
    """Generate a default ktiming.yaml in the current directory."""
    setup_logging(Verbosity.NORMAL, file_logs=False)
    if path.exists() and not force:
        if not Confirm.ask(f"{path} exists. Overwrite?", default=False):
            raise typer.Exit(0)
    path.write_text(DEFAULT_CONFIG_YAML)
    success(f"Created {path}")


@app.command()
def doctor():
    """Check external dependencies (numpy, ffmpeg)."""
    setup_logging(Verbosity.NORMAL, file_logs=False)
    if not print_dep_status(check_all(), strict=True):
        raise typer.Exit(1)
    success("All dependencies available")


# ── ENTRY POINT ───────────────────────────────────────────────────────────────

def app_entry():
    app()


if __name__ == "__main__":
    app_entry()
