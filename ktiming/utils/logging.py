"""Logging setup with rich console output and persistent file logging."""

from __future__ import annotations

import logging
import os
from contextvars import ContextVar
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.theme import Theme

custom_theme = Theme(
    {
        "info": "cyan",
        "warning": "yellow bold",
        "error": "red bold",
        "success": "green bold",
        "highlight": "magenta bold",
        "dim": "dim white",
    }
)

console = Console(theme=custom_theme)
err_console = Console(stderr=True, theme=custom_theme)

# ── Correlation IDs (ContextVars for thread-safety) ──────────────────────────

_session_id_var: ContextVar[str] = ContextVar("session_id", default="")
_job_id_var: ContextVar[str] = ContextVar("job_id", default="")


def set_session_id(sid: str) -> None:
    """Set the editor session ID used to prefix file log lines."""
    _session_id_var.set(sid)


def set_job_id(jid: str) -> None:
    """Set the feature extraction job ID for log correlation."""
    _job_id_var.set(jid)


def _ctx_prefix() -> str:
    parts = []
    sid = _session_id_var.get()
    jid = _job_id_var.get()
    if sid:
        parts.append(f"session={sid}")
    if jid:
        parts.append(f"job={jid}")
    return f"[{' '.join(parts)}] " if parts else ""


# ── File logging configuration ───────────────────────────────────────────────

LOG_DIR = Path(os.environ.get("KTIMING_LOG_DIR", "data/logs"))
_file_logger: logging.Logger | None = None
_audio_logger: logging.Logger | None = None


class _ContextFormatter(logging.Formatter):
    """Formatter that prepends session/job ids to every message."""

    def format(self, record: logging.LogRecord) -> str:
        record.msg = f"{_ctx_prefix()}{record.msg}"
        return super().format(record)


def _setup_file_handler(
    logger: logging.Logger,
    filepath: Path,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 3,
    level: int = logging.DEBUG,
) -> None:
    filepath.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        filepath, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setLevel(level)
    fmt = _ContextFormatter("%(asctime)s %(levelname)-8s %(name)-16s %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    handler.setFormatter(fmt)
    logger.addHandler(handler)


class Verbosity(str, Enum):
    SILENT = "silent"
    NORMAL = "normal"
    VERBOSE = "verbose"


_current_verbosity = Verbosity.NORMAL


def setup_logging(verbosity: Verbosity = Verbosity.NORMAL, file_logs: bool = True) -> None:
    global _current_verbosity, _file_logger, _audio_logger
    _current_verbosity = verbosity

    env_level = os.environ.get("LOG_LEVEL", "").upper()
    level_map = {"DEBUG": logging.DEBUG, "INFO": logging.INFO, "WARNING": logging.WARNING,
                 "ERROR": logging.ERROR, "CRITICAL": logging.CRITICAL}

    if env_level in level_map:
        level = level_map[env_level]
    else:
        level = {
            Verbosity.SILENT: logging.ERROR,
            Verbosity.NORMAL: logging.INFO,
            Verbosity.VERBOSE: logging.DEBUG,
        }[verbosity]

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, markup=True)],
        force=True,
    )

    if not file_logs:
        return

    # Editor log: marking, drags, tag decoding
    _file_logger = logging.getLogger("ktiming.app")
    _file_logger.setLevel(logging.DEBUG)
    _file_logger.propagate = False
    if not _file_logger.handlers:
        _setup_file_handler(_file_logger, LOG_DIR / "app.log")

    # Audio log: decode + feature extraction jobs
    _audio_logger = logging.getLogger("ktiming.audio")
    _audio_logger.setLevel(logging.DEBUG)
    _audio_logger.propagate = False
    if not _audio_logger.handlers:
        _setup_file_handler(_audio_logger, LOG_DIR / "audio.log")


def info(msg: str, **kwargs: Any) -> None:
    if _current_verbosity != Verbosity.SILENT:
        console.print(f"[info]ℹ {msg}[/info]", **kwargs)
    if _file_logger:
        _file_logger.info(msg)


def success(msg: str, **kwargs: Any) -> None:
    if _current_verbosity != Verbosity.SILENT:
        console.print(f"[success]✓ {msg}[/success]", **kwargs)
    if _file_logger:
        _file_logger.info(msg)


def warn(msg: str, **kwargs: Any) -> None:
    if _current_verbosity != Verbosity.SILENT:
        console.print(f"[warning]⚠ {msg}[/warning]", **kwargs)
    if _file_logger:
        _file_logger.warning(msg)


def error(msg: str, **kwargs: Any) -> None:
    err_console.print(f"[error]✗ {msg}[/error]", **kwargs)
    if _file_logger:
        _file_logger.error(msg)


def debug(msg: str, **kwargs: Any) -> None:
    if _current_verbosity == Verbosity.VERBOSE:
        console.print(f"[dim]  {msg}[/dim]", **kwargs)
    if _file_logger:
        _file_logger.debug(msg)


def audio_log(msg: str, level: str = "info") -> None:
    """Write to the audio extraction log file (always, regardless of verbosity)."""
    al = _audio_logger or logging.getLogger("ktiming.audio")
    getattr(al, level, al.info)(msg)


def make_progress(**kwargs: Any) -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=console,
        **kwargs,
    )
