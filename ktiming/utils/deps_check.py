"""Dependency self-check with helpful installation hints."""

from __future__ import annotations

import importlib.util
import shutil
import subprocess
from dataclasses import dataclass

from ktiming.utils.logging import info, warn, error


@dataclass
class DepStatus:
    name: str
    available: bool
    version: str = ""
    hint: str = ""


def check_ffmpeg() -> DepStatus:
    path = shutil.which("ffmpeg")
    if not path:
        return DepStatus(
            "ffmpeg", False,
            hint="Install: sudo apt-get install ffmpeg  (needed for non-WAV audio)"
        )
    try:
        r = subprocess.run(["ffmpeg", "-version"], capture_output=True, text=True, timeout=5)
    except (OSError, subprocess.SubprocessError):
        return DepStatus("ffmpeg", False, hint="ffmpeg found but failed to run")
    ver = r.stdout.split("\n")[0] if r.stdout else "unknown"
    return DepStatus("ffmpeg", True, version=ver)


def check_numpy() -> DepStatus:
    if importlib.util.find_spec("numpy") is None:
        return DepStatus("numpy", False, hint="Install: pip install numpy")
    import numpy
    return DepStatus("numpy", True, version=numpy.__version__)


def check_all() -> list[DepStatus]:
    return [check_numpy(), check_ffmpeg()]


def print_dep_status(deps: list[DepStatus], strict: bool = False) -> bool:
    all_ok = True
    for d in deps:
        if d.available:
            info(f"[green]✓[/green] {d.name}: {d.version or 'OK'}")
        else:
            if strict:
                error(f"{d.name}: NOT FOUND: {d.hint}")
                all_ok = False
            else:
                warn(f"{d.name}: not found: {d.hint}")
    return all_ok
