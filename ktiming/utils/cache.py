"""Source identity and on-disk cache for extracted audio features."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import numpy as np

CACHE_DIR_NAME = ".ktiming_cache"


def _file_hash(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(8192):
            h.update(chunk)
    return h.hexdigest()[:16]


def _file_mtime_id(path: Path) -> str:
    stat = path.stat()
    return f"{stat.st_mtime:.6f}_{stat.st_size}"


def get_file_id(path: Path, method: str = "hash") -> str:
    """Identity of a source file's content: sha256 prefix, or mtime+size when ``method='mtime'``."""
    if method == "hash":
        return _file_hash(path)
    return _file_mtime_id(path)


def get_cache_dir(input_path: Path) -> Path:
    cache_dir = input_path.parent / CACHE_DIR_NAME
    cache_dir.mkdir(exist_ok=True)
    return cache_dir


def params_key(params: dict[str, Any]) -> str:
    """Stable short key for a feature parameter set."""
    blob = json.dumps(params, sort_keys=True)
    return hashlib.sha256(blob.encode()).hexdigest()[:12]


def cache_key(input_path: Path, file_id: str, params: dict[str, Any]) -> str:
    return f"{input_path.stem}__{file_id}__{params_key(params)}"


def load_cached_arrays(input_path: Path, file_id: str, params: dict[str, Any]) -> dict[str, np.ndarray] | None:
    cache_file = get_cache_dir(input_path) / f"{cache_key(input_path, file_id, params)}.npz"
    if not cache_file.exists():
        return None
    with np.load(cache_file, allow_pickle=False) as data:
        return {k: data[k] for k in data.files}


def save_cached_arrays(input_path: Path, file_id: str, params: dict[str, Any],
                       arrays: dict[str, np.ndarray]) -> Path:
    cache_file = get_cache_dir(input_path) / f"{cache_key(input_path, file_id, params)}.npz"
    np.savez_compressed(cache_file, **arrays)
    return cache_file


def evict_stale(input_path: Path, file_id: str) -> int:
    """Delete cached features of ``input_path`` built from an older version of the file."""
    cache_dir = input_path.parent / CACHE_DIR_NAME
    if not cache_dir.is_dir():
        return 0
    removed = 0
    prefix = f"{input_path.stem}__"
    for f in cache_dir.glob(f"{input_path.stem}__*.npz"):
        rest = f.stem[len(prefix):]
        if not rest.startswith(f"{file_id}__"):
            f.unlink(missing_ok=True)
            removed += 1
    return removed
