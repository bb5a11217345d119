from __future__ import annotations

"""Resolve config, log and upload paths against the install directory."""

import os
import re
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

PathLike = Union[str, Path]


def get_base_dir() -> Path:
    """Return the install root, honoring the WALLPAPER_STOCK_HOME override."""
    env_path = os.environ.get("WALLPAPER_STOCK_HOME")
    if env_path:
        base = Path(os.path.expandvars(env_path)).expanduser()
        return base.resolve()
    return Path(__file__).resolve().parent


def resolve_path(path_like: PathLike) -> Path:
    """Resolve a path relative to the install root when not absolute."""
    if path_like is None:
        raise ValueError("path_like must not be None")

    path = Path(os.path.expandvars(str(path_like))).expanduser()
    if path.is_absolute():
        return path
    return get_base_dir() / path


def ensure_directory(path_like: PathLike) -> Path:
    """Create a directory (relative to the install root) if needed and return it."""
    path = resolve_path(path_like)
    path.mkdir(parents=True, exist_ok=True)
    return path


def timestamped_name(prefix: str, suffix: str, when: Optional[datetime] = None) -> str:
    """Build a filesystem-safe name like ``prefix-20240101T093000123.suffix``."""
    when = when or datetime.now()
    stamp = when.strftime("%Y%m%dT%H%M%S") + f"{when.microsecond // 1000:03d}"
    safe_prefix = re.sub(r"[^A-Za-z0-9_.-]+", "_", prefix or "").strip("_") or "file"
    suffix = suffix if not suffix or suffix.startswith(".") else f".{suffix}"
    return f"{safe_prefix}-{stamp}{suffix}"
