"""Centralized helpers for resolving important project directories."""
from __future__ import annotations

from pathlib import Path
from typing import Union

PROJECT_ROOT = Path(__file__).resolve().parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"
MODELS_DIR = PROJECT_ROOT / "Models"
DLBACKEND_DIR = PROJECT_ROOT / "dlbackend"
SCRATCH_DIR_NAME = "sdcpp_output"

PathLike = Union[str, Path]


def resolve_path(path_like: PathLike, *, base_dir: Path | None = None) -> Path:
    """Resolve a path relative to the project root if needed.

    Treat POSIX-style absolute paths (starting with '/') as absolute even on
    Windows where `Path.is_absolute()` may report False due to missing drive.
    """
    raw = str(path_like)
    if raw.startswith('/') or raw.startswith('\\'):
        return Path(raw)
    path = Path(path_like)
    if path.is_absolute():
        return path
    return (base_dir or PROJECT_ROOT) / path


def ensure_dir(path: Path) -> Path:
    """Create the directory (and parents) if it does not already exist."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def resolve_models_root(path_like: PathLike | None = None) -> Path:
    """Resolve and create the root of the shared model store."""
    return ensure_dir(resolve_path(path_like or MODELS_DIR))


def resolve_dlbackend_dir(path_like: PathLike | None = None) -> Path:
    """Resolve and create the directory holding provisioned engine binaries."""
    return ensure_dir(resolve_path(path_like or DLBACKEND_DIR))
