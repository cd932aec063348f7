"""Utility package for paths, logging and log sanitizing."""

from .logging_setup import configure_logging, sanitize_log
from .project_paths import ensure_dir, resolve_path

__all__ = ["configure_logging", "sanitize_log", "ensure_dir", "resolve_path"]
