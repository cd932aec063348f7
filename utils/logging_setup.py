"""Logging setup and engine-output sanitizing.

Library modules only ever call ``logging.getLogger(__name__)``; handlers are
installed once by the entry points (CLI, API server) via
:func:`configure_logging`.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# CSI sequences plus single-character escapes
_ANSI_ESCAPE_RE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Install console (and optional file) handlers on the root logger.

    Args:
        level: Logging level name.
        log_file: Optional path of a log file to append to.

    Returns:
        The configured root logger.
    """
    root = logging.getLogger()
    root.setLevel(level.upper())
    formatter = logging.Formatter(LOG_FORMAT)

    # Re-running (e.g. reload_config in the CLI) must not duplicate handlers
    for handler in list(root.handlers):
        if getattr(handler, "_sdcpp_handler", False):
            root.removeHandler(handler)
            handler.close()

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console._sdcpp_handler = True
    root.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler._sdcpp_handler = True
        root.addHandler(file_handler)

    return root


def sanitize_log(text: str) -> str:
    """Normalize engine output for logging.

    - Carriage returns become newlines so in-place progress bars split into lines.
    - ANSI escape sequences (colors, cursor movement) are stripped.
    """
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return _ANSI_ESCAPE_RE.sub("", text)
