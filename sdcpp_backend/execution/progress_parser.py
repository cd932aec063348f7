"""Progress-line parser for engine output.

The engine reports progress as human-readable lines such as::

    |==========>                    | 7/20 - 1.52s/it

Only this module knows that format. The supervisor feeds it sanitized
lines and receives fractions; a change in the engine's log format is a
change here and nowhere else.
"""
from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from typing import Optional

# "N/M" standing alone: after start/space/bar/bracket, before end/space/bracket
_STEP_RE = re.compile(r"(?:^|[\s|\[])(\d+)/(\d+)(?=$|[\s\]])")


@dataclass(frozen=True)
class ProgressMarker:
    """One ``current/total`` marker found in a line."""

    current: int
    total: int

    @property
    def fraction(self) -> float:
        return min(1.0, max(0.0, self.current / self.total))


class ProgressLineParser:
    """Extracts step markers from single output lines."""

    def parse(self, line: str) -> Optional[ProgressMarker]:
        """Return the last well-formed ``current/total`` marker in ``line``.

        Markers with a zero total or ``current > total`` are ignored.
        """
        if not line or "/" not in line:
            return None
        marker = None
        for match in _STEP_RE.finditer(line):
            current, total = int(match.group(1)), int(match.group(2))
            if total > 0 and current <= total:
                marker = ProgressMarker(current, total)
        return marker


class ProgressTracker:
    """Turns parsed markers into a monotonically non-decreasing fraction."""

    def __init__(self, parser: Optional[ProgressLineParser] = None):
        self.parser = parser or ProgressLineParser()
        self._lock = threading.Lock()
        self.value = 0.0

    def feed(self, line: str) -> Optional[float]:
        """Parse ``line``; return the new progress if it advanced, else None."""
        marker = self.parser.parse(line)
        if marker is None:
            return None
        with self._lock:
            if marker.fraction <= self.value:
                return None
            self.value = marker.fraction
            return self.value
