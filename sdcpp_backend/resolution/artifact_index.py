"""Local artifact index - what model files are already on disk.

Stands in for the host's model registry: a thread-safe map of every model
file under one or more roots, keyed by its path relative to the root it was
found in (``VAE/Flux/ae.safetensors``). Resolution only ever reads it; the
fetcher registers freshly downloaded files so the next request finds them
without touching the network.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional

logger = logging.getLogger(__name__)

MODEL_EXTENSIONS = (".safetensors", ".gguf", ".ckpt", ".bin", ".sft")
VAE_EXTENSIONS = (".safetensors", ".sft", ".ckpt", ".bin")

# Top-level folders that hold auxiliary components rather than main models
COMPONENT_FOLDERS = frozenset({"vae", "clip", "clip_vision", "text_encoders", "controlnet", "lora", "upscale_models", "taesd"})


@dataclass(frozen=True)
class IndexedArtifact:
    """One model file known to the index."""

    name: str           # path relative to its root, POSIX separators
    path: Path
    size_bytes: int

    @property
    def filename(self) -> str:
        return self.path.name.lower()

    @property
    def folder(self) -> str:
        """Top-level folder under the root ('' for files directly in it)."""
        parts = self.name.split("/")
        return parts[0].lower() if len(parts) > 1 else ""

    @property
    def folders(self) -> frozenset:
        """Every directory level of the relative name, lowercased."""
        return frozenset(p.lower() for p in self.name.split("/")[:-1])


class LocalArtifactIndex:
    """Thread-safe index of model files under a set of roots."""

    def __init__(self, roots: Optional[Iterable[Path]] = None):
        self.roots: List[Path] = [Path(r) for r in (roots or [])]
        self._entries: Dict[str, IndexedArtifact] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[IndexedArtifact]:
        with self._lock:
            return iter(list(self._entries.values()))

    def scan(self, max_depth: Optional[int] = None) -> int:
        """(Re)scan every root for model files.

        Args:
            max_depth: Directory levels below each root to descend (None = unlimited).

        Returns:
            Number of indexed files after the scan.
        """
        found: Dict[str, IndexedArtifact] = {}
        for root in self.roots:
            if not root.is_dir():
                logger.debug("Index root %s does not exist, skipping", root)
                continue
            for entry in self._walk(root, max_depth):
                found.setdefault(entry.name, entry)
        with self._lock:
            self._entries = found
        logger.debug("Indexed %d model files under %d roots", len(found), len(self.roots))
        return len(found)

    def scan_near(self, model_path: Path) -> int:
        """Index files next to a model and in its parent, one level deep.

        Files already indexed keep their existing names.
        """
        added = 0
        model_path = Path(model_path)
        for directory in {model_path.parent, model_path.parent.parent}:
            if not directory.is_dir():
                continue
            for entry in self._walk(directory, max_depth=1):
                with self._lock:
                    if any(e.path == entry.path for e in self._entries.values()):
                        continue
                    self._entries[f"{directory.name}/{entry.name}"] = entry
                    added += 1
        return added

    def _walk(self, root: Path, max_depth: Optional[int]) -> Iterator[IndexedArtifact]:
        for path in sorted(root.rglob("*")):
            if not path.is_file() or path.suffix.lower() not in MODEL_EXTENSIONS:
                continue
            rel = path.relative_to(root)
            if max_depth is not None and len(rel.parts) - 1 > max_depth:
                continue
            try:
                size = path.stat().st_size
            except OSError:
                continue
            yield IndexedArtifact(name=rel.as_posix(), path=path, size_bytes=size)

    def register(self, path: Path, root: Optional[Path] = None) -> IndexedArtifact:
        """Add (or refresh) a single file."""
        path = Path(path)
        name = path.name
        for candidate in ([root] if root else []) + self.roots:
            try:
                name = path.relative_to(candidate).as_posix()
                break
            except ValueError:
                continue
        entry = IndexedArtifact(name=name, path=path, size_bytes=path.stat().st_size)
        with self._lock:
            self._entries[name] = entry
        return entry

    def lookup(self, name: str) -> Optional[IndexedArtifact]:
        """Exact match on relative name, then case-insensitive match on name or basename."""
        with self._lock:
            entry = self._entries.get(name)
            if entry is not None:
                return entry
            wanted = name.replace("\\", "/").lower()
            base = wanted.rsplit("/", 1)[-1]
            for entry in self._entries.values():
                if entry.name.lower() == wanted or entry.filename == base:
                    return entry
        return None

    def find(self, predicate: Callable[[IndexedArtifact], bool]) -> Optional[IndexedArtifact]:
        """First entry (in name order) matching ``predicate``."""
        with self._lock:
            entries = sorted(self._entries.values(), key=lambda e: e.name)
        for entry in entries:
            if predicate(entry):
                return entry
        return None

    def model_entries(self) -> List[IndexedArtifact]:
        """Entries that look like main models (not VAE/encoder/etc. folders)."""
        with self._lock:
            entries = sorted(self._entries.values(), key=lambda e: e.name)
        return [e for e in entries if e.folder not in COMPONENT_FOLDERS]
