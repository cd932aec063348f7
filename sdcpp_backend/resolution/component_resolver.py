"""Component Resolver - Finds or fetches every artifact a family needs.

Per slot, in order:
1. Explicit user selection (request, then config override) always wins
2. An indexed local file matching the slot's naming heuristic
3. Hash-verified auto-fetch of the pinned component into the models root

After every slot is attempted, required slots are validated together so
the error names every missing piece at once. A job never proceeds with a
partially resolved component set.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from ..errors import DownloadFailure, ResolutionError
from ..orchestration.architecture_classifier import base_family, is_dit
from ..request import GenerationRequest
from .artifact_fetcher import ArtifactFetcher
from .artifact_index import LocalArtifactIndex
from .known_components import (
    KNOWN_COMPONENTS,
    SLOT_MATCHERS,
    KnownComponent,
    describe_missing,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FamilyComponents:
    """Slots a family needs (required) and may use (optional)."""

    required: Tuple[str, ...]
    optional: Tuple[str, ...] = ()
    # Optional slots that may still be filled from the local index
    matched: Tuple[str, ...] = ()


FAMILY_COMPONENTS: Dict[str, FamilyComponents] = {
    "flux": FamilyComponents(required=("vae", "clip_l", "t5xxl")),
    "sd3": FamilyComponents(required=("clip_g", "clip_l", "t5xxl"), optional=("vae",), matched=("vae",)),
    "z-image": FamilyComponents(required=("vae", "llm")),
    "wan": FamilyComponents(required=(), optional=("vae", "t5xxl", "clip_vision", "high_noise")),
}
DEFAULT_COMPONENTS = FamilyComponents(required=(), optional=("vae",))

# Slots only ever taken from an explicit selection
EXPLICIT_ONLY = frozenset({"clip_vision", "high_noise"})


def components_for(architecture: str) -> FamilyComponents:
    return FAMILY_COMPONENTS.get(base_family(architecture), DEFAULT_COMPONENTS)


@dataclass(frozen=True)
class ArtifactDescriptor:
    """A resolved artifact and where it came from."""

    kind: str
    local_path: Optional[Path]
    remote_url: Optional[str] = None
    sha256: Optional[str] = None
    size_bytes: int = 0
    source: str = "local"       # "explicit" | "index" | "download" | "local"


@dataclass(frozen=True)
class ResolvedComponents:
    """Every artifact path a job needs, keyed by slot."""

    architecture: str
    main_slot: str                        # "diffusion" for DiT families, "model" otherwise
    artifacts: Mapping[str, ArtifactDescriptor] = field(default_factory=dict)

    @property
    def paths(self) -> Dict[str, Path]:
        return {slot: a.local_path for slot, a in self.artifacts.items() if a.local_path}

    def get(self, slot: str) -> Optional[Path]:
        artifact = self.artifacts.get(slot)
        return artifact.local_path if artifact else None

    @property
    def main_model(self) -> Path:
        return self.artifacts[self.main_slot].local_path

    @property
    def downloaded(self) -> List[str]:
        return [slot for slot, a in self.artifacts.items() if a.source == "download"]

    def sizes(self) -> List[int]:
        """Byte sizes of every resolved artifact (memory-policy input)."""
        return [a.size_bytes for a in self.artifacts.values()]


class ComponentResolver:
    """Resolves the artifacts required by an architecture for one request."""

    def __init__(
        self,
        models_root: Path,
        fetcher: Optional[ArtifactFetcher] = None,
        auto_download: bool = True,
        overrides: Optional[Mapping[str, str]] = None,
        known_components: Optional[Mapping[str, KnownComponent]] = None,
    ):
        """Initialize resolver.

        Args:
            models_root: Root of the shared model store; fetches land under it.
            fetcher: Downloader; created on demand when auto_download is on.
            auto_download: Whether step 3 (auto-fetch) is allowed.
            overrides: Config-level explicit component paths, slot -> path.
            known_components: Pinned downloads, slot -> component.
        """
        self.models_root = Path(models_root)
        self.auto_download = auto_download
        self._fetcher = fetcher
        self.overrides = dict(overrides or {})
        self.known_components = dict(KNOWN_COMPONENTS if known_components is None else known_components)

    @property
    def fetcher(self) -> ArtifactFetcher:
        if self._fetcher is None:
            self._fetcher = ArtifactFetcher()
        return self._fetcher

    def resolve(
        self,
        architecture: str,
        request: GenerationRequest,
        index: LocalArtifactIndex,
    ) -> ResolvedComponents:
        """Resolve every component for ``request``.

        Raises:
            ResolutionError: One or more required components are missing;
                the error lists all of them.
        """
        family = components_for(architecture)
        main_slot = "diffusion" if is_dit(architecture) else "model"
        artifacts: Dict[str, ArtifactDescriptor] = {}
        missing: List[str] = []

        model_path = request.model_path
        if model_path.is_file():
            artifacts[main_slot] = ArtifactDescriptor(
                kind=main_slot, local_path=model_path, size_bytes=model_path.stat().st_size, source="explicit"
            )
        else:
            missing.append(describe_missing(main_slot, f"{model_path} not found"))

        for slot in family.required + family.optional:
            required = slot in family.required
            artifact, problem = self._resolve_slot(
                slot, request, index, exclude=model_path,
                allow_match=required or slot in family.matched, allow_fetch=required,
            )
            if artifact is not None:
                artifacts[slot] = artifact
            elif required:
                missing.append(describe_missing(slot, problem))
            elif problem:
                # An explicit optional selection that cannot be found is still an error
                missing.append(describe_missing(slot, problem))

        if missing:
            logger.error("Unresolved components for %s: %s", architecture, "; ".join(missing))
            raise ResolutionError(architecture, missing)

        resolved = ResolvedComponents(architecture=architecture, main_slot=main_slot, artifacts=artifacts)
        for slot, artifact in artifacts.items():
            logger.debug("Resolved %s -> %s (%s)", slot, artifact.local_path, artifact.source)
        return resolved

    def _resolve_slot(
        self,
        slot: str,
        request: GenerationRequest,
        index: LocalArtifactIndex,
        exclude: Path,
        allow_match: bool,
        allow_fetch: bool,
    ) -> Tuple[Optional[ArtifactDescriptor], str]:
        """Return (artifact, problem). ``problem`` is '' when nothing was asked for."""
        selection = request.components.get(slot) or self.overrides.get(slot)
        if selection:
            path = self._lookup_explicit(selection, index)
            if path is None:
                return None, f"selected file '{selection}' not found"
            return self._describe(slot, path, "explicit"), ""

        if slot in EXPLICIT_ONLY or not allow_match:
            return None, ""

        matcher = SLOT_MATCHERS.get(slot)
        if matcher is not None:
            entry = index.find(lambda e: e.path != exclude and matcher(e))
            if entry is not None:
                return self._describe(slot, entry.path, "index"), ""

        known = self.known_components.get(slot)
        if known is None or not allow_fetch:
            return None, "" if not allow_fetch else "no local match"
        if not self.auto_download:
            return None, "no local match and auto-download is disabled"

        # The pinned path may already be indexed or on disk
        entry = index.lookup(known.relative_path)
        if entry is not None:
            return self._describe(slot, entry.path, "index", known), ""

        target = self.models_root / known.relative_path
        try:
            path = self.fetcher.fetch(known.url, target, sha256=known.sha256, name=known.label or slot)
        except DownloadFailure as e:
            logger.error("Auto-download of %s failed: %s", slot, e)
            return None, f"auto-download failed ({e.reason})"
        index.register(path, root=self.models_root)
        return self._describe(slot, path, "download", known), ""

    @staticmethod
    def _lookup_explicit(selection: str, index: LocalArtifactIndex) -> Optional[Path]:
        path = Path(selection)
        if path.is_file():
            return path
        entry = index.lookup(selection)
        return entry.path if entry is not None else None

    @staticmethod
    def _describe(slot: str, path: Path, source: str, known: Optional[KnownComponent] = None) -> ArtifactDescriptor:
        try:
            size = path.stat().st_size
        except OSError:
            size = 0
        return ArtifactDescriptor(
            kind=slot,
            local_path=path,
            remote_url=known.url if known else None,
            sha256=known.sha256 if known else None,
            size_bytes=size,
            source=source,
        )
