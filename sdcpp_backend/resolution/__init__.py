"""Component resolution: local index, pinned downloads, per-path locking."""
from .artifact_fetcher import ArtifactFetcher
from .artifact_index import IndexedArtifact, LocalArtifactIndex
from .component_resolver import ArtifactDescriptor, ComponentResolver, ResolvedComponents, components_for
from .keyed_locks import KeyedLockMap, get_download_locks
from .known_components import KNOWN_COMPONENTS, KnownComponent

__all__ = [
    "ArtifactFetcher",
    "IndexedArtifact",
    "LocalArtifactIndex",
    "ArtifactDescriptor",
    "ComponentResolver",
    "ResolvedComponents",
    "components_for",
    "KeyedLockMap",
    "get_download_locks",
    "KNOWN_COMPONENTS",
    "KnownComponent",
]
