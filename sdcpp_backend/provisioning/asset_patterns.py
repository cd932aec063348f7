"""Release asset selection.

Rows are tried in order; the first row whose OS and device match and
whose pattern is a substring of an asset name wins.
"""
from __future__ import annotations

import platform
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from .release_index import DOWNLOAD_ROOT, ReleaseAsset

FALLBACK_TAG = "master-471-7010bb4"
CPU_TIERS = ("avx512", "avx2", "avx", "noavx")


@dataclass(frozen=True)
class AssetPattern:
    os_name: str
    device: str  # "*" matches any device
    pattern: str

    def applies(self, os_name: str, device: str) -> bool:
        return self.os_name == os_name and self.device in ("*", device)


ASSET_PATTERNS: Tuple[AssetPattern, ...] = (
    AssetPattern("windows", "cuda11", "win-cuda11-x64"),
    AssetPattern("windows", "cuda12", "win-cuda12-x64"),
    AssetPattern("windows", "vulkan", "win-vulkan-x64"),
    AssetPattern("windows", "cpu-avx512", "win-avx512-x64"),
    AssetPattern("windows", "cpu-avx2", "win-avx2-x64"),
    AssetPattern("windows", "cpu-avx", "win-avx-x64"),
    AssetPattern("windows", "cpu-noavx", "win-noavx-x64"),
    AssetPattern("linux", "*", "Linux"),
    AssetPattern("darwin", "*", "Darwin-macOS"),
)

_FALLBACK_ASSETS = {
    ("windows", "cuda11"): f"sd-{FALLBACK_TAG}-bin-win-cuda11-x64.zip",
    ("windows", "cuda12"): f"sd-{FALLBACK_TAG}-bin-win-cuda12-x64.zip",
    ("windows", "vulkan"): f"sd-{FALLBACK_TAG}-bin-win-vulkan-x64.zip",
    ("windows", "cpu"): f"sd-{FALLBACK_TAG}-bin-win-avx2-x64.zip",
    ("linux", "*"): "sd-master--bin-Linux-Ubuntu-24.04-x86_64.zip",
    ("darwin", "*"): "sd-master--bin-Darwin-macOS-14.7.6-arm64.zip",
}


def current_os() -> str:
    """Normalized OS name: windows, linux or darwin."""
    return platform.system().lower()


def match_key(device_key: str, cpu_tier: str = "avx2") -> str:
    """Device key as used in the pattern table (CPU builds are split by tier)."""
    if device_key == "cpu":
        return f"cpu-{cpu_tier if cpu_tier in CPU_TIERS else 'avx2'}"
    return device_key


def select_asset(
    assets: Iterable[ReleaseAsset],
    device_key: str,
    os_name: Optional[str] = None,
    cpu_tier: str = "avx2",
) -> Optional[ReleaseAsset]:
    """Pick the asset for this OS and device; None when nothing matches."""
    os_name = os_name or current_os()
    key = match_key(device_key, cpu_tier)
    zips: List[ReleaseAsset] = [a for a in assets if a.name.lower().endswith(".zip")]
    for row in ASSET_PATTERNS:
        if not row.applies(os_name, key):
            continue
        for asset in zips:
            if row.pattern in asset.name:
                return asset
    return None


def fallback_asset(device_key: str, os_name: Optional[str] = None) -> Optional[ReleaseAsset]:
    """Hardcoded known-good asset for this OS and device."""
    os_name = os_name or current_os()
    device = "cpu" if device_key.startswith("cpu") else device_key
    name = _FALLBACK_ASSETS.get((os_name, device)) or _FALLBACK_ASSETS.get((os_name, "*"))
    if name is None:
        return None
    return ReleaseAsset(name=name, url=f"{DOWNLOAD_ROOT}/{FALLBACK_TAG}/{name}")
