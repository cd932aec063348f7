"""Prebuilt engine provisioning."""
from .asset_patterns import ASSET_PATTERNS, FALLBACK_TAG, fallback_asset, select_asset
from .binary_provisioner import BackgroundUpdateTask, BinaryInstallation, BinaryProvisioner
from .release_index import ReleaseAsset, ReleaseIndexClient, ReleaseInfo

__all__ = [
    "ASSET_PATTERNS",
    "FALLBACK_TAG",
    "fallback_asset",
    "select_asset",
    "BackgroundUpdateTask",
    "BinaryInstallation",
    "BinaryProvisioner",
    "ReleaseAsset",
    "ReleaseIndexClient",
    "ReleaseInfo",
]
