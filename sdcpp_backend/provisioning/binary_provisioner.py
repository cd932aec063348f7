"""Binary Provisioner - Makes sure an engine executable exists for a device.

Install layout::

    <dlbackend>/sdcpp/<device_key>/
        sd-cli[.exe]            engine (plus any bundled libraries)
        sdcpp_version.json      sidecar, written last

An install is only considered present when both its sidecar and its
executable exist. Updates never destroy a working install: if anything
fails, the old binary stays and only the check timestamp moves.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
import stat
import tempfile
import threading
import time
import zipfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, List, Optional

from ..errors import DownloadFailure, ProvisionError
from ..resolution.artifact_fetcher import ArtifactFetcher
from ..resolution.keyed_locks import KeyedLockMap
from .asset_patterns import FALLBACK_TAG, current_os, fallback_asset, select_asset
from .release_index import ReleaseAsset, ReleaseIndexClient, ReleaseInfo

logger = logging.getLogger(__name__)

SIDECAR_NAME = "sdcpp_version.json"
UPDATE_CHECK_INTERVAL_SECONDS = 24 * 60 * 60
EXECUTABLE_NAMES = ("sd-cli", "sd")


@dataclass
class BinaryInstallation:
    """Sidecar contents for one installed engine."""

    tag: str
    device: str
    executable: str
    installed_at: float
    last_update_check_at: float
    etag: Optional[str] = None
    asset: Optional[str] = None

    @property
    def executable_path(self) -> Path:
        return Path(self.executable)

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def load(cls, path: Path) -> Optional["BinaryInstallation"]:
        """Read a sidecar; None if missing or unreadable."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return cls(**{k: data.get(k) for k in cls.__dataclass_fields__})
        except FileNotFoundError:
            return None
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Ignoring unreadable sidecar %s: %s", path, e)
            return None

    def save(self, path: Path) -> None:
        """Write atomically (temp file + rename)."""
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        os.replace(tmp, path)


def executable_names(os_name: str) -> List[str]:
    suffix = ".exe" if os_name == "windows" else ""
    return [name + suffix for name in EXECUTABLE_NAMES]


def find_executable(directory: Path, os_name: str) -> Optional[Path]:
    """First engine executable under ``directory`` (``sd-cli`` before legacy ``sd``)."""
    for name in executable_names(os_name):
        matches = sorted(p for p in directory.rglob(name) if p.is_file())
        if matches:
            return matches[0]
    return None


class BinaryProvisioner:
    """Installs and updates prebuilt engine releases."""

    def __init__(
        self,
        root: Path,
        client: Optional[ReleaseIndexClient] = None,
        fetcher: Optional[ArtifactFetcher] = None,
        os_name: Optional[str] = None,
        cpu_tier: str = "avx2",
        check_interval_seconds: float = UPDATE_CHECK_INTERVAL_SECONDS,
    ):
        """Initialize provisioner.

        Args:
            root: The ``dlbackend`` directory.
            client: Release index client.
            fetcher: Downloader for release archives.
            os_name: Override for the detected OS ("windows", "linux", "darwin").
            cpu_tier: CPU instruction tier for Windows CPU builds.
            check_interval_seconds: Minimum time between update checks.
        """
        self.root = Path(root)
        self.client = client or ReleaseIndexClient()
        self.fetcher = fetcher or ArtifactFetcher(locks=KeyedLockMap(), timeout=120.0)
        self.os_name = os_name or current_os()
        self.cpu_tier = cpu_tier
        self.check_interval_seconds = check_interval_seconds
        self._locks = KeyedLockMap()

    def install_dir(self, device_key: str) -> Path:
        return self.root / "sdcpp" / device_key

    def installation(self, device_key: str) -> Optional[BinaryInstallation]:
        """Current install for ``device_key`` if its sidecar and executable both exist."""
        installation = BinaryInstallation.load(self.install_dir(device_key) / SIDECAR_NAME)
        if installation is None or not installation.executable_path.is_file():
            return None
        return installation

    def installed_versions(self) -> List[BinaryInstallation]:
        """Every install found under the root."""
        base = self.root / "sdcpp"
        if not base.is_dir():
            return []
        found = []
        for child in sorted(base.iterdir()):
            if child.is_dir() and not child.name.endswith((".staging", ".old")):
                installation = BinaryInstallation.load(child / SIDECAR_NAME)
                if installation is not None:
                    found.append(installation)
        return found

    def ensure_available(self, device_key: str, auto_update: bool = True, force_update: bool = False) -> Path:
        """Return a usable executable for ``device_key``, installing it if needed.

        Raises:
            ProvisionError: Nothing is installed and installation failed.
        """
        with self._locks.hold(device_key):
            installation = self.installation(device_key)
            if installation is not None:
                if force_update or (auto_update and self._update_due(installation)):
                    installation = self._update(device_key, installation)
                return installation.executable_path
            return self._install_newest(device_key).executable_path

    def check_for_update(self, device_key: str, force: bool = False) -> Optional[BinaryInstallation]:
        """Run an update check for an existing install; None if nothing is installed."""
        with self._locks.hold(device_key):
            installation = self.installation(device_key)
            if installation is None:
                return None
            if force or self._update_due(installation):
                installation = self._update(device_key, installation)
            return installation

    def _update_due(self, installation: BinaryInstallation) -> bool:
        last = installation.last_update_check_at or 0
        return time.time() - last > self.check_interval_seconds

    def _update(self, device_key: str, installation: BinaryInstallation) -> BinaryInstallation:
        known = ReleaseInfo(tag=installation.tag, etag=installation.etag) if installation.etag else None
        release: Optional[ReleaseInfo] = self.client.latest(known=known)
        result = installation
        if release is None:
            logger.info("No release information; keeping %s", installation.tag)
        elif release.tag == installation.tag:
            logger.info("SD.cpp %s (%s) is up to date", installation.tag, device_key)
            if release.etag:
                result.etag = release.etag
        else:
            asset = select_asset(release.assets, device_key, self.os_name, self.cpu_tier)
            if asset is None:
                logger.warning("Release %s has no asset for %s; keeping %s", release.tag, device_key, installation.tag)
            else:
                logger.info("Updating SD.cpp (%s) from %s to %s", device_key, installation.tag, release.tag)
                try:
                    result = self._install(device_key, release.tag, asset, release.etag)
                except ProvisionError as e:
                    logger.warning("Update failed, keeping %s: %s", installation.tag, e)

        result.last_update_check_at = time.time()
        result.save(self.install_dir(device_key) / SIDECAR_NAME)
        return result

    def _install_newest(self, device_key: str) -> BinaryInstallation:
        release = self.client.latest()
        asset: Optional[ReleaseAsset] = None
        if release is not None:
            asset = select_asset(release.assets, device_key, self.os_name, self.cpu_tier)
        if asset is not None:
            return self._install(device_key, release.tag, asset, release.etag)

        asset = fallback_asset(device_key, self.os_name)
        if asset is None:
            raise ProvisionError(f"No SD.cpp build available for {self.os_name}/{device_key}", device=device_key)
        logger.info("Using fallback release %s for %s", FALLBACK_TAG, device_key)
        return self._install(device_key, FALLBACK_TAG, asset, None)

    def _install(self, device_key: str, tag: str, asset: ReleaseAsset, etag: Optional[str]) -> BinaryInstallation:
        """Download, extract and install ``asset``.

        The build is assembled in a sibling staging directory (sidecar
        included) and swapped in with renames, so a failed install never
        touches the current one.
        """
        target_dir = self.install_dir(device_key)
        staging_dir = target_dir.with_name(target_dir.name + ".staging")
        self.root.mkdir(parents=True, exist_ok=True)
        try:
            if staging_dir.exists():
                shutil.rmtree(staging_dir)
            with tempfile.TemporaryDirectory(dir=str(self.root), prefix="sdcpp-") as tmp:
                tmp_dir = Path(tmp)
                archive = self.fetcher.fetch(asset.url, tmp_dir / asset.name, name=asset.name)
                extract_dir = tmp_dir / "extract"
                with zipfile.ZipFile(archive) as zf:
                    zf.extractall(extract_dir)

                exe = find_executable(extract_dir, self.os_name)
                if exe is None:
                    raise ProvisionError(
                        f"{asset.name} does not contain {' or '.join(executable_names(self.os_name))}",
                        device=device_key,
                    )
                if self.os_name != "windows":
                    exe.chmod(exe.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

                staging_dir.parent.mkdir(parents=True, exist_ok=True)
                shutil.copytree(exe.parent, staging_dir)

            now = time.time()
            installation = BinaryInstallation(
                tag=tag,
                device=device_key,
                executable=str(target_dir / exe.name),
                installed_at=now,
                last_update_check_at=now,
                etag=etag,
                asset=asset.name,
            )
            installation.save(staging_dir / SIDECAR_NAME)
            self._swap_in(staging_dir, target_dir)
        except (DownloadFailure, zipfile.BadZipFile, OSError) as e:
            raise ProvisionError(f"Failed to install SD.cpp {tag} for {device_key}: {e}", device=device_key) from e
        finally:
            if staging_dir.exists():
                shutil.rmtree(staging_dir, ignore_errors=True)

        logger.info("Installed SD.cpp %s for %s at %s", tag, device_key, installation.executable)
        return installation

    @staticmethod
    def _swap_in(staging_dir: Path, target_dir: Path) -> None:
        """Replace ``target_dir`` with ``staging_dir``; the old build is restored on failure."""
        retired = target_dir.with_name(target_dir.name + ".old")
        if retired.exists():
            shutil.rmtree(retired)
        if target_dir.exists():
            target_dir.rename(retired)
        try:
            staging_dir.rename(target_dir)
        except OSError:
            if retired.exists() and not target_dir.exists():
                retired.rename(target_dir)
            raise
        if retired.exists():
            shutil.rmtree(retired, ignore_errors=True)


class BackgroundUpdateTask:
    """Periodic update checks on a daemon thread."""

    def __init__(self, provisioner: BinaryProvisioner, device_key: str, interval_seconds: float = 3600.0):
        self.provisioner = provisioner
        self.device_key = device_key
        self.interval = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start background checks."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="sdcpp-update-check", daemon=True)
        self._thread.start()

    def stop(self):
        """Stop background checks."""
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None

    def _loop(self):
        while not self._stop.is_set():
            try:
                self.provisioner.check_for_update(self.device_key)
            except Exception as e:
                logger.warning("Background update check failed: %s", e)
            self._stop.wait(self.interval)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.stop()
