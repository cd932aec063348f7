"""Artifact fetcher - verified, at-most-once downloads of model components.

Fetch protocol for a target path:
1. Return immediately if the file already exists
2. Acquire the per-path lock
3. Re-check existence (another caller may have finished the download)
4. Remove a stale ``<target>.tmp`` left by a crashed run
5. Stream into the temp file while hashing
6. Verify sha256 and, for safetensors, the header
7. ``os.replace`` the temp file onto the target

Readers never see a half-written target. Any failure removes the temp
file and raises :class:`DownloadFailure`.
"""
from __future__ import annotations

import hashlib
import logging
import os
import time
from pathlib import Path
from typing import Callable, Optional

import requests
from safetensors import SafetensorError, safe_open

from ..errors import DownloadFailure
from .keyed_locks import KeyedLockMap, get_download_locks

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 1024 * 1024
USER_AGENT = "sdcpp-backend"

# (name, downloaded_bytes, total_bytes, bytes_per_second)
ProgressCallback = Callable[[str, int, int, float], None]


def sha256_file(path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            digest.update(chunk)
    return digest.hexdigest()


def validate_safetensors(path: Path) -> None:
    """Raise ValueError if ``path`` is not a readable safetensors file."""
    try:
        with safe_open(str(path), framework="pt") as f:
            f.keys()
    except (SafetensorError, OSError) as e:
        raise ValueError(f"invalid safetensors header: {e}") from e


def log_progress(name: str, done: int, total: int, rate: float) -> None:
    """Default progress sink: one INFO line per 10% step."""
    mb = 1024 * 1024
    if total > 0:
        logger.info(
            "%s: %d%% (%.1f/%.1f MB, %.1f MB/s)",
            name, done * 100 // total, done / mb, total / mb, rate / mb,
        )
    else:
        logger.info("%s: %.1f MB (%.1f MB/s)", name, done / mb, rate / mb)


class ArtifactFetcher:
    """Downloads single artifacts with hash verification and per-path locking."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        locks: Optional[KeyedLockMap] = None,
        timeout: float = 60.0,
        chunk_size: int = DOWNLOAD_CHUNK_SIZE,
    ):
        """Initialize fetcher.

        Args:
            session: HTTP session (a fresh one is created if omitted).
            locks: Lock map; defaults to the process-wide download locks.
            timeout: Connect/read timeout in seconds.
            chunk_size: Streaming chunk size in bytes.
        """
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)
        self.locks = locks or get_download_locks()
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.download_count = 0

    def fetch(
        self,
        url: str,
        target: Path,
        sha256: Optional[str] = None,
        name: Optional[str] = None,
        progress: Optional[ProgressCallback] = log_progress,
    ) -> Path:
        """Ensure ``target`` exists, downloading it from ``url`` if needed.

        Returns:
            The target path.

        Raises:
            DownloadFailure: Transfer or verification failed.
        """
        target = Path(target)
        if target.exists():
            return target

        with self.locks.hold(target):
            if target.exists():
                logger.debug("%s appeared while waiting for its lock", target)
                return target
            self._download(url, target, sha256, name or target.name, progress)
        return target

    def _download(
        self,
        url: str,
        target: Path,
        sha256: Optional[str],
        name: str,
        progress: Optional[ProgressCallback],
    ) -> None:
        tmp = target.with_name(target.name + ".tmp")
        target.parent.mkdir(parents=True, exist_ok=True)
        if tmp.exists():
            logger.info("Removing stale partial download %s", tmp)
            tmp.unlink()

        logger.info("Downloading %s from %s", name, url)
        self.download_count += 1
        try:
            digest = hashlib.sha256()
            started = time.monotonic()
            with self.session.get(url, stream=True, timeout=self.timeout) as resp:
                resp.raise_for_status()
                total = int(resp.headers.get("Content-Length") or 0)
                done = 0
                next_report = 10
                with open(tmp, "wb") as f:
                    for chunk in resp.iter_content(chunk_size=self.chunk_size):
                        if not chunk:
                            continue
                        f.write(chunk)
                        digest.update(chunk)
                        done += len(chunk)
                        if progress and total > 0 and done * 100 // total >= next_report:
                            elapsed = max(time.monotonic() - started, 1e-6)
                            progress(name, done, total, done / elapsed)
                            next_report = (done * 100 // total) // 10 * 10 + 10

            if total and done != total:
                raise ValueError(f"size mismatch: got {done} bytes, expected {total}")
            if sha256 and digest.hexdigest().lower() != sha256.lower():
                raise ValueError(f"sha256 mismatch: got {digest.hexdigest()}, expected {sha256}")
            if target.suffix.lower() == ".safetensors":
                validate_safetensors(tmp)

            os.replace(tmp, target)
        except (requests.RequestException, OSError, ValueError) as e:
            self._discard(tmp)
            raise DownloadFailure(url, str(target), str(e)) from e
        logger.info("Downloaded %s to %s", name, target)

    @staticmethod
    def _discard(tmp: Path) -> None:
        try:
            tmp.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove partial download %s: %s", tmp, e)
