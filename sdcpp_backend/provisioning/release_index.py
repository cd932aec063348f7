"""Release Index - Newest engine release from the GitHub releases API.

Conditional requests (``If-None-Match``) keep repeated checks cheap; a
304 returns the cached release. Rate limiting is not an error: it is
logged and reported as "no release info".
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

REPOSITORY = "leejet/stable-diffusion.cpp"
API_ROOT = f"https://api.github.com/repos/{REPOSITORY}"
DOWNLOAD_ROOT = f"https://github.com/{REPOSITORY}/releases/download"
USER_AGENT = "sdcpp-backend"


@dataclass(frozen=True)
class ReleaseAsset:
    """One downloadable file in a release."""

    name: str
    url: str
    size: int = 0


@dataclass
class ReleaseInfo:
    """A release tag and its assets."""

    tag: str
    assets: List[ReleaseAsset] = field(default_factory=list)
    etag: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], etag: Optional[str] = None) -> "ReleaseInfo":
        """Build from a GitHub release JSON object.

        Raises:
            ValueError: ``tag_name`` is missing.
        """
        tag = payload.get("tag_name")
        if not tag:
            raise ValueError("release payload has no tag_name")
        assets = [
            ReleaseAsset(
                name=asset["name"],
                url=asset["browser_download_url"],
                size=int(asset.get("size") or 0),
            )
            for asset in payload.get("assets") or []
            if asset.get("name") and asset.get("browser_download_url")
        ]
        return cls(tag=tag, assets=assets, etag=etag)


class ReleaseIndexClient:
    """Fetches the newest release, remembering the last ETag."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self.session = session or requests.Session()
        self.timeout = timeout
        self._lock = threading.Lock()
        self._cached: Optional[ReleaseInfo] = None

    def _headers(self, conditional: bool) -> Dict[str, str]:
        headers = {"User-Agent": USER_AGENT, "Accept": "application/vnd.github+json"}
        if conditional and self._cached is not None and self._cached.etag:
            headers["If-None-Match"] = self._cached.etag
        return headers

    def latest(self, known: Optional[ReleaseInfo] = None) -> Optional[ReleaseInfo]:
        """Return the newest release, or None when it cannot be determined.

        Args:
            known: Release the caller already has (e.g. from an install
                sidecar). Its ETag makes the request conditional when nothing
                is cached yet, and it is returned on 304.
        """
        with self._lock:
            if self._cached is None and known is not None and known.etag:
                self._cached = known
            try:
                return self._latest()
            except requests.RequestException as e:
                logger.warning("Release index request failed: %s", e)
                return None

    def _latest(self) -> Optional[ReleaseInfo]:
        response = self.session.get(f"{API_ROOT}/releases/latest", headers=self._headers(True), timeout=self.timeout)

        if response.status_code == 304 and self._cached is not None:
            logger.debug("Release index not modified (%s)", self._cached.tag)
            return self._cached
        if response.status_code == 403 and response.headers.get("X-RateLimit-Remaining") == "0":
            logger.warning(
                "GitHub API rate limit reached; release check skipped (resets at %s)",
                response.headers.get("X-RateLimit-Reset", "unknown"),
            )
            return None
        if response.status_code == 200:
            try:
                release = ReleaseInfo.from_payload(response.json(), etag=response.headers.get("ETag"))
            except ValueError as e:
                logger.info("Unexpected /releases/latest payload (%s); listing releases", e)
            else:
                self._cached = release
                return release
        elif response.status_code != 404:
            logger.warning("Release index returned HTTP %d", response.status_code)
            return None

        return self._first_listed()

    def _first_listed(self) -> Optional[ReleaseInfo]:
        response = self.session.get(f"{API_ROOT}/releases", headers=self._headers(False), timeout=self.timeout)
        if response.status_code != 200:
            logger.warning("Release listing returned HTTP %d", response.status_code)
            return None
        try:
            payload = response.json()
        except ValueError:
            logger.warning("Release listing is not valid JSON")
            return None
        for entry in payload if isinstance(payload, list) else []:
            if entry.get("draft"):
                continue
            try:
                release = ReleaseInfo.from_payload(entry)
            except ValueError:
                continue
            self._cached = release
            return release
        logger.warning("No published releases found for %s", REPOSITORY)
        return None
