"""Tests for the release index client and asset selection."""
from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from sdcpp_backend.provisioning.asset_patterns import (
    FALLBACK_TAG,
    fallback_asset,
    match_key,
    select_asset,
)
from sdcpp_backend.provisioning.release_index import (
    API_ROOT,
    DOWNLOAD_ROOT,
    ReleaseAsset,
    ReleaseIndexClient,
    ReleaseInfo,
)

TAG = "master-480-abc1234"

ASSET_NAMES = [
    f"sd-{TAG}-bin-win-cuda12-x64.zip",
    f"sd-{TAG}-bin-win-cuda11-x64.zip",
    f"sd-{TAG}-bin-win-vulkan-x64.zip",
    f"sd-{TAG}-bin-win-avx512-x64.zip",
    f"sd-{TAG}-bin-win-avx2-x64.zip",
    f"sd-{TAG}-bin-win-avx-x64.zip",
    f"sd-{TAG}-bin-win-noavx-x64.zip",
    f"sd-{TAG}-bin-Linux-Ubuntu-24.04-x86_64.zip",
    f"sd-{TAG}-bin-Darwin-macOS-14.7.6-arm64.zip",
    "cudart-sd-bin-win-cu12-x64.zip",
    "checksums.txt",
]


def release_payload(tag=TAG, names=ASSET_NAMES):
    return {
        "tag_name": tag,
        "draft": False,
        "assets": [
            {"name": n, "browser_download_url": f"{DOWNLOAD_ROOT}/{tag}/{n}", "size": 100}
            for n in names
        ],
    }


class FakeResponse:
    def __init__(self, status=200, payload=None, headers=None):
        self.status_code = status
        self._payload = payload
        self.headers = headers or {}

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def client_with(*responses) -> tuple:
    session = MagicMock(spec=requests.Session)
    session.get.side_effect = list(responses)
    return ReleaseIndexClient(session=session), session


@pytest.mark.unit
class TestReleaseInfo:
    """Tests for payload parsing."""

    def test_from_payload(self):
        """Test assets and tag are parsed."""
        info = ReleaseInfo.from_payload(release_payload(), etag='"abc"')
        assert info.tag == TAG
        assert len(info.assets) == len(ASSET_NAMES)
        assert info.assets[0].size == 100
        assert info.etag == '"abc"'

    def test_missing_tag(self):
        """Test a payload without a tag is rejected."""
        with pytest.raises(ValueError):
            ReleaseInfo.from_payload({"assets": []})

    def test_incomplete_assets_skipped(self):
        """Test assets without a name or URL are dropped."""
        info = ReleaseInfo.from_payload({"tag_name": "t", "assets": [{"name": "a.zip"}, {"browser_download_url": "u"}]})
        assert info.assets == []


@pytest.mark.unit
class TestReleaseIndexClient:
    """Tests for the GitHub client."""

    def test_latest(self):
        """Test a 200 response is parsed and cached."""
        client, session = client_with(FakeResponse(200, release_payload(), {"ETag": '"v1"'}))
        release = client.latest()
        assert release.tag == TAG
        assert release.etag == '"v1"'
        url = session.get.call_args[0][0]
        assert url == f"{API_ROOT}/releases/latest"

    def test_not_modified_returns_cache(self):
        """Test a 304 reuses the cached release and sends the ETag."""
        client, session = client_with(
            FakeResponse(200, release_payload(), {"ETag": '"v1"'}),
            FakeResponse(304),
        )
        first = client.latest()
        second = client.latest()
        assert second is first
        headers = session.get.call_args_list[1][1]["headers"]
        assert headers["If-None-Match"] == '"v1"'

    def test_known_release_makes_request_conditional(self):
        """Test a release remembered from disk is sent as If-None-Match and returned on 304."""
        client, session = client_with(FakeResponse(304))
        known = ReleaseInfo(tag="master-480", etag='"v1"')

        assert client.latest(known=known) is known
        headers = session.get.call_args[1]["headers"]
        assert headers["If-None-Match"] == '"v1"'

    def test_known_release_replaced_by_newer(self):
        """Test a 200 after a conditional request returns the new release."""
        client, _ = client_with(FakeResponse(200, release_payload(), {"ETag": '"v2"'}))
        release = client.latest(known=ReleaseInfo(tag="master-1", etag='"v1"'))
        assert (release.tag, release.etag) == (TAG, '"v2"')

    def test_rate_limited(self):
        """Test rate limiting yields no release without raising."""
        client, _ = client_with(FakeResponse(403, headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "1700000000"}))
        assert client.latest() is None

    def test_not_found_lists_releases(self):
        """Test a missing latest release falls back to the first published one."""
        draft = dict(release_payload(tag="draft-1"), draft=True)
        client, session = client_with(
            FakeResponse(404),
            FakeResponse(200, [draft, release_payload(tag="master-479")]),
        )
        release = client.latest()
        assert release.tag == "master-479"
        assert session.get.call_args_list[1][0][0] == f"{API_ROOT}/releases"

    def test_bad_latest_payload_lists_releases(self):
        """Test a latest payload without a tag falls back to the listing."""
        client, _ = client_with(
            FakeResponse(200, {"message": "weird"}),
            FakeResponse(200, [release_payload()]),
        )
        assert client.latest().tag == TAG

    def test_empty_listing(self):
        """Test no published releases gives None."""
        client, _ = client_with(FakeResponse(404), FakeResponse(200, []))
        assert client.latest() is None

    def test_invalid_listing_json(self):
        """Test an unparseable listing gives None."""
        client, _ = client_with(FakeResponse(404), FakeResponse(200, ValueError("bad json")))
        assert client.latest() is None

    def test_server_error(self):
        """Test other statuses give None."""
        client, _ = client_with(FakeResponse(502))
        assert client.latest() is None

    def test_network_error(self):
        """Test connection errors give None."""
        client, _ = client_with(requests.ConnectionError("offline"))
        assert client.latest() is None


@pytest.mark.unit
class TestAssetSelection:
    """Tests for the OS/device pattern table."""

    @pytest.fixture
    def assets(self):
        return ReleaseInfo.from_payload(release_payload()).assets

    @pytest.mark.parametrize(
        "os_name,device,tier,expected",
        [
            ("windows", "cuda12", "avx2", "win-cuda12-x64"),
            ("windows", "cuda11", "avx2", "win-cuda11-x64"),
            ("windows", "vulkan", "avx2", "win-vulkan-x64"),
            ("windows", "cpu", "avx512", "win-avx512-x64"),
            ("windows", "cpu", "avx2", "win-avx2-x64"),
            ("windows", "cpu", "avx", "win-avx-x64"),
            ("windows", "cpu", "noavx", "win-noavx-x64"),
            ("linux", "cpu", "avx2", "Linux"),
            ("linux", "cuda12", "avx2", "Linux"),
            ("darwin", "cpu", "avx2", "Darwin-macOS"),
        ],
    )
    def test_select(self, assets, os_name, device, tier, expected):
        """Test each OS/device row picks its asset."""
        asset = select_asset(assets, device, os_name=os_name, cpu_tier=tier)
        assert expected in asset.name
        assert asset.name.endswith(".zip")

    def test_no_match(self):
        """Test releases without a matching zip select nothing."""
        assets = [ReleaseAsset(name="sd-bin-win-cuda12-x64.tar.gz", url="u")]
        assert select_asset(assets, "cuda12", os_name="windows") is None

    def test_unknown_tier_defaults_to_avx2(self):
        """Test an unrecognized CPU tier uses the avx2 build."""
        assert match_key("cpu", "sse4") == "cpu-avx2"
        assert match_key("cuda12", "sse4") == "cuda12"

    def test_fallback(self):
        """Test pinned fallback assets per OS and device."""
        asset = fallback_asset("cuda12", os_name="windows")
        assert FALLBACK_TAG in asset.name
        assert asset.url == f"{DOWNLOAD_ROOT}/{FALLBACK_TAG}/{asset.name}"
        assert "win-avx2-x64" in fallback_asset("cpu", os_name="windows").name
        assert "Linux" in fallback_asset("vulkan", os_name="linux").name
        assert fallback_asset("cpu", os_name="sunos") is None
