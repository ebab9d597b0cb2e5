import pytest
import requests

from nodelauncher.errors import TransferError
from nodelauncher.local.downloads import releases


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


RELEASE = {
    "tag_name": "v0.3.1",
    "assets": [
        {"name": "thunder-0.3.1-x86_64-apple-darwin.zip", "browser_download_url": "https://dl/darwin.zip"},
        {"name": "thunder-0.3.1-x86_64-unknown-linux-gnu.zip", "browser_download_url": "https://dl/linux.zip"},
    ],
}


def test_matching_asset_is_returned(monkeypatch):
    requested = []

    def fake_get(url, **kwargs):
        requested.append(url)
        return FakeResponse(RELEASE)

    monkeypatch.setattr(releases.requests, "get", fake_get)
    url = releases.resolve_release_asset_url("example/thunder", r"linux-gnu\.zip$", api_url="https://api.test")
    assert url == "https://dl/linux.zip"
    assert requested == ["https://api.test/repos/example/thunder/releases/latest"]


def test_no_matching_asset(monkeypatch):
    monkeypatch.setattr(releases.requests, "get", lambda url, **kwargs: FakeResponse(RELEASE))
    with pytest.raises(TransferError, match="No asset matching"):
        releases.resolve_release_asset_url("example/thunder", r"windows")


def test_http_failure_is_retriable(monkeypatch):
    monkeypatch.setattr(releases.requests, "get", lambda url, **kwargs: FakeResponse({}, status_code=503))
    with pytest.raises(TransferError) as excinfo:
        releases.resolve_release_asset_url("example/thunder", r".*")
    assert excinfo.value.retriable
