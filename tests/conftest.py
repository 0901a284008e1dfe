import threading

import pytest
import requests

from site_cloner import CloneJob


class FakeResponse:
    def __init__(self, url, status_code=200, content=b""):
        self.url = url
        self.status_code = status_code
        self.content = content

    @property
    def text(self):
        return self.content.decode("utf-8")

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(
                f"{self.status_code} Error for url: {self.url}", response=self
            )


class FakeSession:
    """Routes URL -> (status, body) or an exception; unknown URLs fail to connect."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []
        self._lock = threading.Lock()
        self.closed = False

    def get(self, url, headers=None, timeout=None):
        with self._lock:
            self.calls.append((url, dict(headers or {}), timeout))
        route = self.routes.get(url)
        if route is None:
            raise requests.ConnectionError(f"cannot connect to {url}")
        if isinstance(route, Exception):
            raise route
        status, body = route
        if isinstance(body, str):
            body = body.encode("utf-8")
        return FakeResponse(url, status, body)

    def close(self):
        self.closed = True


@pytest.fixture
def make_session():
    return FakeSession


@pytest.fixture
def job(tmp_path):
    out = tmp_path / "example.com_1"
    (out / "assets").mkdir(parents=True)
    return CloneJob(
        url="http://example.com/", output_dir=out, assets_dir=out / "assets"
    )
