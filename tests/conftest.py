from pathlib import Path
from typing import Dict, List, Optional, Union

import pytest
import requests

from page_snapshot import NavigationResponse, PageRenderer, Viewport


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        body: bytes = b"",
        reason: str = "OK",
        chunk_size: int = 4,
    ):
        self.status_code = status_code
        self.reason = reason
        self.headers: Dict[str, str] = {}
        self._body = body
        self._chunk_size = chunk_size
        self.closed = False

    @property
    def text(self) -> str:
        return self._body.decode("utf-8", "replace")

    @property
    def content(self) -> bytes:
        return self._body

    def iter_content(self, chunk_size: int = 1):
        step = self._chunk_size or chunk_size
        for i in range(0, len(self._body), step):
            yield self._body[i : i + step]

    def close(self) -> None:
        self.closed = True


Route = Union[FakeResponse, bytes, Exception]


class FakeSession:
    """Stands in for requests.Session; unknown URLs answer 404."""

    def __init__(self, routes: Optional[Dict[str, Route]] = None):
        self.routes: Dict[str, Route] = dict(routes or {})
        self.calls: List[str] = []
        self.headers: Dict[str, str] = {}
        self.closed = False

    def get(self, url, **kwargs):
        self.calls.append(url)
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(404, reason="Not Found")
        if isinstance(route, Exception):
            raise route
        if isinstance(route, bytes):
            return FakeResponse(200, route)
        return route

    def asset_calls(self) -> List[str]:
        return [u for u in self.calls if not u.endswith("/robots.txt")]

    def close(self) -> None:
        self.closed = True


class FakeRenderer(PageRenderer):
    def __init__(
        self,
        html: str,
        final_url: str,
        status: Optional[int] = 200,
        title: str = "Example",
        backgrounds=(),
        fail_viewports=(),
        nav_error: Optional[Exception] = None,
        content_error: Optional[Exception] = None,
    ):
        self.html = html
        self.final_url = final_url
        self.status = status
        self._title = title
        self.backgrounds = list(backgrounds)
        self.fail_viewports = set(fail_viewports)
        self.nav_error = nav_error
        self.content_error = content_error
        self.opened = False
        self.closed = False
        self.navigated: List[str] = []
        self.viewports: List[Viewport] = []

    def open(self) -> None:
        self.opened = True

    def navigate(self, url, timeout_ms, wait_until="networkidle"):
        self.navigated.append(url)
        if self.nav_error is not None:
            raise self.nav_error
        reason = "OK" if self.status == 200 else "Not Found"
        return NavigationResponse(self.status, reason, self.final_url)

    def content(self) -> str:
        if self.content_error is not None:
            raise self.content_error
        return self.html

    def title(self) -> str:
        return self._title

    def current_url(self) -> str:
        return self.final_url

    def background_images(self):
        return list(self.backgrounds)

    def set_viewport(self, viewport: Viewport) -> None:
        self.viewports.append(viewport)

    def wait(self, ms: int) -> None:
        pass

    def screenshot(self, path: Path) -> None:
        if self.viewports and self.viewports[-1] in self.fail_viewports:
            raise RuntimeError("capture crashed")
        Path(path).write_bytes(b"\x89PNG fake")

    def close(self) -> None:
        self.closed = True


class RendererFactory:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.created: List[FakeRenderer] = []

    def __call__(self, options):
        r = FakeRenderer(**self.kwargs)
        self.created.append(r)
        return r


@pytest.fixture
def make_factory():
    return RendererFactory


@pytest.fixture
def make_session():
    return FakeSession


@pytest.fixture
def connection_error():
    return requests.ConnectionError("connection refused")
