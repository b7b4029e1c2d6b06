"""Shared fakes: an httpx.AsyncClient backed by a table of canned responses."""
import sys
from pathlib import Path
from typing import Any

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


def _strip_query(url: httpx.URL) -> str:
    return str(url).split("?", 1)[0]


class FakeWeb:
    """Routes requests by URL (query string ignored) to canned responses.

    Each route is (status, headers, body); body may be str, bytes or a
    JSON-able dict/list. A callable route receives the httpx.Request.
    Every request is recorded in `requests`.
    """

    def __init__(self):
        self.routes: dict[str, Any] = {}
        self.requests: list[httpx.Request] = []

    def add(self, url: str, status: int = 200, headers: dict | None = None, body: Any = "") -> None:
        self.routes[url] = (status, headers or {}, body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(_strip_query(request.url))
        if route is None:
            return httpx.Response(404, text="not found")
        if callable(route):
            return route(request)
        status, headers, body = route
        if isinstance(body, (dict, list)):
            return httpx.Response(status, headers=headers, json=body)
        if isinstance(body, bytes):
            return httpx.Response(status, headers=headers, content=body)
        return httpx.Response(status, headers=headers, text=body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def sent_to(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if _strip_query(r.url) == url]


@pytest.fixture
def web():
    return FakeWeb()
