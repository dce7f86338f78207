# tests/fakes/fake_http.py
"""HTTPClientService instances backed by httpx.MockTransport."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx

from core.http_client_service import HTTPClientService


def make_http_service(handler: Callable[[httpx.Request], httpx.Response], max_retries: int = 3) -> HTTPClientService:
    return HTTPClientService(
        timeout=5.0,
        max_concurrency=10,
        max_retries=max_retries,
        retry_delay_seconds=0,
        transport=httpx.MockTransport(handler),
    )


class RecordingTransport:
    """Route requests by URL prefix and keep every request for later assertions."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._routes: list[tuple[str, Callable[[httpx.Request], httpx.Response]]] = []

    def route(self, url_prefix: str, responder: Callable[[httpx.Request], httpx.Response]) -> None:
        self._routes.append((url_prefix, responder))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for prefix, responder in self._routes:
            if str(request.url).startswith(prefix):
                return responder(request)
        return httpx.Response(404, json={"error": "no route"})

    def to(self, url_prefix: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url).startswith(url_prefix)]

    @staticmethod
    def json_of(request: httpx.Request) -> Any:
        return json.loads(request.content)
