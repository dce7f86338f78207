# api/security.py
"""Request hardening for the HTTP surface.

- Fixed-window rate limiting keyed by client address, honouring
  ``X-Forwarded-For`` only from configured proxies.
- JSON body intake with a content-type check, a size cap and recursive
  sanitization of string values.
"""

from __future__ import annotations

import json
import math
import re
import time
from collections.abc import Callable, Collection
from dataclasses import dataclass
from typing import Any

from fastapi import Request

from core.exceptions import PayloadTooLargeError, UnsupportedMediaTypeError, ValidationError

_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_JS_SCHEME_RE = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER_RE = re.compile(r"on\w+\s*=", re.IGNORECASE)


def sanitize_string(value: str) -> str:
    value = _SCRIPT_RE.sub("", value)
    value = _JS_SCHEME_RE.sub("", value)
    value = _EVENT_HANDLER_RE.sub("", value)
    return value.strip()


def sanitize(value: Any) -> Any:
    """Strip script blocks, ``javascript:`` and inline ``on*=`` handlers from every string."""
    if isinstance(value, str):
        return sanitize_string(value)
    if isinstance(value, list):
        return [sanitize(item) for item in value]
    if isinstance(value, dict):
        return {key: sanitize(item) for key, item in value.items()}
    return value


@dataclass
class _Window:
    started_at: float
    count: int


class FixedWindowRateLimiter:
    """Allow ``max_requests`` per client per ``window_seconds``; the window opens on the first hit."""

    def __init__(self, window_seconds: int = 60, max_requests: int = 10, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    def hit(self, client_id: str) -> int | None:
        """Record one request. Returns seconds until the window resets when the client is over the limit."""
        now = self._clock()
        self._prune(now)
        window = self._windows.get(client_id)
        if window is None:
            self._windows[client_id] = _Window(now, 1)
            return None
        window.count += 1
        if window.count > self.max_requests:
            remaining = self.window_seconds - (now - window.started_at)
            return max(1, math.ceil(remaining))
        return None

    def reset(self) -> None:
        self._windows.clear()

    def _prune(self, now: float) -> None:
        expired = [key for key, w in self._windows.items() if now - w.started_at >= self.window_seconds]
        for key in expired:
            del self._windows[key]


def client_identifier(request: Request, trusted_proxies: Collection[str] = ()) -> str:
    """Address the rate limiter keys on.

    ``X-Forwarded-For`` is only read when the socket peer is a trusted proxy; the
    client is then the right-most hop that is not itself a trusted proxy.
    """
    peer = request.client.host if request.client else "unknown"
    if peer not in trusted_proxies:
        return peer
    forwarded = request.headers.get("x-forwarded-for", "")
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted_proxies:
            return hop
    return hops[0] if hops else peer


async def read_body(request: Request, max_bytes: int) -> bytes:
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise PayloadTooLargeError(f"Request body exceeds {max_bytes} bytes")
    body = await request.body()
    if len(body) > max_bytes:
        raise PayloadTooLargeError(f"Request body exceeds {max_bytes} bytes")
    return body


async def read_json_body(request: Request, max_bytes: int) -> Any:
    content_type = request.headers.get("content-type", "")
    if "application/json" not in content_type.lower():
        raise UnsupportedMediaTypeError("Content-Type must be application/json")
    body = await read_body(request, max_bytes)
    try:
        data = json.loads(body) if body else {}
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(f"Malformed JSON body: {e}") from e
    return sanitize(data)
