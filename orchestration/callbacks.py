# orchestration/callbacks.py
"""Sign, verify and deliver result callbacks.

Wire format::

    POST <callbackUrl>
    Content-Type: application/json
    X-Signature: sha256=<hex hmac>
    X-Timestamp: <unix millis>

The HMAC-SHA256 covers ``"<timestamp>." + <body bytes>`` so neither the payload
nor the timestamp can be altered without invalidating the signature. Receivers
reject deliveries whose timestamp is outside the allowed clock skew.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any

import httpx
import structlog

from core.http_client_service import HTTPClientService

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"
SIGNATURE_PREFIX = "sha256="


def serialize_payload(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


def current_millis() -> int:
    return int(time.time() * 1000)


def sign_payload(body: bytes, timestamp: str | int, secret: str) -> str:
    message = f"{timestamp}.".encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(
    body: bytes,
    signature: str | None,
    timestamp: str | int | None,
    secret: str,
    max_skew_seconds: int = 300,
    now_millis: int | None = None,
) -> bool:
    """Check a delivery's signature and freshness in constant time."""
    if not secret or not signature or timestamp is None:
        return False
    try:
        sent_at = int(timestamp)
    except (TypeError, ValueError):
        return False
    now = now_millis if now_millis is not None else current_millis()
    if abs(now - sent_at) > max_skew_seconds * 1000:
        return False
    expected = sign_payload(body, str(timestamp), secret)
    return hmac.compare_digest(expected, signature)


class CallbackSender:
    """Deliver signed callbacks once; failures are logged and reported as False."""

    def __init__(self, http: HTTPClientService, secret: str, timeout: float = 10.0):
        self._http = http
        self._secret = secret
        self.timeout = timeout

    async def send(self, callback_url: str, payload: dict[str, Any]) -> bool:
        if not self._secret:
            logger.warning("CALLBACK_SECRET is not configured; callback not sent", callback_url=callback_url)
            return False

        body = serialize_payload(payload)
        timestamp = str(current_millis())
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(body, timestamp, self._secret),
            TIMESTAMP_HEADER: timestamp,
        }
        try:
            response = await self._http.post_bytes(callback_url, body, headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.error(
                f"Callback delivery failed: {e}",
                callback_url=callback_url,
                request_id=payload.get("requestId"),
            )
            return False
        logger.info(
            "Callback delivered",
            callback_url=callback_url,
            status=response.status_code,
            request_id=payload.get("requestId"),
        )
        return True
