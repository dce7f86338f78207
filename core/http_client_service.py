# core/http_client_service.py
"""Perform outbound HTTP I/O for providers, the embedding service, the workflow engine and callbacks.

Each consumer group gets its own `HTTPClientService`, so slow delegations never
queue behind or in front of provider calls or callback deliveries.

Notes:
    - Requests are concurrency-limited via a semaphore. Waiting for a free slot
      counts against the call's timeout; a call that cannot get a slot in time
      fails with `httpx.PoolTimeout`.
    - Retries are applied for transient failures and server/rate-limit responses.
    - Every call carries an explicit timeout; callers may override it per request.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
import structlog

logger = structlog.get_logger(__name__)


class HTTPClientService:
    """Perform concurrency-limited HTTP requests with retries."""

    def __init__(
        self,
        timeout: float = 30.0,
        max_concurrency: int = 8,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
        name: str = "http",
    ):
        """Initialize the HTTP client.

        Args:
            timeout: Default request timeout in seconds.
            max_concurrency: Maximum number of in-flight requests.
            max_retries: Default attempt count for `post_json`.
            retry_delay_seconds: Base delay for exponential backoff between attempts.
            transport: Optional transport override, e.g. `httpx.MockTransport` in tests.
            name: Label used in logs and statistics.
        """
        self.name = name
        self.timeout = timeout
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.request_count = 0
        self._stats = {
            "total_requests": 0,
            "successful_requests": 0,
            "failed_requests": 0,
            "retry_attempts": 0,
            "slot_timeouts": 0,
        }

        logger.info(
            f"HTTPClientService '{name}' initialized with timeout={timeout}s, concurrency_limit={max_concurrency}"
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client and release resources."""
        await self._client.aclose()
        logger.debug(f"HTTPClientService '{self.name}' closed")

    @asynccontextmanager
    async def _slot(self, timeout: float, url: str) -> AsyncIterator[None]:
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout)
        except TimeoutError as e:
            self._stats["slot_timeouts"] += 1
            self._stats["failed_requests"] += 1
            logger.warning(f"No free request slot within {timeout:.1f}s", client=self.name, url=url)
            raise httpx.PoolTimeout(f"No free request slot on '{self.name}' within {timeout:.1f}s") from e
        try:
            yield
        finally:
            self._semaphore.release()

    async def post_json(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
        max_retries: int | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        """POST a JSON payload with retry behavior.

        Args:
            url: Target URL for the request.
            payload: JSON payload to send.
            headers: Optional HTTP headers.
            max_retries: Maximum attempts. When omitted, defaults to the configured value.
            timeout: Per-attempt timeout override in seconds; also bounds the wait for a slot.

        Raises:
            httpx.PoolTimeout: When no request slot frees up within the timeout.
            httpx.TimeoutException: When all attempts time out.
            httpx.HTTPStatusError: When a non-retryable status occurs or retries are
                exhausted.
            httpx.RequestError: When the request fails and retries are exhausted.
        """
        request_timeout = timeout if timeout is not None else self.timeout
        self._stats["total_requests"] += 1
        self.request_count += 1

        async with self._slot(request_timeout, url):
            effective_headers = headers or {}
            effective_max_retries = max(1, max_retries if max_retries is not None else self.max_retries)
            last_exception: Exception | None = None

            for attempt in range(effective_max_retries):
                try:
                    logger.debug(f"HTTP POST to {url} (attempt {attempt + 1}/{effective_max_retries})")

                    response = await self._client.post(url, json=payload, headers=effective_headers, timeout=request_timeout)
                    response.raise_for_status()

                    self._stats["successful_requests"] += 1
                    return response

                except httpx.TimeoutException as e:
                    last_exception = e
                    logger.warning(f"HTTP timeout (attempt {attempt + 1}): {e}", url=url)

                except httpx.HTTPStatusError as e:
                    last_exception = e
                    status_code = e.response.status_code
                    logger.warning(f"HTTP status error (attempt {attempt + 1}): {status_code} - {e.response.text[:200]}", url=url)

                    # No retry on client errors other than 429
                    if 400 <= status_code < 500 and status_code != 429:
                        break

                except httpx.RequestError as e:
                    last_exception = e
                    logger.warning(f"HTTP request error (attempt {attempt + 1}): {e}", url=url)

                if attempt < effective_max_retries - 1:
                    delay = self.retry_delay_seconds * (2**attempt)
                    logger.info(f"Retrying in {delay:.2f}s due to: {type(last_exception).__name__}")
                    await asyncio.sleep(delay)
                    self._stats["retry_attempts"] += 1

            self._stats["failed_requests"] += 1
            logger.error(f"HTTP POST failed after {effective_max_retries} attempts: {last_exception}", url=url)
            assert last_exception is not None
            raise last_exception

    async def _send_once(self, method: str, url: str, timeout: float | None, **kwargs: Any) -> httpx.Response:
        """One attempt whose deadline covers both the slot wait and the request."""
        deadline = timeout if timeout is not None else self.timeout
        self._stats["total_requests"] += 1
        self.request_count += 1
        loop = asyncio.get_running_loop()
        started = loop.time()
        async with self._slot(deadline, url):
            remaining = max(deadline - (loop.time() - started), 0.001)
            try:
                async with asyncio.timeout(remaining):
                    response = await self._client.request(method, url, timeout=remaining, **kwargs)
                    response.raise_for_status()
            except TimeoutError as e:
                self._stats["failed_requests"] += 1
                raise httpx.TimeoutException(f"{method} {url} did not complete within {deadline:.1f}s") from e
            except httpx.HTTPError:
                self._stats["failed_requests"] += 1
                raise
        self._stats["successful_requests"] += 1
        return response

    async def post_bytes(
        self,
        url: str,
        content: bytes,
        headers: dict[str, str],
        timeout: float | None = None,
    ) -> httpx.Response:
        """POST a pre-serialized body exactly once.

        Used where the body bytes must match a signature computed by the caller.
        Non-2xx responses raise `httpx.HTTPStatusError`.
        """
        return await self._send_once("POST", url, timeout, content=content, headers=headers)

    async def get_text(self, url: str, timeout: float | None = None) -> str:
        """GET a URL once and return its body as text."""
        response = await self._send_once("GET", url, timeout)
        return response.text

    def get_statistics(self) -> dict[str, Any]:
        """Return HTTP request statistics for monitoring."""
        total = self._stats["total_requests"]
        return {
            "client": self.name,
            **self._stats,
            "success_rate": (self._stats["successful_requests"] / total * 100) if total > 0 else 0,
            "failure_rate": (self._stats["failed_requests"] / total * 100) if total > 0 else 0,
            "avg_retries_per_request": (self._stats["retry_attempts"] / total) if total > 0 else 0,
        }


class EmbeddingServiceClient:
    """Call the external embedding service using a shared HTTP client."""

    def __init__(self, http_client: HTTPClientService, base_url: str, default_model: str, timeout: float = 15.0):
        self._http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.timeout = timeout

    async def get_embedding(self, text: str, model: str | None = None) -> list[float]:
        """Request an embedding for the provided text.

        Raises:
            ValueError: If `text` is empty or the response carries no embedding.
            httpx.HTTPError: If the HTTP request fails.
        """
        if not text or not isinstance(text, str) or not text.strip():
            raise ValueError("Text must be a non-empty string")

        payload = {"text": text, "model": model or self.default_model}
        response = await self._http_client.post_json(
            f"{self.base_url}/embed",
            payload,
            max_retries=1,
            timeout=self.timeout,
        )
        data = response.json()
        embedding = data.get("embedding") if isinstance(data, dict) else None
        if not isinstance(embedding, list) or not embedding:
            raise ValueError("Embedding service response did not contain an embedding")
        return embedding
