# orchestration/workflow_client.py
"""Delegate whole pipelines to the external workflow engine."""

from __future__ import annotations

from typing import Any, Literal

import httpx
import structlog

from core.exceptions import DelegationError
from core.http_client_service import HTTPClientService
from utils.json_utils import truncate_for_log

logger = structlog.get_logger(__name__)

USER_AGENT = "novelgate/0.1"
Purpose = Literal["generation", "upload"]


class WorkflowClient:
    """POST a validated request to the per-purpose workflow endpoint and return its JSON."""

    def __init__(
        self,
        http: HTTPClientService,
        generation_url: str,
        upload_url: str,
        token: str = "",
        timeout: float = 120.0,
    ):
        self._http = http
        self._urls: dict[str, str] = {"generation": generation_url, "upload": upload_url}
        self._token = token
        self.timeout = timeout

    def is_configured(self, purpose: Purpose) -> bool:
        return bool(self._urls.get(purpose))

    async def run(self, purpose: Purpose, payload: dict[str, Any]) -> dict[str, Any]:
        url = self._urls.get(purpose)
        if not url:
            raise DelegationError(f"Workflow URL for {purpose} is not configured", details={"purpose": purpose})

        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        logger.info(f"Delegating {purpose} to workflow engine", request_id=payload.get("requestId"))
        try:
            response = await self._http.post_json(url, payload, headers=headers, max_retries=1, timeout=self.timeout)
        except httpx.HTTPStatusError as e:
            raise DelegationError(
                f"Workflow engine returned {e.response.status_code}: {truncate_for_log(e.response.text, 500)}",
                details={"purpose": purpose, "status": e.response.status_code},
            ) from e
        except httpx.TimeoutException as e:
            raise DelegationError(
                f"Workflow engine timed out after {self.timeout:.0f}s",
                details={"purpose": purpose},
            ) from e
        except httpx.HTTPError as e:
            raise DelegationError(f"Workflow engine unreachable: {e}", details={"purpose": purpose}) from e

        try:
            data = response.json()
        except ValueError:
            return {"raw": response.text}
        return data if isinstance(data, dict) else {"result": data}
