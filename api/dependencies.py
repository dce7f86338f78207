# api/dependencies.py
"""FastAPI dependencies resolving services from the app's container."""

from __future__ import annotations

from typing import Any

from fastapi import Request

from config.settings import GatewaySettings
from core.ai_providers import AIProviderClient
from core.cache_store import utc_now_iso
from core.exceptions import ValidationError
from core.service_lifecycle import ServiceContainer
from orchestration.memory_system import MemorySystem
from orchestration.novel_orchestrator import NovelOrchestrator

from .security import read_json_body


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_settings(request: Request) -> GatewaySettings:
    return request.app.state.container.settings


def get_memory(request: Request) -> MemorySystem:
    return request.app.state.container.memory


def get_ai(request: Request) -> AIProviderClient:
    return request.app.state.container.ai


def get_orchestrator(request: Request) -> NovelOrchestrator:
    return request.app.state.container.orchestrator


async def json_body(request: Request) -> Any:
    body = await read_json_body(request, request.app.state.container.settings.MAX_BODY_BYTES)
    request.state.request_id = body.get("requestId") if isinstance(body, dict) else None
    return body


async def json_object(request: Request) -> dict[str, Any]:
    body = await json_body(request)
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def envelope(
    data: Any = None,
    message: str | None = None,
    request_id: str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """Success envelope shared by every route."""
    response: dict[str, Any] = {"success": True}
    if message:
        response["message"] = message
    if data is not None:
        response["data"] = data
    response.update(extra)
    response["requestId"] = request_id
    response["timestamp"] = utc_now_iso()
    return response
