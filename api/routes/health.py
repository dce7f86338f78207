# api/routes/health.py
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from core.cache_store import utc_now_iso
from core.service_lifecycle import ServiceContainer

from ..dependencies import get_container

router = APIRouter(tags=["health"])

SERVICES = [
    "Novel Generation API",
    "AI Model Service",
    "Memory System",
    "Callback Handler",
]


@router.get("/health")
async def health(container: ServiceContainer = Depends(get_container)) -> dict[str, Any]:
    """Liveness only; store readiness lives under ``/memory/health``."""
    return {
        "status": "ok",
        "services": SERVICES,
        "uptimeSeconds": round(container.uptime_seconds(), 1),
        "timestamp": utc_now_iso(),
    }
