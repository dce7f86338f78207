# api/routes/generation.py
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from orchestration.novel_orchestrator import NovelOrchestrator

from ..dependencies import envelope, get_orchestrator, json_body

router = APIRouter(tags=["generation"])


@router.post("/novel-generation")
async def novel_generation(
    body: Any = Depends(json_body),
    orchestrator: NovelOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    outcome = await orchestrator.handle_generation(body)
    return envelope(
        data=outcome["result"],
        message="Novel generation completed successfully",
        request_id=outcome["requestId"],
        metadata={"mode": orchestrator.settings.ORCHESTRATION_MODE},
    )


@router.get("/novel-generation/status/{request_id}")
async def novel_generation_status(
    request_id: str, orchestrator: NovelOrchestrator = Depends(get_orchestrator)
) -> dict[str, Any]:
    return envelope(data=await orchestrator.get_generation_status(request_id), request_id=request_id)


@router.post("/novel-upload")
async def novel_upload(
    body: Any = Depends(json_body),
    orchestrator: NovelOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    outcome = await orchestrator.handle_upload(body)
    return envelope(
        data=outcome["result"],
        message="Novel upload processed",
        request_id=outcome["requestId"],
    )


@router.get("/novel-generation/health")
async def novel_generation_health(orchestrator: NovelOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return {
        "service": "Novel Generation API",
        "status": "healthy",
        "orchestration": orchestrator.health(),
        "endpoints": [
            "POST /novel-generation",
            "GET /novel-generation/status/{requestId}",
            "POST /novel-upload",
            "GET /novel-generation/health",
        ],
    }
