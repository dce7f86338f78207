# api/routes/ai_models.py
"""Direct access to the AI provider client: generate, evaluate, embed, batch."""

from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter, Depends

from core.ai_providers import AIProviderClient
from core.exceptions import ValidationError

from ..dependencies import envelope, get_ai, json_object

router = APIRouter(prefix="/ai-models", tags=["ai-models"])


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _optional_str(body: dict[str, Any], key: str) -> str | None:
    value = body.get(key)
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value


def _options(body: dict[str, Any]) -> dict[str, Any]:
    options = body.get("options") or {}
    if not isinstance(options, dict):
        raise ValidationError("options must be an object")
    return options


@router.post("/generate")
async def generate(body: dict[str, Any] = Depends(json_object), ai: AIProviderClient = Depends(get_ai)) -> dict[str, Any]:
    started = time.monotonic()
    result = await ai.generate(body.get("prompt"), _optional_str(body, "model"), _options(body))
    return envelope(
        data={
            "generatedText": result.content,
            "model": result.model,
            "usage": result.usage,
            "finishReason": result.finish_reason,
            "wordCount": len(result.content.split()),
            "characterCount": len(result.content),
        },
        message="Text generated successfully",
        request_id=_optional_str(body, "requestId"),
        metadata={"processingTime": _elapsed_ms(started), "provider": result.provider},
    )


@router.post("/evaluate")
async def evaluate(body: dict[str, Any] = Depends(json_object), ai: AIProviderClient = Depends(get_ai)) -> dict[str, Any]:
    started = time.monotonic()
    criteria = body.get("criteria")
    if criteria is not None and not (isinstance(criteria, list) and all(isinstance(c, str) for c in criteria)):
        raise ValidationError("criteria must be an array of strings")
    evaluation = await ai.evaluate(body.get("text"), criteria, _optional_str(body, "model"))
    return envelope(
        data=evaluation.model_dump(by_alias=True),
        message="Text evaluated successfully",
        request_id=_optional_str(body, "requestId"),
        metadata={"processingTime": _elapsed_ms(started)},
    )


@router.post("/embed")
async def embed(body: dict[str, Any] = Depends(json_object), ai: AIProviderClient = Depends(get_ai)) -> dict[str, Any]:
    started = time.monotonic()
    text = body.get("text")
    if not text:
        raise ValidationError("Text is required")
    result = await ai.embed(text, _optional_str(body, "model"))
    inputs = [text] if isinstance(text, str) else text
    return envelope(
        data={
            "embeddings": result.embeddings,
            "dimensions": result.dimensions,
            "model": result.model,
            "count": len(result.embeddings),
        },
        message="Embeddings generated successfully",
        request_id=_optional_str(body, "requestId"),
        metadata={
            "processingTime": _elapsed_ms(started),
            "provider": result.provider,
            "inputCount": len(inputs),
            "totalCharacters": sum(len(t) for t in inputs),
        },
    )


@router.post("/batch-generate")
async def batch_generate(
    body: dict[str, Any] = Depends(json_object),
    ai: AIProviderClient = Depends(get_ai),
) -> dict[str, Any]:
    started = time.monotonic()
    result = await ai.batch_generate(body.get("prompts"), _optional_str(body, "model"), _options(body))
    return envelope(
        data=result.model_dump(by_alias=True, exclude_none=True),
        message="Batch generation completed",
        request_id=_optional_str(body, "requestId"),
        metadata={"processingTime": _elapsed_ms(started)},
    )


@router.get("/models")
async def models(ai: AIProviderClient = Depends(get_ai)) -> dict[str, Any]:
    return envelope(data=ai.available_models())


@router.get("/health")
async def ai_health(ai: AIProviderClient = Depends(get_ai)) -> dict[str, Any]:
    return ai.health_check()
