# api/routes/memory.py
"""Memory system endpoints: entity CRUD, search, context and world state.

Write endpoints accept ``?wait=true`` to block until the derived-store jobs
(embeddings, cache copies) have finished.
"""

from __future__ import annotations

import asyncio
from typing import Any, TypeVar

import pydantic
import structlog
from fastapi import APIRouter, Depends, Query

from core.exceptions import NotFoundError, RequestValidationError, ValidationError
from core.job_queue import JobHandle
from core.service_lifecycle import ServiceContainer
from models.novel_models import CamelModel, ChapterInput, CharacterInput, LocationInput, NovelInput
from orchestration.memory_system import MemorySystem, WriteResult

from ..dependencies import envelope, get_container, get_memory, json_object

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/memory", tags=["memory"])

ModelT = TypeVar("ModelT", bound=CamelModel)
WRITE_WAIT_TIMEOUT = 30.0


def parse_model(model: type[ModelT], body: dict[str, Any]) -> ModelT:
    try:
        return model.model_validate(body)
    except pydantic.ValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise RequestValidationError(f"Invalid {model.__name__}", errors=errors) from e


def _positive_int(value: Any, name: str, default: int | None = None) -> int | None:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"{name} must be a positive integer")
    return value


async def _await_jobs(jobs: list[JobHandle], wait: bool) -> None:
    """Honour ``?wait=true``; jobs still running at the deadline are reported with their current status."""
    if not wait:
        return
    try:
        await asyncio.gather(*(handle.wait(WRITE_WAIT_TIMEOUT) for handle in jobs))
    except asyncio.TimeoutError:
        logger.warning(f"Derived-store jobs still running after {WRITE_WAIT_TIMEOUT:.0f}s", jobs=[h.id for h in jobs])


async def _write_response(result: WriteResult, wait: bool, message: str) -> dict[str, Any]:
    await _await_jobs(result.jobs, wait)
    return envelope(data=result.to_response(), message=message)


@router.post("/initialize")
async def initialize(container: ServiceContainer = Depends(get_container)) -> dict[str, Any]:
    if not container.is_started:
        await container.startup()
    return envelope(data=container.describe(), message="Memory system initialized")


@router.get("/health")
async def memory_health(memory: MemorySystem = Depends(get_memory)) -> dict[str, Any]:
    return await memory.get_system_health()


@router.post("/novels")
async def create_novel(
    body: dict[str, Any] = Depends(json_object),
    wait: bool = Query(False),
    memory: MemorySystem = Depends(get_memory),
) -> dict[str, Any]:
    result = await memory.create_novel(parse_model(NovelInput, body))
    return await _write_response(result, wait, "Novel created")


@router.get("/novels/{novel_id}")
async def get_novel(novel_id: str, memory: MemorySystem = Depends(get_memory)) -> dict[str, Any]:
    novel = await memory.get_novel(novel_id)
    if novel is None:
        raise NotFoundError(f"Novel '{novel_id}' not found")
    return envelope(data=novel)


@router.post("/novels/{novel_id}/characters")
async def add_character(
    novel_id: str,
    body: dict[str, Any] = Depends(json_object),
    wait: bool = Query(False),
    memory: MemorySystem = Depends(get_memory),
) -> dict[str, Any]:
    result = await memory.add_character(novel_id, parse_model(CharacterInput, body))
    return await _write_response(result, wait, "Character saved")


@router.get("/novels/{novel_id}/characters/{character_id}")
async def get_character(novel_id: str, character_id: str, memory: MemorySystem = Depends(get_memory)) -> dict[str, Any]:
    character = await memory.get_character(novel_id, character_id)
    if character is None:
        raise NotFoundError(f"Character '{character_id}' not found")
    return envelope(data=character)


@router.post("/novels/{novel_id}/locations")
async def add_location(
    novel_id: str,
    body: dict[str, Any] = Depends(json_object),
    wait: bool = Query(False),
    memory: MemorySystem = Depends(get_memory),
) -> dict[str, Any]:
    result = await memory.add_location(novel_id, parse_model(LocationInput, body))
    return await _write_response(result, wait, "Location saved")


@router.get("/novels/{novel_id}/locations/{location_id}")
async def get_location(novel_id: str, location_id: str, memory: MemorySystem = Depends(get_memory)) -> dict[str, Any]:
    location = await memory.get_location(novel_id, location_id)
    if location is None:
        raise NotFoundError(f"Location '{location_id}' not found")
    return envelope(data=location)


@router.post("/novels/{novel_id}/chapters")
async def add_chapter(
    novel_id: str,
    body: dict[str, Any] = Depends(json_object),
    wait: bool = Query(False),
    memory: MemorySystem = Depends(get_memory),
) -> dict[str, Any]:
    result = await memory.add_chapter(novel_id, parse_model(ChapterInput, body))
    return await _write_response(result, wait, "Chapter saved")


@router.get("/novels/{novel_id}/chapters/{chapter_number}")
async def get_chapter(novel_id: str, chapter_number: int, memory: MemorySystem = Depends(get_memory)) -> dict[str, Any]:
    if chapter_number < 1:
        raise ValidationError("chapterNumber must be a positive integer")
    chapter = await memory.get_chapter(novel_id, chapter_number)
    if chapter is None:
        raise NotFoundError(f"Chapter {chapter_number} not found")
    return envelope(data=chapter)


@router.get("/novels/{novel_id}/chapters")
async def get_chapter_sequence(
    novel_id: str,
    limit: int = Query(10, ge=1, le=100),
    memory: MemorySystem = Depends(get_memory),
) -> dict[str, Any]:
    chapters = await memory.get_chapter_sequence(novel_id, limit)
    return envelope(data=chapters, count=len(chapters))


@router.get("/novels/{novel_id}/chapters/{chapter_number}/characters")
async def get_chapter_characters(
    novel_id: str, chapter_number: int, memory: MemorySystem = Depends(get_memory)
) -> dict[str, Any]:
    characters = await memory.get_chapter_characters(novel_id, chapter_number)
    return envelope(data=characters, count=len(characters))


@router.post("/novels/{novel_id}/chapters/{chapter_number}/characters")
async def link_chapter_characters(
    novel_id: str,
    chapter_number: int,
    body: dict[str, Any] = Depends(json_object),
    memory: MemorySystem = Depends(get_memory),
) -> dict[str, Any]:
    ids = body.get("characterIds")
    if not isinstance(ids, list) or not ids or not all(isinstance(i, str) and i for i in ids):
        raise ValidationError("characterIds must be a non-empty list of ids")
    linked = await memory.link_chapter_characters(novel_id, chapter_number, ids)
    return envelope(data={"linked": linked}, message=f"{len(linked)} characters linked to chapter {chapter_number}")


@router.post("/novels/{novel_id}/relationships")
async def create_relationship(
    novel_id: str,
    body: dict[str, Any] = Depends(json_object),
    memory: MemorySystem = Depends(get_memory),
) -> dict[str, Any]:
    from_id, to_id, rel_type = body.get("fromId"), body.get("toId"), body.get("type")
    if not all(isinstance(v, str) and v for v in (from_id, to_id, rel_type)):
        raise ValidationError("fromId, toId and type are required strings")
    properties = body.get("properties") or {}
    if not isinstance(properties, dict):
        raise ValidationError("properties must be an object")
    relationship = await memory.create_relationship(novel_id, from_id, to_id, rel_type, properties)
    return envelope(data=relationship, message="Relationship saved")


@router.get("/novels/{novel_id}/vectors")
async def get_vector_stats(novel_id: str, memory: MemorySystem = Depends(get_memory)) -> dict[str, Any]:
    return envelope(data=await memory.get_vector_stats(novel_id))


@router.delete("/novels/{novel_id}/vectors")
async def delete_vectors(novel_id: str, memory: MemorySystem = Depends(get_memory)) -> dict[str, Any]:
    return envelope(data=await memory.delete_vectors(novel_id), message="Vector namespace deleted")


@router.post("/novels/{novel_id}/search/semantic")
async def semantic_search(
    novel_id: str,
    body: dict[str, Any] = Depends(json_object),
    memory: MemorySystem = Depends(get_memory),
) -> dict[str, Any]:
    query = body.get("query")
    if not isinstance(query, str) or not query.strip():
        raise ValidationError("Query is required and must be a string")
    options = body.get("options") or {}
    if not isinstance(options, dict):
        raise ValidationError("options must be an object")
    content_type = options.get("contentType")
    results = await memory.semantic_search(
        novel_id,
        query,
        top_k=_positive_int(options.get("topK"), "topK", 10),
        chapter_number=_positive_int(options.get("chapterNumber"), "chapterNumber"),
        content_type=content_type if isinstance(content_type, str) else None,
    )
    return envelope(data=results, count=len(results))


@router.get("/novels/{novel_id}/search/entities")
async def search_entities(
    novel_id: str,
    q: str = Query(..., min_length=1),
    types: str | None = Query(None),
    memory: MemorySystem = Depends(get_memory),
) -> dict[str, Any]:
    entity_types = [t.strip() for t in types.split(",") if t.strip()] if types else None
    results = await memory.search_entities(novel_id, q, entity_types)
    return envelope(data=results, count=len(results))


@router.post("/novels/{novel_id}/search/similar")
async def find_similar(
    novel_id: str,
    body: dict[str, Any] = Depends(json_object),
    memory: MemorySystem = Depends(get_memory),
) -> dict[str, Any]:
    text = body.get("text")
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("Text is required and must be a string")
    options = body.get("options") or {}
    if not isinstance(options, dict):
        raise ValidationError("options must be an object")
    results = await memory.find_similar_content(
        novel_id,
        text,
        top_k=_positive_int(options.get("topK"), "topK", 5),
        exclude_chapter=_positive_int(options.get("excludeChapter"), "excludeChapter"),
    )
    return envelope(data=results, count=len(results))


@router.post("/novels/{novel_id}/context/{chapter_number}")
async def build_context(
    novel_id: str,
    chapter_number: int,
    body: dict[str, Any] = Depends(json_object),
    memory: MemorySystem = Depends(get_memory),
) -> dict[str, Any]:
    if chapter_number < 1:
        raise ValidationError("chapterNumber must be a positive integer")
    focus = body.get("focusElements") or ""
    if not isinstance(focus, str):
        raise ValidationError("focusElements must be a string")
    context = await memory.build_generation_context(novel_id, chapter_number, focus)
    return envelope(data=context.model_dump(by_alias=True))


@router.get("/novels/{novel_id}/worldstate")
async def get_world_state(novel_id: str, memory: MemorySystem = Depends(get_memory)) -> dict[str, Any]:
    return envelope(data=await memory.get_world_state(novel_id))


@router.patch("/novels/{novel_id}/worldstate")
async def update_world_state(
    novel_id: str,
    body: dict[str, Any] = Depends(json_object),
    wait: bool = Query(False),
    memory: MemorySystem = Depends(get_memory),
) -> dict[str, Any]:
    handle = await memory.update_world_state(novel_id, body)
    await _await_jobs([handle], wait)
    return envelope(data={"job": {"id": handle.id, "status": handle.status.value}}, message="World state update queued")


@router.post("/cleanup")
async def cleanup(
    body: dict[str, Any] = Depends(json_object),
    memory: MemorySystem = Depends(get_memory),
) -> dict[str, Any]:
    pattern = body.get("pattern", "temp:*")
    if not isinstance(pattern, str):
        raise ValidationError("pattern must be a string")
    return envelope(data=await memory.cleanup(pattern), message="Cleanup completed")
