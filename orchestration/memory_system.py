# orchestration/memory_system.py
"""Single facade over the graph, vector and cache stores.

Authoritative writes go to the graph synchronously. Derived copies (embeddings
and cache entries) are applied by background jobs registered here, so an
entity is readable by id immediately but only searchable once its embedding
job has finished. Reads are cache-first, fall back to the graph and backfill
the cache.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import structlog

from core.cache_store import (
    RedisCacheStore,
    chapter_key,
    character_key,
    events_channel,
    location_key,
    utc_now_iso,
)
from core.exceptions import DependencyUnavailableError, NotFoundError, ValidationError
from core.job_queue import (
    EMBEDDING_QUEUE,
    UPDATE_EMBEDDINGS,
    UPDATE_WORLD_STATE,
    WORLD_STATE_QUEUE,
    Job,
    JobHandle,
    JobQueue,
)
from core.vector_store import QdrantVectorStore, novel_namespace
from data_access.graph_store import GraphStore
from models.context_models import GenerationContext
from models.novel_models import ChapterInput, CharacterInput, LocationInput, NovelInput

logger = structlog.get_logger(__name__)

REQUEST_STATUS_TTL = 3600


@dataclass
class WriteResult:
    """Authoritative record plus the background jobs that derive the other copies."""

    entity: dict[str, Any]
    jobs: list[JobHandle] = field(default_factory=list)

    async def wait(self, timeout: float | None = None) -> list[Job]:
        return list(await asyncio.gather(*(handle.wait(timeout) for handle in self.jobs)))

    def to_response(self) -> dict[str, Any]:
        return {"entity": self.entity, "jobs": [{"id": h.id, "status": h.status.value} for h in self.jobs]}


class MemorySystem:
    def __init__(
        self,
        graph: GraphStore,
        vectors: QdrantVectorStore,
        cache: RedisCacheStore,
        queue: JobQueue,
        similar_top_k: int = 5,
        embedding_concurrency: int | None = None,
        world_state_concurrency: int = 1,
    ):
        self.graph = graph
        self.vectors = vectors
        self.cache = cache
        self.queue = queue
        self.similar_top_k = similar_top_k
        self._embedding_concurrency = embedding_concurrency
        self._world_state_concurrency = world_state_concurrency
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> dict[str, bool]:
        """Connect all stores concurrently, bootstrap the schema and start job processing.

        Store failures are logged and leave the service running in degraded mode.
        """
        if self._initialized:
            return {}
        graph_ok, cache_ok, vector_ok = await asyncio.gather(
            self._connect_graph(),
            self.cache.connect(),
            self.vectors.connect(),
        )
        if graph_ok:
            try:
                await self.graph.db.create_db_schema()
            except Exception as e:
                logger.warning(f"Schema bootstrap failed: {e}")

        self.queue.register_processor(
            EMBEDDING_QUEUE, UPDATE_EMBEDDINGS, self._process_embedding_job, self._embedding_concurrency
        )
        self.queue.register_processor(
            WORLD_STATE_QUEUE, UPDATE_WORLD_STATE, self._process_world_state_job, self._world_state_concurrency
        )
        await self.queue.start()
        self._initialized = True
        status = {"graph": graph_ok, "cache": bool(cache_ok), "vector": bool(vector_ok)}
        logger.info("Memory system initialized", **status)
        return status

    async def _connect_graph(self) -> bool:
        try:
            await self.graph.db.connect()
            return True
        except Exception as e:
            logger.warning(f"Graph store unavailable at startup, continuing degraded: {e}")
            return False

    async def shutdown(self) -> None:
        await self.queue.stop()
        await asyncio.gather(self.graph.db.close(), self.cache.close(), self.vectors.close())
        self._initialized = False
        logger.info("Memory system shut down.")

    # ------------------------------------------------------------------
    # Background processors
    # ------------------------------------------------------------------

    async def _process_embedding_job(self, job: Job) -> dict[str, Any]:
        payload = job.payload
        novel_id = payload["novelId"]
        content_type = payload["contentType"]
        data = payload["data"]

        if content_type == "character":
            await self.cache.cache_entity(character_key(novel_id, data["id"]), data)
            stored = await self.vectors.store_character_info(novel_id, data)
        elif content_type == "location":
            await self.cache.cache_entity(location_key(novel_id, data["id"]), data)
            stored = await self.vectors.store_location_info(novel_id, data)
        elif content_type == "chapter":
            await self.cache.cache_chapter(novel_id, int(data["number"]), data)
            stored = await self.vectors.store_chapter_content(novel_id, data)
        else:
            raise ValueError(f"Unknown embedding content type '{content_type}'")

        if not stored:
            raise DependencyUnavailableError(
                f"Embedding for {content_type} {payload.get('entityId')} was not stored",
                details={"novel_id": novel_id, "content_type": content_type},
            )
        result = {"contentType": content_type, "entityId": payload.get("entityId")}
        await self.cache.publish(events_channel(novel_id), {"event": "embedding-updated", **result})
        return result

    async def _process_world_state_job(self, job: Job) -> dict[str, Any]:
        novel_id = job.payload["novelId"]
        merged = await self.graph.upsert_world_state(novel_id, job.payload["updates"])
        await self.cache.cache_world_state(novel_id, merged)
        event = {"event": "world-state-updated", "keys": sorted(job.payload["updates"])}
        await self.cache.publish(events_channel(novel_id), event)
        return merged

    async def _enqueue_embedding(self, novel_id: str, content_type: str, entity_id: str, data: dict[str, Any]) -> JobHandle:
        return await self.queue.enqueue(
            EMBEDDING_QUEUE,
            UPDATE_EMBEDDINGS,
            {"novelId": novel_id, "contentType": content_type, "entityId": entity_id, "data": data},
        )

    # ------------------------------------------------------------------
    # Novels and world state
    # ------------------------------------------------------------------

    async def create_novel(self, novel: NovelInput) -> WriteResult:
        record = await self.graph.upsert_novel(novel)
        initial_state = {
            "title": novel.title,
            "currentChapter": 0,
            "totalChapters": 0,
            "activeCharacters": [],
            "plotStatus": "beginning",
        }
        handle = await self.update_world_state(novel.id, initial_state)
        return WriteResult(record, [handle])

    async def get_novel(self, novel_id: str) -> dict[str, Any] | None:
        return await self.graph.get_novel(novel_id)

    async def _require_novel(self, novel_id: str) -> dict[str, Any]:
        novel = await self.graph.get_novel(novel_id)
        if novel is None:
            raise NotFoundError(f"Novel '{novel_id}' does not exist", details={"novel_id": novel_id})
        return novel

    async def update_world_state(self, novel_id: str, updates: dict[str, Any]) -> JobHandle:
        """Queue a shallow overlay of ``updates``; graph first, then the cache projection.

        Raises ``NotFoundError`` before anything is queued when the novel does not exist.
        """
        if not isinstance(updates, dict) or not updates:
            raise ValidationError("World state updates must be a non-empty object")
        await self._require_novel(novel_id)
        payload = {"novelId": novel_id, "updates": updates}
        return await self.queue.enqueue(WORLD_STATE_QUEUE, UPDATE_WORLD_STATE, payload)

    async def get_world_state(self, novel_id: str) -> dict[str, Any]:
        cached = await self.cache.get_world_state(novel_id)
        if cached is not None:
            return cached
        state = await self.graph.get_world_state(novel_id)
        if state:
            await self.cache.cache_world_state(novel_id, state)
        return state or {}

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    async def add_character(self, novel_id: str, character: CharacterInput) -> WriteResult:
        record = await self.graph.upsert_character(novel_id, character)
        await self.cache.delete(character_key(novel_id, character.id))
        handle = await self._enqueue_embedding(novel_id, "character", character.id, record)
        return WriteResult(record, [handle])

    async def get_character(self, novel_id: str, character_id: str) -> dict[str, Any] | None:
        key = character_key(novel_id, character_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached
        record = await self.graph.get_character(novel_id, character_id)
        if record:
            await self.cache.cache_entity(key, record)
        return record

    async def add_location(self, novel_id: str, location: LocationInput) -> WriteResult:
        record = await self.graph.upsert_location(novel_id, location)
        await self.cache.delete(location_key(novel_id, location.id))
        handle = await self._enqueue_embedding(novel_id, "location", location.id, record)
        return WriteResult(record, [handle])

    async def get_location(self, novel_id: str, location_id: str) -> dict[str, Any] | None:
        key = location_key(novel_id, location_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached
        record = await self.graph.get_location(novel_id, location_id)
        if record:
            await self.cache.cache_entity(key, record)
        return record

    async def add_chapter(self, novel_id: str, chapter: ChapterInput) -> WriteResult:
        record = await self.graph.upsert_chapter(novel_id, chapter)
        await self.cache.delete(chapter_key(novel_id, chapter.number))
        embedding_job = await self._enqueue_embedding(novel_id, "chapter", str(chapter.number), record)
        world_state_job = await self.update_world_state(
            novel_id,
            {"currentChapter": chapter.number, "lastChapterTitle": record.get("title", ""), "lastChapterAt": utc_now_iso()},
        )
        return WriteResult(record, [embedding_job, world_state_job])

    async def get_chapter(self, novel_id: str, chapter_number: int) -> dict[str, Any] | None:
        cached = await self.cache.get_chapter(novel_id, chapter_number)
        if cached is not None:
            return cached
        record = await self.graph.get_chapter(novel_id, chapter_number)
        if record:
            await self.cache.cache_chapter(novel_id, chapter_number, record)
        return record

    async def get_chapter_sequence(self, novel_id: str, limit: int = 10) -> list[dict[str, Any]]:
        return await self.graph.get_chapter_sequence(novel_id, limit)

    async def get_chapter_characters(self, novel_id: str, chapter_number: int) -> list[dict[str, Any]]:
        return await self.graph.get_chapter_characters(novel_id, chapter_number)

    async def link_chapter_characters(self, novel_id: str, chapter_number: int, character_ids: list[str]) -> list[str]:
        """Mark characters as featured in a chapter; ids the novel does not know are skipped."""
        if await self.graph.get_chapter(novel_id, chapter_number) is None:
            raise NotFoundError(
                f"Chapter {chapter_number} of novel '{novel_id}' does not exist",
                details={"novel_id": novel_id, "chapter_number": chapter_number},
            )
        return await self.graph.link_chapter_characters(novel_id, chapter_number, character_ids)

    async def create_relationship(
        self,
        novel_id: str,
        from_id: str,
        to_id: str,
        relationship_type: str,
        properties: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        await self._require_novel(novel_id)
        if not await self.graph.create_relationship(from_id, to_id, relationship_type, properties):
            raise NotFoundError(
                f"Cannot relate '{from_id}' to '{to_id}': one of them does not exist",
                details={"novel_id": novel_id, "from_id": from_id, "to_id": to_id},
            )
        logger.info(f"Related {from_id} -[{relationship_type.upper()}]-> {to_id}", novel_id=novel_id)
        return {"fromId": from_id, "toId": to_id, "type": relationship_type.upper(), "properties": properties or {}}

    # ------------------------------------------------------------------
    # Search and context
    # ------------------------------------------------------------------

    async def search_entities(self, novel_id: str, text: str, types: list[str] | None = None) -> list[dict[str, Any]]:
        if not text or not text.strip():
            raise ValidationError("Search text is required")
        return await self.graph.search_entities(novel_id, text.strip(), types)

    async def semantic_search(
        self,
        novel_id: str,
        query: str,
        top_k: int = 10,
        chapter_number: int | None = None,
        content_type: str | None = None,
    ) -> list[dict[str, Any]]:
        if not query or not query.strip():
            raise ValidationError("Search query is required")
        return await self.vectors.semantic_search(
            novel_id, query, top_k=top_k, chapter_number=chapter_number, content_type=content_type
        )

    async def find_similar_content(
        self,
        novel_id: str,
        text: str,
        top_k: int = 5,
        exclude_chapter: int | None = None,
    ) -> list[dict[str, Any]]:
        return await self.vectors.find_similar_content(novel_id, text, top_k=top_k, exclude_chapter=exclude_chapter)

    async def build_generation_context(
        self,
        novel_id: str,
        chapter_number: int,
        focus_elements: str = "",
    ) -> GenerationContext:
        """Gather everything a chapter prompt needs, issuing independent reads concurrently."""

        async def previous_chapter() -> dict[str, Any] | None:
            if chapter_number <= 1:
                return None
            return await self.get_chapter(novel_id, chapter_number - 1)

        query = f"{focus_elements} chapter {chapter_number}".strip()
        graph_context, previous, world_state, similar = await asyncio.gather(
            self.graph.get_context(novel_id),
            previous_chapter(),
            self.get_world_state(novel_id),
            self.vectors.find_similar_content(novel_id, query, top_k=self.similar_top_k, exclude_chapter=chapter_number),
        )
        return GenerationContext(
            novel_id=novel_id,
            chapter_number=chapter_number,
            novel=graph_context.get("novel") or {},
            characters=graph_context.get("characters") or [],
            locations=graph_context.get("locations") or [],
            world_state=world_state or graph_context.get("worldState") or {},
            previous_chapter=previous or {},
            similar_content=similar or [],
            focus_elements=focus_elements,
        )

    async def ingest_document(
        self,
        novel_id: str,
        chunks: list[str],
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        await self._require_novel(novel_id)
        stats = await self.vectors.store_document_chunks(novel_id, chunks, metadata)
        if stats["total"] and not stats["upserted"]:
            raise DependencyUnavailableError(
                "No document chunks could be embedded",
                details={"novel_id": novel_id, "chunks": stats["total"]},
            )
        logger.info("Document ingested", novel_id=novel_id, **stats)
        return stats

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def get_system_health(self) -> dict[str, Any]:
        graph_health, cache_health, vector_health, cache_stats = await asyncio.gather(
            self.graph.db.health_check(),
            self.cache.health_check(),
            self.vectors.health_check(),
            self.cache.stats(),
        )
        components = {"graph": graph_health, "cache": cache_health, "vector": vector_health}
        healthy = all(c.get("status") == "healthy" for c in components.values())
        return {
            "status": "healthy" if healthy else "degraded",
            "components": components,
            "queue": self.queue.get_statistics(),
            "cache": cache_stats,
            "timestamp": utc_now_iso(),
        }

    async def cleanup(self, pattern: str = "temp:*") -> dict[str, Any]:
        if not pattern.startswith(("temp:", "session:")):
            raise ValidationError("Cleanup is limited to temp: and session: keys")
        removed = await self.cache.cleanup(pattern)
        return {"pattern": pattern, "removedKeys": removed}

    async def get_vector_stats(self, novel_id: str) -> dict[str, Any]:
        return await self.vectors.namespace_stats(novel_namespace(novel_id))

    async def delete_vectors(self, novel_id: str) -> dict[str, Any]:
        """Drop every embedding of a novel; graph records are untouched and can be re-embedded."""
        namespace = novel_namespace(novel_id)
        if not await self.vectors.delete_namespace(namespace):
            raise DependencyUnavailableError(
                f"Vector namespace '{namespace}' could not be deleted", details={"novel_id": novel_id}
            )
        logger.info("Vector namespace deleted", novel_id=novel_id, namespace=namespace)
        return {"novelId": novel_id, "namespace": namespace, "deleted": True}

    # ------------------------------------------------------------------
    # Request tracking
    # ------------------------------------------------------------------

    async def record_request_status(self, request_id: str, status: str, **fields: Any) -> bool:
        record = {"requestId": request_id, "status": status, "updatedAt": utc_now_iso(), **fields}
        return await self.cache.set_session(request_id, record, ttl=REQUEST_STATUS_TTL)

    async def get_request_status(self, request_id: str) -> dict[str, Any] | None:
        return await self.cache.get_session(request_id)
