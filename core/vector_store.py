# core/vector_store.py
"""Namespace-scoped embedding storage on Qdrant.

Each novel gets its own collection (``novel-<novelId>``). Vector ids are
deterministic strings such as ``chapter-3-chunk-0`` or ``character-<id>``;
they are mapped onto UUIDv5 point ids so re-embedding an entity overwrites its
previous vectors. The readable id is kept in the payload under ``vectorId``.

Read paths never raise: a missing embedding service, an absent collection or a
Qdrant outage produce an empty result and a warning.
"""

from __future__ import annotations

import asyncio
import hashlib
import uuid
from typing import Any

import numpy as np
import structlog
from qdrant_client import AsyncQdrantClient
from qdrant_client.http import models as qmodels

from config.settings import GatewaySettings
from core.cache_store import utc_now_iso
from core.http_client_service import EmbeddingServiceClient
from core.text_processing_service import chunk_text

logger = structlog.get_logger(__name__)

CHAPTER_CHUNK_SIZE = 500
CHAPTER_CHUNK_OVERLAP = 50
SIMILAR_CONTENT_TYPES = ["chapter", "character", "location"]


def novel_namespace(novel_id: str) -> str:
    return f"novel-{novel_id}"


def point_id(vector_id: str) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, vector_id))


def chapter_chunk_id(chapter_number: int, chunk_index: int) -> str:
    return f"chapter-{chapter_number}-chunk-{chunk_index}"


def chapter_summary_id(chapter_number: int) -> str:
    return f"chapter-{chapter_number}-summary"


def build_filter(conditions: dict[str, Any] | None) -> qmodels.Filter | None:
    """Translate ``{field: value | {"$eq"|"$ne"|"$in"|"$nin": value}}`` into a Qdrant filter."""
    if not conditions:
        return None

    must: list[qmodels.Condition] = []
    must_not: list[qmodels.Condition] = []
    for key, condition in conditions.items():
        if condition is None:
            continue
        if not isinstance(condition, dict):
            condition = {"$eq": condition}
        for operator, value in condition.items():
            if operator == "$eq":
                must.append(qmodels.FieldCondition(key=key, match=qmodels.MatchValue(value=value)))
            elif operator == "$ne":
                must_not.append(qmodels.FieldCondition(key=key, match=qmodels.MatchValue(value=value)))
            elif operator == "$in":
                must.append(qmodels.FieldCondition(key=key, match=qmodels.MatchAny(any=list(value))))
            elif operator == "$nin":
                must_not.append(qmodels.FieldCondition(key=key, match=qmodels.MatchAny(any=list(value))))
            elif operator == "$gte":
                must.append(qmodels.FieldCondition(key=key, range=qmodels.Range(gte=value)))
            else:
                raise ValueError(f"Unsupported filter operator '{operator}' for field '{key}'")

    return qmodels.Filter(must=must or None, must_not=must_not or None)


def _format_list(values: Any) -> str:
    if isinstance(values, (list, tuple)):
        return ", ".join(str(v) for v in values)
    return str(values) if values else ""


def character_text(character: dict[str, Any]) -> str:
    lines = [
        f"Name: {character.get('name', '')}",
        f"Description: {character.get('description', '')}",
        f"Traits: {_format_list(character.get('traits'))}",
        f"Motivations: {_format_list(character.get('motivations'))}",
        f"Powers: {_format_list(character.get('powers'))}",
        f"Fears: {_format_list(character.get('fears'))}",
        f"Hidden Desires: {_format_list(character.get('hiddenDesires'))}",
    ]
    return "\n".join(line for line in lines if line.split(":", 1)[1].strip())


def location_text(location: dict[str, Any]) -> str:
    lines = [
        f"Name: {location.get('name', '')}",
        f"Description: {location.get('description', '')}",
        f"Geography: {location.get('geography', '')}",
        f"Culture: {location.get('culture', '')}",
        f"Type: {location.get('type', '')}",
    ]
    return "\n".join(line for line in lines if line.split(":", 1)[1].strip())


class QdrantVectorStore:
    """Embed text through the embedding service and store it per novel in Qdrant."""

    def __init__(
        self,
        settings: GatewaySettings,
        embedding_client: EmbeddingServiceClient,
        client: AsyncQdrantClient | None = None,
    ):
        self.url = settings.QDRANT_URL
        self.dimensions = settings.VECTOR_DIMENSIONS
        self._api_key = settings.QDRANT_API_KEY
        self._timeout = settings.VECTOR_TIMEOUT
        self._embedding_client = embedding_client
        self._client = client
        self._known_collections: set[str] = set()
        self._collection_lock = asyncio.Lock()

    async def connect(self) -> bool:
        client = self._get_client()
        try:
            await client.get_collections()
        except Exception as e:
            logger.warning(f"Qdrant not reachable at {self.url}: {e}")
            return False
        logger.info(f"Connected to Qdrant at {self.url}")
        return True

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.close()
            except Exception as e:
                logger.warning(f"Error while closing Qdrant client: {e}")
            finally:
                self._client = None
                self._known_collections.clear()

    def _get_client(self) -> AsyncQdrantClient:
        if self._client is None:
            self._client = AsyncQdrantClient(url=self.url, api_key=self._api_key, timeout=int(self._timeout))
        return self._client

    async def _ensure_collection(self, namespace: str) -> None:
        if namespace in self._known_collections:
            return
        async with self._collection_lock:
            if namespace in self._known_collections:
                return
            client = self._get_client()
            if not await client.collection_exists(namespace):
                await client.create_collection(
                    collection_name=namespace,
                    vectors_config=qmodels.VectorParams(size=self.dimensions, distance=qmodels.Distance.COSINE),
                )
                logger.info(f"Created vector collection {namespace}", dimensions=self.dimensions)
            self._known_collections.add(namespace)

    # ------------------------------------------------------------------
    # Primitive contract
    # ------------------------------------------------------------------

    async def embed(self, text: str, model: str | None = None) -> list[float] | None:
        """Return an embedding, or None when the provider fails or returns a bad vector."""
        if not text or not text.strip():
            return None
        try:
            raw = await self._embedding_client.get_embedding(text, model)
        except Exception as e:
            logger.warning(f"Embedding request failed: {e}")
            return None

        vector = np.asarray(raw, dtype=np.float32)
        if vector.ndim != 1 or vector.size != self.dimensions or not np.all(np.isfinite(vector)):
            logger.warning(
                "Embedding service returned an unusable vector",
                shape=vector.shape,
                expected=self.dimensions,
            )
            return None
        return vector.tolist()

    async def upsert(self, vectors: list[dict[str, Any]], namespace: str) -> bool:
        """Upsert ``[{"id", "values", "metadata"}]`` into ``namespace``."""
        if not vectors:
            return True
        points = [
            qmodels.PointStruct(
                id=point_id(v["id"]),
                vector=v["values"],
                payload={**v.get("metadata", {}), "vectorId": v["id"]},
            )
            for v in vectors
        ]
        try:
            await self._ensure_collection(namespace)
            await self._get_client().upsert(collection_name=namespace, points=points, wait=True)
        except Exception as e:
            logger.error(f"Vector upsert failed: {e}", namespace=namespace, count=len(points))
            return False
        logger.debug(f"Upserted {len(points)} vectors", namespace=namespace)
        return True

    async def query(
        self,
        vector: list[float],
        namespace: str,
        top_k: int = 10,
        filter: dict[str, Any] | None = None,
        include_metadata: bool = True,
    ) -> list[dict[str, Any]]:
        try:
            client = self._get_client()
            if namespace not in self._known_collections and not await client.collection_exists(namespace):
                return []
            response = await client.query_points(
                collection_name=namespace,
                query=vector,
                limit=top_k,
                query_filter=build_filter(filter),
                with_payload=include_metadata,
            )
        except Exception as e:
            logger.warning(f"Vector query failed: {e}", namespace=namespace)
            return []

        matches = []
        for point in response.points:
            payload = dict(point.payload or {})
            matches.append({"id": payload.pop("vectorId", str(point.id)), "score": point.score, "metadata": payload})
        return matches

    async def delete_vectors(self, namespace: str, filter: dict[str, Any] | None = None, ids: list[str] | None = None) -> bool:
        try:
            client = self._get_client()
            if not await client.collection_exists(namespace):
                return True
            if ids:
                selector: qmodels.PointsSelector = qmodels.PointIdsList(points=[point_id(i) for i in ids])
            elif filter:
                selector = qmodels.FilterSelector(filter=build_filter(filter))
            else:
                raise ValueError("delete_vectors requires ids or a filter")
            await client.delete(collection_name=namespace, points_selector=selector, wait=True)
            return True
        except ValueError:
            raise
        except Exception as e:
            logger.error(f"Vector delete failed: {e}", namespace=namespace)
            return False

    async def delete_namespace(self, namespace: str) -> bool:
        try:
            await self._get_client().delete_collection(namespace)
        except Exception as e:
            logger.error(f"Failed to delete vector namespace: {e}", namespace=namespace)
            return False
        self._known_collections.discard(namespace)
        return True

    async def namespace_stats(self, namespace: str) -> dict[str, Any]:
        try:
            client = self._get_client()
            if not await client.collection_exists(namespace):
                return {"namespace": namespace, "vectorCount": 0}
            info = await client.get_collection(namespace)
        except Exception as e:
            logger.warning(f"Failed to read vector namespace stats: {e}", namespace=namespace)
            return {"namespace": namespace, "error": str(e)}
        return {"namespace": namespace, "vectorCount": info.points_count or 0, "status": str(info.status)}

    async def health_check(self) -> dict[str, Any]:
        try:
            collections = await self._get_client().get_collections()
        except Exception as e:
            return {"status": "unhealthy", "error": str(e)}
        return {"status": "healthy", "collections": len(collections.collections)}

    # ------------------------------------------------------------------
    # Entity helpers
    # ------------------------------------------------------------------

    async def store_chapter_content(self, novel_id: str, chapter: dict[str, Any]) -> bool:
        """Embed a chapter's content chunks (plus its summary) and drop stale chunks.

        Returns False when nothing could be embedded or the upsert failed.
        """
        number = int(chapter["number"])
        chunks = chunk_text(chapter.get("content", ""), CHAPTER_CHUNK_SIZE, CHAPTER_CHUNK_OVERLAP)
        base_metadata = {
            "novelId": novel_id,
            "chapterNumber": number,
            "title": chapter.get("title", ""),
            "summary": chapter.get("summary", ""),
            "mood": chapter.get("mood", ""),
            "focusElements": chapter.get("focusElements", ""),
            "createdAt": utc_now_iso(),
        }

        embeddings = await asyncio.gather(*(self.embed(chunk) for chunk in chunks))
        vectors = [
            {
                "id": chapter_chunk_id(number, index),
                "values": embedding,
                "metadata": {**base_metadata, "contentType": "chapter", "content": chunk, "chunkIndex": index},
            }
            for index, (chunk, embedding) in enumerate(zip(chunks, embeddings))
            if embedding is not None
        ]
        skipped = len(chunks) - len(vectors)
        if skipped:
            logger.warning(f"Skipped {skipped} chapter chunks without embeddings", novel_id=novel_id, chapter=number)

        summary = chapter.get("summary")
        expected = len(chunks) + (1 if summary else 0)
        if summary:
            summary_embedding = await self.embed(summary)
            if summary_embedding is not None:
                vectors.append(
                    {
                        "id": chapter_summary_id(number),
                        "values": summary_embedding,
                        "metadata": {**base_metadata, "contentType": "summary", "content": summary},
                    }
                )

        if expected and not vectors:
            return False
        namespace = novel_namespace(novel_id)
        if not await self.upsert(vectors, namespace):
            return False
        await self.delete_vectors(
            namespace,
            filter={"chapterNumber": number, "contentType": "chapter", "chunkIndex": {"$gte": len(chunks)}},
        )
        return True

    async def store_character_info(self, novel_id: str, character: dict[str, Any]) -> bool:
        text = character_text(character)
        embedding = await self.embed(text)
        if embedding is None:
            return False
        vector = {
            "id": f"character-{character['id']}",
            "values": embedding,
            "metadata": {
                "novelId": novel_id,
                "contentType": "character",
                "characterId": character["id"],
                "name": character.get("name", ""),
                "content": text,
                "createdAt": utc_now_iso(),
            },
        }
        return await self.upsert([vector], novel_namespace(novel_id))

    async def store_location_info(self, novel_id: str, location: dict[str, Any]) -> bool:
        text = location_text(location)
        embedding = await self.embed(text)
        if embedding is None:
            return False
        vector = {
            "id": f"location-{location['id']}",
            "values": embedding,
            "metadata": {
                "novelId": novel_id,
                "contentType": "location",
                "locationId": location["id"],
                "name": location.get("name", ""),
                "content": text,
                "createdAt": utc_now_iso(),
            },
        }
        return await self.upsert([vector], novel_namespace(novel_id))

    async def store_document_chunks(
        self,
        novel_id: str,
        chunks: list[str],
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, int]:
        """Embed uploaded document chunks with per-chunk isolation."""
        metadata = metadata or {}
        embeddings = await asyncio.gather(*(self.embed(chunk) for chunk in chunks))
        vectors = []
        for index, (chunk, embedding) in enumerate(zip(chunks, embeddings)):
            if embedding is None:
                continue
            digest = hashlib.sha1(chunk.encode("utf-8")).hexdigest()[:16]
            vectors.append(
                {
                    "id": f"document-{digest}-{index}",
                    "values": embedding,
                    "metadata": {
                        **metadata,
                        "novelId": novel_id,
                        "contentType": "document",
                        "content": chunk,
                        "chunkIndex": index,
                        "createdAt": utc_now_iso(),
                    },
                }
            )
        upserted = len(vectors) if vectors and await self.upsert(vectors, novel_namespace(novel_id)) else 0
        return {"total": len(chunks), "upserted": upserted, "failed": len(chunks) - upserted}

    async def semantic_search(
        self,
        novel_id: str,
        query: str,
        top_k: int = 10,
        chapter_number: int | None = None,
        content_type: str | None = None,
        extra_filter: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        embedding = await self.embed(query)
        if embedding is None:
            return []
        conditions: dict[str, Any] = {"novelId": novel_id}
        if chapter_number is not None:
            conditions["chapterNumber"] = chapter_number
        if content_type:
            conditions["contentType"] = content_type
        conditions.update(extra_filter or {})

        matches = await self.query(embedding, novel_namespace(novel_id), top_k=top_k, filter=conditions)
        return [
            {
                "id": match["id"],
                "score": match["score"],
                "metadata": match["metadata"],
                "content": match["metadata"].get("content", ""),
                "contentType": match["metadata"].get("contentType"),
                "chapterNumber": match["metadata"].get("chapterNumber"),
            }
            for match in matches
        ]

    async def find_similar_content(
        self,
        novel_id: str,
        text: str,
        top_k: int = 5,
        exclude_chapter: int | None = None,
    ) -> list[dict[str, Any]]:
        extra: dict[str, Any] = {"contentType": {"$in": SIMILAR_CONTENT_TYPES}}
        if exclude_chapter is not None:
            extra["chapterNumber"] = {"$ne": exclude_chapter}
        return await self.semantic_search(novel_id, text, top_k=top_k, extra_filter=extra)
