import pytest
from qdrant_client import AsyncQdrantClient

from core.vector_store import (
    QdrantVectorStore,
    build_filter,
    character_text,
    chapter_chunk_id,
    novel_namespace,
    point_id,
)
from tests.fakes.fake_settings import make_settings

DIMENSIONS = 4


class KeywordEmbeddingClient:
    """Deterministic embeddings keyed on a few words so similarity is predictable."""

    KEYWORDS = ("dragon", "harbor", "forest", "storm")

    def __init__(self, fail: bool = False, dimensions: int = DIMENSIONS):
        self.fail = fail
        self.dimensions = dimensions
        self.calls: list[str] = []

    async def get_embedding(self, text: str, model: str | None = None) -> list[float]:
        self.calls.append(text)
        if self.fail:
            raise ConnectionError("embedding service down")
        lowered = text.lower()
        vector = [1.0 if word in lowered else 0.05 for word in self.KEYWORDS]
        return vector + [0.0] * (self.dimensions - len(vector))


@pytest.fixture
async def qdrant():
    client = AsyncQdrantClient(location=":memory:")
    yield client
    await client.close()


def _store(client, embedder=None) -> QdrantVectorStore:
    return QdrantVectorStore(make_settings(VECTOR_DIMENSIONS=DIMENSIONS), embedder or KeywordEmbeddingClient(), client)


class TestHelpers:
    def test_point_ids_are_stable_uuids(self):
        assert point_id("character-c1") == point_id("character-c1")
        assert point_id("character-c1") != point_id("character-c2")

    def test_namespace_and_chunk_ids(self):
        assert novel_namespace("n-1") == "novel-n-1"
        assert chapter_chunk_id(3, 0) == "chapter-3-chunk-0"

    def test_character_text_skips_empty_fields(self):
        text = character_text({"name": "Ayla", "traits": ["brave", "curious"], "fears": []})
        assert text == "Name: Ayla\nTraits: brave, curious"

    def test_filter_translation(self):
        qfilter = build_filter({"novelId": "n-1", "chapterNumber": {"$ne": 2}, "contentType": {"$in": ["chapter"]}})
        assert len(qfilter.must) == 2
        assert len(qfilter.must_not) == 1
        assert build_filter(None) is None

    def test_unknown_filter_operator_rejected(self):
        with pytest.raises(ValueError):
            build_filter({"x": {"$regex": "a"}})


@pytest.mark.asyncio
class TestQdrantVectorStore:
    async def test_chapter_chunks_are_searchable_and_scoped(self, qdrant):
        store = _store(qdrant)
        chapter = {"number": 1, "title": "Arrival", "content": "The dragon circled the harbor at dawn.", "summary": ""}

        assert await store.store_chapter_content("n-1", chapter) is True

        results = await store.semantic_search("n-1", "dragon", top_k=5)
        assert results[0]["id"] == "chapter-1-chunk-0"
        assert results[0]["contentType"] == "chapter"
        assert results[0]["chapterNumber"] == 1
        assert await store.semantic_search("n-2", "dragon") == []

    async def test_re_embedding_overwrites_and_drops_stale_chunks(self, qdrant):
        store = _store(qdrant)
        long_content = ("The storm broke over the forest. " * 40).strip()
        await store.store_chapter_content("n-1", {"number": 2, "content": long_content})
        first = await store.namespace_stats("novel-n-1")

        await store.store_chapter_content("n-1", {"number": 2, "content": "Short storm."})
        second = await store.namespace_stats("novel-n-1")

        assert first["vectorCount"] > 1
        assert second["vectorCount"] == 1

    async def test_find_similar_excludes_chapter_and_documents(self, qdrant):
        store = _store(qdrant)
        await store.store_chapter_content("n-1", {"number": 1, "content": "A dragon in chapter one."})
        await store.store_chapter_content("n-1", {"number": 2, "content": "A dragon in chapter two."})
        await store.store_character_info("n-1", {"id": "c-1", "name": "Dragon rider"})
        await store.store_document_chunks("n-1", ["dragon lore from the appendix"])

        results = await store.find_similar_content("n-1", "dragon", top_k=10, exclude_chapter=2)

        ids = {r["id"] for r in results}
        assert "chapter-1-chunk-0" in ids
        assert "character-c-1" in ids
        assert "chapter-2-chunk-0" not in ids
        assert all(r["contentType"] != "document" for r in results)

    async def test_embedding_outage_degrades_to_false_and_empty(self, qdrant):
        store = _store(qdrant, KeywordEmbeddingClient(fail=True))

        assert await store.store_character_info("n-1", {"id": "c-1", "name": "Ayla"}) is False
        assert await store.semantic_search("n-1", "anything") == []
        stats = await store.store_document_chunks("n-1", ["a", "b"])
        assert stats == {"total": 2, "upserted": 0, "failed": 2}

    async def test_wrong_dimension_vectors_are_rejected(self, qdrant):
        store = _store(qdrant, KeywordEmbeddingClient(dimensions=8))
        assert await store.embed("dragon") is None

    async def test_search_on_missing_namespace_is_empty(self, qdrant):
        assert await _store(qdrant).query([1.0, 0, 0, 0], "novel-none") == []

    async def test_document_chunks_carry_metadata(self, qdrant):
        store = _store(qdrant)
        stats = await store.store_document_chunks("n-1", ["harbor notes", "forest notes"], {"source": "upload"})

        assert stats == {"total": 2, "upserted": 2, "failed": 0}
        results = await store.semantic_search("n-1", "harbor", content_type="document")
        assert results[0]["metadata"]["source"] == "upload"
        assert results[0]["content"] == "harbor notes"
