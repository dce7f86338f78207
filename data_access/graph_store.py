# data_access/graph_store.py
"""Authoritative novel storage in Neo4j.

Writes are merge-by-key upserts that also maintain the ownership relation to the
novel. Every write starts with ``MATCH (n:Novel {id: $novel_id})``: when the novel
is missing the query returns no rows and the write is rejected with
:class:`OrphanEntityError`. Read and write failures are raised to the caller.

Neo4j properties cannot hold maps or lists of maps, so such values are stored
JSON-encoded under ``<key>__json`` and decoded on the way out.
"""

from __future__ import annotations

import json
import re
from typing import Any

import structlog

from core.cache_store import utc_now_iso
from core.db_manager import Neo4jManager
from core.exceptions import OrphanEntityError, ValidationError, handle_database_error
from models.novel_models import ChapterInput, CharacterInput, LocationInput, NovelInput

logger = structlog.get_logger(__name__)

JSON_SUFFIX = "__json"
CONTEXT_CHARACTER_LIMIT = 20
CONTEXT_LOCATION_LIMIT = 10
SEARCH_RESULT_LIMIT = 20
SEARCHABLE_LABELS = {"character": "Character", "location": "Location", "chapter": "Chapter"}
_RELATIONSHIP_TYPE_RE = re.compile(r"^[A-Z][A-Z0-9_]{0,49}$")


def _is_storable(value: Any) -> bool:
    if value is None or isinstance(value, (str, int, float, bool)):
        return True
    if isinstance(value, list):
        return all(isinstance(v, str) for v in value) or all(
            isinstance(v, (int, float)) and not isinstance(v, bool) for v in value
        )
    return False


def encode_properties(record: dict[str, Any]) -> dict[str, Any]:
    """Make a free-form record storable as node properties.

    Primitive values and homogeneous primitive lists are stored as-is; anything
    else goes to ``<key>__json``. The sibling key is nulled so a value that
    changes shape does not leave a stale copy behind.
    """
    encoded: dict[str, Any] = {}
    for key, value in record.items():
        if _is_storable(value):
            encoded[key] = value
            encoded[f"{key}{JSON_SUFFIX}"] = None
        else:
            encoded[key] = None
            encoded[f"{key}{JSON_SUFFIX}"] = json.dumps(value, default=str)
    return encoded


def decode_properties(props: dict[str, Any] | None) -> dict[str, Any]:
    if not props:
        return {}
    decoded: dict[str, Any] = {}
    for key, value in props.items():
        if value is None:
            continue
        if key.endswith(JSON_SUFFIX):
            try:
                decoded[key[: -len(JSON_SUFFIX)]] = json.loads(value)
            except (TypeError, json.JSONDecodeError):
                logger.warning(f"Undecodable JSON property '{key}' skipped")
        else:
            decoded.setdefault(key, value)
    return decoded


UPSERT_NOVEL = """
MERGE (n:Novel {id: $novel_id})
ON CREATE SET n.createdAt = $now
SET n.title = $title,
    n.description = $description,
    n.genre = $genre,
    n.author = $author,
    n.status = $status,
    n.updatedAt = $now
RETURN n {.*} AS novel
"""

UPSERT_CHARACTER = """
MATCH (n:Novel {id: $novel_id})
MERGE (c:Character {id: $character_id})
ON CREATE SET c.createdAt = $now
SET c += $props,
    c.novelId = $novel_id,
    c.updatedAt = $now
MERGE (n)-[:HAS_CHARACTER]->(c)
RETURN c {.*} AS character
"""

UPSERT_LOCATION = """
MATCH (n:Novel {id: $novel_id})
MERGE (l:Location {id: $location_id})
ON CREATE SET l.createdAt = $now
SET l += $props,
    l.novelId = $novel_id,
    l.updatedAt = $now
MERGE (n)-[:HAS_LOCATION]->(l)
RETURN l {.*} AS location
"""

UPSERT_CHAPTER = """
MATCH (n:Novel {id: $novel_id})
MERGE (ch:Chapter {novelId: $novel_id, number: $number})
ON CREATE SET ch.createdAt = $now
SET ch.title = $title,
    ch.content = $content,
    ch.summary = $summary,
    ch.wordCount = $word_count,
    ch.status = $status,
    ch.focusElements = $focus_elements,
    ch.mood = $mood,
    ch.stylePreference = $style_preference,
    ch.updatedAt = $now
MERGE (n)-[:HAS_CHAPTER]->(ch)
RETURN ch {.*} AS chapter
"""

UPSERT_WORLD_STATE = """
MATCH (n:Novel {id: $novel_id})
MERGE (n)-[:HAS_WORLD_STATE]->(ws:WorldState)
ON CREATE SET ws.createdAt = $now
SET ws += $props,
    ws.novelId = $novel_id,
    ws.updatedAt = $now
RETURN ws {.*} AS world_state
"""

GET_CONTEXT = """
MATCH (n:Novel {id: $novel_id})
OPTIONAL MATCH (n)-[:HAS_CHARACTER]->(c:Character)
WITH n, collect(DISTINCT c {.*})[0..$character_limit] AS characters
OPTIONAL MATCH (n)-[:HAS_LOCATION]->(l:Location)
WITH n, characters, collect(DISTINCT l {.*})[0..$location_limit] AS locations
OPTIONAL MATCH (n)-[:HAS_CHAPTER]->(ch:Chapter)
WHERE $chapter_number IS NULL OR ch.number = $chapter_number
WITH n, characters, locations, collect(DISTINCT ch {.*}) AS chapters
OPTIONAL MATCH (n)-[:HAS_WORLD_STATE]->(ws:WorldState)
RETURN n {.*} AS novel, characters, locations, chapters, ws {.*} AS world_state
"""


class GraphStore:
    """Cypher operations for novels and the entities they own."""

    def __init__(self, db: Neo4jManager):
        self.db = db

    async def _write(self, operation: str, query: str, params: dict[str, Any], **context: Any) -> list[dict[str, Any]]:
        try:
            return await self.db.execute_write_query(query, params)
        except Exception as e:
            logger.error(f"Neo4j: {operation} failed: {e}", exc_info=True, **context)
            raise handle_database_error(operation, e, **context) from e

    async def _read(self, operation: str, query: str, params: dict[str, Any], **context: Any) -> list[dict[str, Any]]:
        try:
            return await self.db.execute_read_query(query, params)
        except Exception as e:
            logger.error(f"Neo4j: {operation} failed: {e}", exc_info=True, **context)
            raise handle_database_error(operation, e, **context) from e

    @staticmethod
    def _require_novel(rows: list[dict[str, Any]], novel_id: str, entity: str) -> None:
        if not rows:
            raise OrphanEntityError(
                f"Cannot write {entity}: novel '{novel_id}' does not exist",
                details={"novel_id": novel_id, "entity": entity},
            )

    # ------------------------------------------------------------------
    # Upserts
    # ------------------------------------------------------------------

    async def upsert_novel(self, novel: NovelInput) -> dict[str, Any]:
        params = {
            "novel_id": novel.id,
            "title": novel.title,
            "description": novel.description,
            "genre": novel.genre,
            "author": novel.author,
            "status": novel.status,
            "now": utc_now_iso(),
        }
        rows = await self._write("upsert_novel", UPSERT_NOVEL, params, novel_id=novel.id)
        logger.info(f"Neo4j: upserted novel {novel.id}", title=novel.title)
        return decode_properties(rows[0]["novel"]) if rows else {}

    async def upsert_character(self, novel_id: str, character: CharacterInput) -> dict[str, Any]:
        props = encode_properties(character.model_dump(by_alias=True, exclude={"id"}))
        params = {"novel_id": novel_id, "character_id": character.id, "props": props, "now": utc_now_iso()}
        rows = await self._write("upsert_character", UPSERT_CHARACTER, params, novel_id=novel_id, character_id=character.id)
        self._require_novel(rows, novel_id, "character")
        logger.info(f"Neo4j: upserted character {character.id}", novel_id=novel_id, name=character.name)
        return decode_properties(rows[0]["character"])

    async def upsert_location(self, novel_id: str, location: LocationInput) -> dict[str, Any]:
        props = encode_properties(location.model_dump(by_alias=True, exclude={"id"}))
        params = {"novel_id": novel_id, "location_id": location.id, "props": props, "now": utc_now_iso()}
        rows = await self._write("upsert_location", UPSERT_LOCATION, params, novel_id=novel_id, location_id=location.id)
        self._require_novel(rows, novel_id, "location")
        logger.info(f"Neo4j: upserted location {location.id}", novel_id=novel_id, name=location.name)
        return decode_properties(rows[0]["location"])

    async def upsert_chapter(self, novel_id: str, chapter: ChapterInput) -> dict[str, Any]:
        params = {
            "novel_id": novel_id,
            "number": chapter.number,
            "title": chapter.resolved_title(),
            "content": chapter.content,
            "summary": chapter.summary,
            "word_count": chapter.word_count,
            "status": chapter.status,
            "focus_elements": chapter.focus_elements,
            "mood": chapter.mood,
            "style_preference": chapter.style_preference,
            "now": utc_now_iso(),
        }
        rows = await self._write("upsert_chapter", UPSERT_CHAPTER, params, novel_id=novel_id, chapter=chapter.number)
        self._require_novel(rows, novel_id, "chapter")
        logger.info(f"Neo4j: upserted chapter {chapter.number}", novel_id=novel_id, word_count=chapter.word_count)
        return decode_properties(rows[0]["chapter"])

    async def upsert_world_state(self, novel_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        """Overlay ``updates`` onto the novel's world state (last writer wins per key)."""
        reserved = {"novelId", "createdAt", "updatedAt"}
        props = encode_properties({k: v for k, v in updates.items() if k not in reserved})
        params = {"novel_id": novel_id, "props": props, "now": utc_now_iso()}
        rows = await self._write("upsert_world_state", UPSERT_WORLD_STATE, params, novel_id=novel_id)
        self._require_novel(rows, novel_id, "world state")
        return decode_properties(rows[0]["world_state"])

    async def create_relationship(
        self,
        from_id: str,
        to_id: str,
        relationship_type: str,
        properties: dict[str, Any] | None = None,
    ) -> bool:
        rel_type = relationship_type.upper()
        if not _RELATIONSHIP_TYPE_RE.match(rel_type):
            raise ValidationError(f"Invalid relationship type '{relationship_type}'")
        query = f"""
        MATCH (a {{id: $from_id}}), (b {{id: $to_id}})
        MERGE (a)-[r:{rel_type}]->(b)
        SET r += $props
        RETURN type(r) AS type
        """
        rows = await self._write(
            "create_relationship",
            query,
            {"from_id": from_id, "to_id": to_id, "props": encode_properties(properties or {})},
            from_id=from_id,
            to_id=to_id,
        )
        return bool(rows)

    async def link_chapter_characters(self, novel_id: str, chapter_number: int, character_ids: list[str]) -> list[str]:
        """Add FEATURES edges from a chapter to characters of the same novel. Returns the ids linked."""
        if not character_ids:
            return []
        rows = await self._write(
            "link_chapter_characters",
            """
            MATCH (n:Novel {id: $novel_id})-[:HAS_CHAPTER]->(ch:Chapter {number: $number})
            UNWIND $character_ids AS character_id
            MATCH (n)-[:HAS_CHARACTER]->(c:Character {id: character_id})
            MERGE (ch)-[:FEATURES]->(c)
            RETURN c.id AS id
            """,
            {"novel_id": novel_id, "number": chapter_number, "character_ids": list(dict.fromkeys(character_ids))},
            novel_id=novel_id,
            chapter=chapter_number,
        )
        return [row["id"] for row in rows]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_context(self, novel_id: str, chapter_number: int | None = None) -> dict[str, Any]:
        """Return the novel with at most 20 characters and 10 locations.

        Chapters are limited to ``chapter_number`` when given. Missing parts are
        empty values; an unknown novel yields ``novel == {}``.
        """
        params = {
            "novel_id": novel_id,
            "chapter_number": chapter_number,
            "character_limit": CONTEXT_CHARACTER_LIMIT,
            "location_limit": CONTEXT_LOCATION_LIMIT,
        }
        rows = await self._read("get_context", GET_CONTEXT, params, novel_id=novel_id)
        if not rows:
            return {"novel": {}, "characters": [], "locations": [], "chapters": [], "worldState": {}}
        row = rows[0]
        return {
            "novel": decode_properties(row.get("novel")),
            "characters": [decode_properties(c) for c in (row.get("characters") or [])][:CONTEXT_CHARACTER_LIMIT],
            "locations": [decode_properties(loc) for loc in (row.get("locations") or [])][:CONTEXT_LOCATION_LIMIT],
            "chapters": [decode_properties(ch) for ch in (row.get("chapters") or [])],
            "worldState": decode_properties(row.get("world_state")),
        }

    async def get_novel(self, novel_id: str) -> dict[str, Any] | None:
        rows = await self._read(
            "get_novel",
            "MATCH (n:Novel {id: $novel_id}) RETURN n {.*} AS novel",
            {"novel_id": novel_id},
            novel_id=novel_id,
        )
        return decode_properties(rows[0]["novel"]) if rows else None

    async def get_character(self, novel_id: str, character_id: str) -> dict[str, Any] | None:
        rows = await self._read(
            "get_character",
            "MATCH (:Novel {id: $novel_id})-[:HAS_CHARACTER]->(c:Character {id: $character_id}) RETURN c {.*} AS character",
            {"novel_id": novel_id, "character_id": character_id},
            novel_id=novel_id,
            character_id=character_id,
        )
        return decode_properties(rows[0]["character"]) if rows else None

    async def get_location(self, novel_id: str, location_id: str) -> dict[str, Any] | None:
        rows = await self._read(
            "get_location",
            "MATCH (:Novel {id: $novel_id})-[:HAS_LOCATION]->(l:Location {id: $location_id}) RETURN l {.*} AS location",
            {"novel_id": novel_id, "location_id": location_id},
            novel_id=novel_id,
            location_id=location_id,
        )
        return decode_properties(rows[0]["location"]) if rows else None

    async def get_chapter(self, novel_id: str, chapter_number: int) -> dict[str, Any] | None:
        rows = await self._read(
            "get_chapter",
            "MATCH (:Novel {id: $novel_id})-[:HAS_CHAPTER]->(ch:Chapter {number: $number}) RETURN ch {.*} AS chapter",
            {"novel_id": novel_id, "number": chapter_number},
            novel_id=novel_id,
            chapter=chapter_number,
        )
        return decode_properties(rows[0]["chapter"]) if rows else None

    async def get_world_state(self, novel_id: str) -> dict[str, Any] | None:
        rows = await self._read(
            "get_world_state",
            "MATCH (:Novel {id: $novel_id})-[:HAS_WORLD_STATE]->(ws:WorldState) RETURN ws {.*} AS world_state",
            {"novel_id": novel_id},
            novel_id=novel_id,
        )
        return decode_properties(rows[0]["world_state"]) if rows else None

    async def get_chapter_sequence(self, novel_id: str, limit: int = 10) -> list[dict[str, Any]]:
        rows = await self._read(
            "get_chapter_sequence",
            """
            MATCH (:Novel {id: $novel_id})-[:HAS_CHAPTER]->(ch:Chapter)
            RETURN ch {.*} AS chapter
            ORDER BY ch.number ASC
            LIMIT $limit
            """,
            {"novel_id": novel_id, "limit": max(1, int(limit))},
            novel_id=novel_id,
        )
        return [decode_properties(row["chapter"]) for row in rows]

    async def get_chapter_characters(self, novel_id: str, chapter_number: int) -> list[dict[str, Any]]:
        rows = await self._read(
            "get_chapter_characters",
            """
            MATCH (:Novel {id: $novel_id})-[:HAS_CHAPTER]->(ch:Chapter {number: $number})
            MATCH (ch)-[:FEATURES]->(c:Character)
            RETURN c {.*} AS character
            """,
            {"novel_id": novel_id, "number": chapter_number},
            novel_id=novel_id,
            chapter=chapter_number,
        )
        return [decode_properties(row["character"]) for row in rows]

    async def search_entities(
        self,
        novel_id: str,
        text: str,
        types: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Case-insensitive substring match over name/description (title/summary for chapters)."""
        wanted = [t.lower() for t in (types or ["character", "location"])]
        unknown = [t for t in wanted if t not in SEARCHABLE_LABELS]
        if unknown:
            raise ValidationError(f"Unsupported entity types: {', '.join(unknown)}")
        labels = [SEARCHABLE_LABELS[t] for t in wanted]
        query = """
        MATCH (n:Novel {id: $novel_id})-[r]->(e)
        WHERE type(r) IN ['HAS_CHARACTER', 'HAS_LOCATION', 'HAS_CHAPTER']
          AND any(label IN labels(e) WHERE label IN $labels)
          AND (
            toLower(coalesce(e.name, e.title, '')) CONTAINS toLower($text)
            OR toLower(coalesce(e.description, e.summary, '')) CONTAINS toLower($text)
          )
        RETURN e {.*} AS entity, labels(e)[0] AS type
        LIMIT $limit
        """
        rows = await self._read(
            "search_entities",
            query,
            {"novel_id": novel_id, "text": text, "labels": labels, "limit": SEARCH_RESULT_LIMIT},
            novel_id=novel_id,
        )
        return [{"type": row["type"].lower(), **decode_properties(row["entity"])} for row in rows][:SEARCH_RESULT_LIMIT]
