# core/cache_store.py
"""Redis-backed cache for derived copies of novel data.

Every operation degrades instead of raising: when Redis is unreachable, reads
return ``None`` (or an empty mapping) and writes return ``False``. Callers treat
a miss as "ask the authoritative store", never as proof that an entity does not
exist. After a failed connection the store backs off for a cooldown period
instead of reconnecting on every call.
"""

from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as redis
import structlog

from config.settings import GatewaySettings

logger = structlog.get_logger(__name__)


def chapter_key(novel_id: str, chapter_number: int) -> str:
    return f"novel:{novel_id}:chapter:{chapter_number}"


def world_state_key(novel_id: str) -> str:
    return f"novel:{novel_id}:worldstate"


def character_key(novel_id: str, character_id: str) -> str:
    return f"novel:{novel_id}:character:{character_id}"


def location_key(novel_id: str, location_id: str) -> str:
    return f"novel:{novel_id}:location:{location_id}"


def events_channel(novel_id: str) -> str:
    return f"novel:{novel_id}:events"


def session_key(session_id: str) -> str:
    return f"session:{session_id}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def decode_value(raw: Any) -> Any:
    """Decode a stored JSON value; anything else written to the key comes back as-is."""
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw


class RedisCacheStore:
    """Key/value, hash and pub/sub helpers over one shared ``redis.asyncio`` client."""

    def __init__(self, settings: GatewaySettings, client: redis.Redis | None = None):
        self.url = settings.REDIS_URL
        self.ttl_default = settings.CACHE_TTL_DEFAULT
        self.ttl_chapter = settings.CACHE_TTL_CHAPTER
        self.ttl_world_state = settings.CACHE_TTL_WORLD_STATE
        self.ttl_short = settings.CACHE_TTL_SHORT
        self.ttl_long = settings.CACHE_TTL_LONG
        self._socket_timeout = settings.REDIS_SOCKET_TIMEOUT
        self._connect_timeout = settings.REDIS_CONNECT_TIMEOUT
        self._retry_cooldown = settings.REDIS_RETRY_COOLDOWN
        self._client: redis.Redis | None = client
        self._backoff_until = 0.0

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> bool:
        """Open the client and ping it. Returns False (and starts the cooldown) on failure."""
        if self._client is not None:
            return True
        client = redis.from_url(
            self.url,
            decode_responses=True,
            socket_timeout=self._socket_timeout,
            socket_connect_timeout=self._connect_timeout,
        )
        try:
            await client.ping()
        except (redis.RedisError, OSError) as e:
            self._backoff_until = time.monotonic() + self._retry_cooldown
            logger.warning(f"Redis not available, retrying in {self._retry_cooldown:.0f}s: {e}", url=self.url)
            await client.aclose()
            return False
        self._client = client
        self._backoff_until = 0.0
        logger.info(f"Connected to Redis at {self.url}")
        return True

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
                logger.info("Redis connection closed.")
            except (redis.RedisError, OSError) as e:
                logger.warning(f"Error while closing Redis connection: {e}")
            finally:
                self._client = None

    async def _get_client(self) -> redis.Redis | None:
        if self._client is None:
            if time.monotonic() < self._backoff_until:
                return None
            await self.connect()
        return self._client

    def _mark_failure(self, operation: str, error: Exception, **context: Any) -> None:
        logger.warning(f"Redis {operation} failed: {error}", **context)
        if isinstance(error, (redis.ConnectionError, redis.TimeoutError, OSError)):
            self._client = None
            self._backoff_until = time.monotonic() + self._retry_cooldown

    # ------------------------------------------------------------------
    # Plain keys
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        client = await self._get_client()
        if client is None:
            return None
        try:
            raw = await client.get(key)
        except (redis.RedisError, OSError) as e:
            self._mark_failure("get", e, key=key)
            return None
        return decode_value(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        client = await self._get_client()
        if client is None:
            return False
        try:
            await client.set(key, json.dumps(value, default=str), ex=ttl or self.ttl_default)
            return True
        except (redis.RedisError, OSError, TypeError) as e:
            self._mark_failure("set", e, key=key)
            return False

    async def delete(self, key: str) -> bool:
        client = await self._get_client()
        if client is None:
            return False
        try:
            await client.delete(key)
            return True
        except (redis.RedisError, OSError) as e:
            self._mark_failure("delete", e, key=key)
            return False

    async def exists(self, key: str) -> bool:
        client = await self._get_client()
        if client is None:
            return False
        try:
            return bool(await client.exists(key))
        except (redis.RedisError, OSError) as e:
            self._mark_failure("exists", e, key=key)
            return False

    # ------------------------------------------------------------------
    # Hashes
    # ------------------------------------------------------------------

    async def hget(self, key: str, field: str) -> Any | None:
        client = await self._get_client()
        if client is None:
            return None
        try:
            raw = await client.hget(key, field)
        except (redis.RedisError, OSError) as e:
            self._mark_failure("hget", e, key=key, field=field)
            return None
        return decode_value(raw) if raw is not None else None

    async def hset(self, key: str, field: str, value: Any) -> bool:
        client = await self._get_client()
        if client is None:
            return False
        try:
            await client.hset(key, field, json.dumps(value, default=str))
            return True
        except (redis.RedisError, OSError, TypeError) as e:
            self._mark_failure("hset", e, key=key, field=field)
            return False

    async def hgetall(self, key: str) -> dict[str, Any]:
        client = await self._get_client()
        if client is None:
            return {}
        try:
            raw = await client.hgetall(key)
        except (redis.RedisError, OSError) as e:
            self._mark_failure("hgetall", e, key=key)
            return {}
        return {field: decode_value(value) for field, value in raw.items()}

    async def hdel(self, key: str, field: str) -> bool:
        client = await self._get_client()
        if client is None:
            return False
        try:
            await client.hdel(key, field)
            return True
        except (redis.RedisError, OSError) as e:
            self._mark_failure("hdel", e, key=key, field=field)
            return False

    # ------------------------------------------------------------------
    # Pub/sub
    # ------------------------------------------------------------------

    async def publish(self, channel: str, message: Any) -> bool:
        client = await self._get_client()
        if client is None:
            return False
        try:
            await client.publish(channel, json.dumps(message, default=str))
            return True
        except (redis.RedisError, OSError) as e:
            self._mark_failure("publish", e, channel=channel)
            return False

    # ------------------------------------------------------------------
    # Domain helpers
    # ------------------------------------------------------------------

    async def cache_chapter(self, novel_id: str, chapter_number: int, chapter: dict[str, Any]) -> bool:
        return await self.set(chapter_key(novel_id, chapter_number), chapter, self.ttl_chapter)

    async def get_chapter(self, novel_id: str, chapter_number: int) -> dict[str, Any] | None:
        return await self.get(chapter_key(novel_id, chapter_number))

    async def cache_entity(self, key: str, entity: dict[str, Any]) -> bool:
        return await self.set(key, entity, self.ttl_default)

    async def cache_world_state(self, novel_id: str, world_state: dict[str, Any]) -> bool:
        return await self.set(world_state_key(novel_id), world_state, self.ttl_world_state)

    async def get_world_state(self, novel_id: str) -> dict[str, Any] | None:
        return await self.get(world_state_key(novel_id))

    async def update_world_state(self, novel_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        """Shallow-merge ``updates`` over the cached world state.

        Returns the merged state, or ``None`` when the write did not land.
        """
        current = await self.get_world_state(novel_id) or {}
        merged = {**current, **updates, "updatedAt": utc_now_iso()}
        if await self.cache_world_state(novel_id, merged):
            return merged
        return None

    async def set_session(self, session_id: str, data: dict[str, Any], ttl: int | None = None) -> bool:
        return await self.set(session_key(session_id), data, ttl or self.ttl_short)

    async def get_session(self, session_id: str) -> dict[str, Any] | None:
        return await self.get(session_key(session_id))

    async def cleanup(self, pattern: str = "temp:*") -> int:
        """Delete every key matching ``pattern``. Returns the number of keys removed."""
        client = await self._get_client()
        if client is None:
            return 0
        removed = 0
        try:
            batch: list[str] = []
            async for key in client.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += await client.delete(*batch)
                    batch = []
            if batch:
                removed += await client.delete(*batch)
        except (redis.RedisError, OSError) as e:
            self._mark_failure("cleanup", e, pattern=pattern)
        logger.info(f"Redis cleanup removed {removed} keys", pattern=pattern)
        return removed

    async def stats(self) -> dict[str, Any]:
        client = await self._get_client()
        if client is None:
            return {"connected": False}
        try:
            info = await client.info(section="memory")
            keys = await client.dbsize()
        except (redis.RedisError, OSError) as e:
            self._mark_failure("stats", e)
            return {"connected": False}
        return {
            "connected": True,
            "keys": keys,
            "usedMemory": info.get("used_memory_human"),
        }

    async def health_check(self) -> dict[str, Any]:
        client = await self._get_client()
        if client is None:
            return {"status": "unhealthy", "error": "not connected"}
        try:
            await client.ping()
            return {"status": "healthy"}
        except (redis.RedisError, OSError) as e:
            self._mark_failure("ping", e)
            return {"status": "unhealthy", "error": str(e)}
