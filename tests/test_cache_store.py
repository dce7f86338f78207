import json

import pytest
import redis.asyncio as redis

from core.cache_store import (
    RedisCacheStore,
    chapter_key,
    character_key,
    events_channel,
    world_state_key,
)
from tests.fakes.fake_settings import make_settings


class DictRedis:
    """Minimal stand-in for the handful of client calls the store makes."""

    def __init__(self, fail: Exception | None = None):
        self.data: dict[str, str] = {}
        self.expiry: dict[str, int | None] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.published: list[tuple[str, str]] = []
        self.fail = fail

    def _check(self):
        if self.fail is not None:
            raise self.fail

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value
        self.expiry[key] = ex

    async def delete(self, *keys):
        self._check()
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    async def hget(self, key, field):
        self._check()
        return self.hashes.get(key, {}).get(field)

    async def hgetall(self, key):
        self._check()
        return dict(self.hashes.get(key, {}))

    async def publish(self, channel, message):
        self._check()
        self.published.append((channel, message))
        return 1

    async def info(self, section=None):
        self._check()
        return {"used_memory_human": "1.00M"}

    async def dbsize(self):
        self._check()
        return len(self.data)

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        pass


def test_key_layout():
    assert chapter_key("n1", 3) == "novel:n1:chapter:3"
    assert world_state_key("n1") == "novel:n1:worldstate"
    assert character_key("n1", "c9") == "novel:n1:character:c9"


@pytest.mark.asyncio
async def test_chapter_cached_with_chapter_ttl():
    client = DictRedis()
    store = RedisCacheStore(make_settings(CACHE_TTL_CHAPTER=120), client=client)

    assert await store.cache_chapter("n1", 2, {"number": 2, "title": "Two"})

    assert json.loads(client.data["novel:n1:chapter:2"])["title"] == "Two"
    assert client.expiry["novel:n1:chapter:2"] == 120
    assert await store.get_chapter("n1", 2) == {"number": 2, "title": "Two"}


@pytest.mark.asyncio
async def test_world_state_update_merges_over_existing():
    store = RedisCacheStore(make_settings(), client=DictRedis())
    await store.cache_world_state("n1", {"season": "winter", "war": False})

    merged = await store.update_world_state("n1", {"war": True})

    assert merged["season"] == "winter"
    assert merged["war"] is True
    assert "updatedAt" in merged
    assert (await store.get_world_state("n1"))["war"] is True


@pytest.mark.asyncio
async def test_connection_error_degrades_and_drops_client():
    store = RedisCacheStore(
        make_settings(REDIS_RETRY_COOLDOWN=60), client=DictRedis(fail=redis.ConnectionError("down"))
    )

    assert await store.get("anything") is None
    assert not store.is_connected
    # Inside the cooldown no reconnect is attempted.
    assert await store.set("anything", 1) is False
    assert (await store.health_check())["status"] == "unhealthy"


@pytest.mark.asyncio
async def test_non_json_value_returned_raw():
    client = DictRedis()
    client.data["plain"] = "not-json"
    store = RedisCacheStore(make_settings(), client=client)

    assert await store.get("plain") == "not-json"


@pytest.mark.asyncio
async def test_session_defaults_to_short_ttl():
    client = DictRedis()
    store = RedisCacheStore(make_settings(CACHE_TTL_SHORT=300), client=client)

    await store.set_session("s1", {"user": "ana"})
    await store.set_session("s2", {"user": "bo"}, ttl=3600)

    assert client.expiry == {"session:s1": 300, "session:s2": 3600}
    assert await store.get_session("s1") == {"user": "ana"}


@pytest.mark.asyncio
async def test_stats_report_key_count():
    client = DictRedis()
    store = RedisCacheStore(make_settings(), client=client)
    await store.set("k", "v")

    assert await store.stats() == {"connected": True, "keys": 1, "usedMemory": "1.00M"}


@pytest.mark.asyncio
async def test_hash_reads_tolerate_non_json_fields():
    client = DictRedis()
    client.hashes["queue:embedding-processing:jobs"] = {"j1": json.dumps({"status": "queued"}), "j2": "garbled{"}
    store = RedisCacheStore(make_settings(), client=client)

    assert await store.hget("queue:embedding-processing:jobs", "j2") == "garbled{"
    assert await store.hgetall("queue:embedding-processing:jobs") == {"j1": {"status": "queued"}, "j2": "garbled{"}


@pytest.mark.asyncio
async def test_publish_sends_json_to_novel_channel():
    client = DictRedis()
    store = RedisCacheStore(make_settings(), client=client)

    assert await store.publish(events_channel("n1"), {"event": "world-state-updated"})

    assert client.published == [("novel:n1:events", '{"event": "world-state-updated"}')]
