import asyncio

from concierge_ranking.cache import (
    InMemoryRankingCache,
    drain_pending_writes,
    generate_cache_key,
    read_cache,
    schedule_cache_write,
)
from concierge_ranking.config import ProductCandidate, RankingOutcome, RankingRequest


def _request(handles=("a", "b", "c"), **kw):
    kw.setdefault("result_count", 2)
    return RankingRequest(
        user_intent="Linen Shirt",
        candidates=[ProductCandidate(handle=h, title=h) for h in handles],
        **kw,
    )


OUTCOME = RankingOutcome(selected_handles=["a", "b"], source="provider", reasoning="fits")


def test_cache_key_is_stable_and_order_independent():
    assert generate_cache_key(_request()) == generate_cache_key(_request(("c", "a", "b")))


def test_cache_key_changes_with_inputs():
    base = generate_cache_key(_request())
    assert base != generate_cache_key(_request(result_count=3))
    assert base != generate_cache_key(_request(shop_id="shop-2"))
    assert base != generate_cache_key(_request(avoid_terms=["silk"]))
    assert base != generate_cache_key(_request(handles=("a", "b")))


def test_in_memory_cache_roundtrip_and_ttl():
    async def go():
        cache = InMemoryRankingCache()
        await cache.put("k", OUTCOME, ttl_s=60)
        hit = await cache.get("k")
        await cache.put("gone", OUTCOME, ttl_s=0)
        return cache, hit, await cache.get("gone"), await cache.get("missing")

    cache, hit, expired, missing = asyncio.run(go())
    assert hit == OUTCOME
    assert expired is None
    assert missing is None
    assert len(cache) == 1


def test_in_memory_cache_evicts_when_full():
    async def go():
        cache = InMemoryRankingCache(max_entries=2)
        for key in ("a", "b", "c"):
            await cache.put(key, OUTCOME, ttl_s=60)
        return cache

    assert len(asyncio.run(go())) == 2


class BrokenCache:
    async def get(self, key):
        raise RuntimeError("store offline")

    async def put(self, key, outcome, ttl_s):
        raise RuntimeError("store offline")


class SlowCache:
    async def get(self, key):
        await asyncio.sleep(1.0)
        return OUTCOME

    async def put(self, key, outcome, ttl_s):
        return None


def test_read_failures_are_misses():
    assert asyncio.run(read_cache(BrokenCache(), "k", 0.5)) is None
    assert asyncio.run(read_cache(SlowCache(), "k", 0.01)) is None


def test_failed_background_write_does_not_propagate():
    async def go():
        task = schedule_cache_write(BrokenCache(), "k", OUTCOME, 60)
        await drain_pending_writes()
        return task

    task = asyncio.run(go())
    assert task.done()
    assert isinstance(task.exception(), RuntimeError)
