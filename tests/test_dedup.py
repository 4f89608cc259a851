import pytest

from qrun.services.cache import Cache
from qrun.services.dedup import Deduplicator

from tests.conftest import FakeRedis


@pytest.mark.asyncio
async def test_first_enqueue_claims_key():
    redis = FakeRedis()
    dedup = Deduplicator(redis, prefix="qdone:", dedup_period=60)

    assert await dedup.should_enqueue("echo hi")
    assert not await dedup.should_enqueue("echo hi")
    assert redis.expiry[dedup.cache_key("echo hi")] == 60


def test_cache_key_ignores_surrounding_whitespace():
    dedup = Deduplicator(FakeRedis(), prefix="p:")
    assert dedup.cache_key("  echo hi\n") == dedup.cache_key("echo hi")
    assert dedup.cache_key("echo hi").startswith("p:dedup:")


@pytest.mark.asyncio
async def test_multi_only_first_occurrence():
    dedup = Deduplicator(FakeRedis())
    assert await dedup.should_enqueue_multi(["a", "a", "b"]) == [True, False, True]


@pytest.mark.asyncio
async def test_processed_allows_requeue():
    dedup = Deduplicator(FakeRedis())
    await dedup.should_enqueue("job")
    await dedup.processed("job")
    assert await dedup.should_enqueue("job")


@pytest.mark.asyncio
async def test_cache_round_trip():
    redis = FakeRedis()
    cache = Cache(redis, prefix="qdone:", ttl_seconds=10)

    assert await cache.get("missing") is None
    await cache.set("k", {"idle": True})

    assert await cache.get("k") == {"idle": True}
    assert redis.expiry["qdone:k"] == 10
    await cache.close()
    assert redis.closed
