"""Tests for Redis advisory locks and session counters."""

import asyncio

import pytest

from stocksniper.worker.locks import (
    CYCLE_LOCK_KEY,
    item_lock_key,
    lock_age_seconds,
    purchase_lock_key,
)


@pytest.mark.asyncio
async def test_lock_acquire_release(locks):
    token = await locks.acquire(CYCLE_LOCK_KEY, ttl_seconds=30, owner="run-1")
    assert token is not None

    info = await locks.get_lock_info(CYCLE_LOCK_KEY)
    assert info["owner"] == "run-1"
    assert 0 < info["ttl_seconds"] <= 30
    assert lock_age_seconds(info) >= 0

    assert await locks.release(CYCLE_LOCK_KEY, token) is True
    assert await locks.get_lock_info(CYCLE_LOCK_KEY) is None


@pytest.mark.asyncio
async def test_second_acquire_fails_without_waiting(locks):
    first = await locks.acquire(item_lock_key(7), ttl_seconds=30)
    second = await locks.acquire(item_lock_key(7), ttl_seconds=30)

    assert first is not None
    assert second is None


@pytest.mark.asyncio
async def test_concurrent_acquires_yield_one_token(locks):
    tokens = await asyncio.gather(
        *(locks.acquire(item_lock_key(8), ttl_seconds=30, owner=f"checker-{n}") for n in range(5))
    )

    assert len([t for t in tokens if t]) == 1


@pytest.mark.asyncio
async def test_release_with_wrong_token_keeps_lock(locks):
    token = await locks.acquire(purchase_lock_key(3), ttl_seconds=30)

    assert await locks.release(purchase_lock_key(3), "not-the-owner") is False
    assert await locks.get_lock_info(purchase_lock_key(3)) is not None

    assert await locks.release(purchase_lock_key(3), token) is True


@pytest.mark.asyncio
async def test_release_after_expiry_is_not_an_error(locks, redis_client):
    token = await locks.acquire(item_lock_key(9), ttl_seconds=30)
    await redis_client.delete(item_lock_key(9))

    assert await locks.release(item_lock_key(9), token) is True


@pytest.mark.asyncio
async def test_expired_lock_can_be_retaken(locks, redis_client):
    await locks.acquire(item_lock_key(11), ttl_seconds=30, owner="crashed")
    await redis_client.delete(item_lock_key(11))  # simulate TTL lapse

    token = await locks.acquire(item_lock_key(11), ttl_seconds=30, owner="next")
    assert token is not None
    info = await locks.get_lock_info(item_lock_key(11))
    assert info["owner"] == "next"


@pytest.mark.asyncio
async def test_refresh_only_for_owner(locks, redis_client):
    token = await locks.acquire(CYCLE_LOCK_KEY, ttl_seconds=10)

    assert await locks.refresh(CYCLE_LOCK_KEY, "intruder", ttl_seconds=100) is False
    assert await locks.refresh(CYCLE_LOCK_KEY, token, ttl_seconds=100) is True
    assert await redis_client.ttl(CYCLE_LOCK_KEY) > 10


@pytest.mark.asyncio
async def test_session_counter_counts_and_expires(locks, redis_client):
    assert await locks.get_session_count(5) == 0

    assert await locks.increment_session_count(5, ttl_seconds=300) == 1
    assert await locks.increment_session_count(5, ttl_seconds=300) == 2
    assert await locks.get_session_count(5) == 2
    assert 0 < await redis_client.ttl("sessions:5") <= 300


@pytest.mark.asyncio
async def test_list_locks_by_scope(locks):
    await locks.acquire(item_lock_key(1), ttl_seconds=30)
    await locks.acquire(item_lock_key(2), ttl_seconds=30)
    await locks.acquire(purchase_lock_key(1), ttl_seconds=30)

    assert sorted(await locks.list_locks("cycle:item:*")) == ["cycle:item:1", "cycle:item:2"]
    assert await locks.list_locks("autobuy:*") == ["autobuy:1"]
