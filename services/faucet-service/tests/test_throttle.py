"""Tests for the mint throttles."""

from __future__ import annotations

import time

import fakeredis
import pytest

from faucet.config import Settings
from faucet.security.throttle import RedisSlidingWindowThrottle, SlidingWindowThrottle, build_throttle


@pytest.fixture()
def redis_client() -> fakeredis.FakeStrictRedis:
    client = fakeredis.FakeStrictRedis()
    client.flushall()
    return client


class TickingClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_memory_throttle_blocks_excess_and_reports_retry_after():
    clock = TickingClock()
    throttle = SlidingWindowThrottle(max_requests=2, window_seconds=10, clock=clock)
    assert throttle.hit("mint:telegram:alice").allowed
    clock.now += 4
    assert throttle.hit("mint:telegram:alice").allowed

    blocked = throttle.hit("mint:telegram:alice")
    assert not blocked.allowed
    assert blocked.retry_after_seconds == 7
    assert throttle.hit("mint:telegram:bob").allowed


def test_memory_throttle_forgets_identities_that_went_quiet():
    clock = TickingClock()
    throttle = SlidingWindowThrottle(max_requests=2, window_seconds=10, clock=clock)
    for index in range(50):
        throttle.hit(f"mint:web:visitor-{index}")
    assert len(throttle) == 50

    clock.now += 10
    assert throttle.hit("mint:telegram:alice").allowed
    assert len(throttle) == 1


def test_memory_throttle_window_slides():
    clock = TickingClock()
    throttle = SlidingWindowThrottle(max_requests=1, window_seconds=10, clock=clock)
    assert throttle.hit("key").allowed
    clock.now += 9.5
    assert not throttle.hit("key").allowed
    clock.now += 0.5
    assert throttle.hit("key").allowed


def test_redis_throttle_allows_within_threshold(redis_client):
    throttle = RedisSlidingWindowThrottle(redis_client, max_requests=3, window_seconds=1, key_prefix="test")
    key = "mint:discord:alice"
    assert all(throttle.hit(key).allowed for _ in range(3))


def test_redis_throttle_blocks_excess(redis_client):
    throttle = RedisSlidingWindowThrottle(redis_client, max_requests=2, window_seconds=5, key_prefix="test")
    key = "mint:discord:alice"
    assert throttle.hit(key).allowed
    assert throttle.hit(key).allowed

    blocked = throttle.hit(key)
    assert not blocked.allowed
    assert 1 <= blocked.retry_after_seconds <= 5
    assert throttle.hit("mint:discord:bob").allowed


def test_redis_throttle_expires_entries(redis_client):
    throttle = RedisSlidingWindowThrottle(redis_client, max_requests=1, window_seconds=1, key_prefix="test")
    key = "mint:web:carol"
    assert throttle.hit(key).allowed
    assert not throttle.hit(key).allowed
    time.sleep(1.1)
    assert throttle.hit(key).allowed


def test_build_throttle_falls_back_to_memory_without_redis():
    throttle = build_throttle(Settings(rate_limit_backend="redis", redis_url=""))
    assert isinstance(throttle, SlidingWindowThrottle)
