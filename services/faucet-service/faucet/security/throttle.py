"""Sliding window throttles guarding the mint endpoint against request floods.

Quota caps bound how much an account may receive per day; the throttle bounds how
often one identity may ask, so floods are refused before they reach the ledger lock.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Deque, DefaultDict, Final, Protocol

from redis import Redis
from redis.exceptions import ResponseError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ThrottleDecision:
    allowed: bool
    retry_after_seconds: int = 0


class Throttle(Protocol):
    def hit(self, key: str) -> ThrottleDecision: ...


class SlidingWindowThrottle:
    """Thread-safe in-process sliding window."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_requests = max_requests
        self._window = window_seconds
        self._events: DefaultDict[str, Deque[float]] = DefaultDict(deque)
        self._lock = Lock()
        self._clock = clock
        self._last_sweep = clock()

    def hit(self, key: str) -> ThrottleDecision:
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self._window:
                self._evict_idle(now)
                self._last_sweep = now
            queue = self._events[key]
            while queue and now - queue[0] >= self._window:
                queue.popleft()
            if len(queue) >= self._max_requests:
                retry_after = max(int(self._window - (now - queue[0])) + 1, 1)
                return ThrottleDecision(False, retry_after)
            queue.append(now)
            return ThrottleDecision(True)

    def _evict_idle(self, now: float) -> None:
        """Drop keys with no event left inside the window. Caller holds the lock."""
        idle = [key for key, events in self._events.items() if not events or now - events[-1] >= self._window]
        for key in idle:
            del self._events[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class RedisSlidingWindowThrottle:
    """Distributed sliding window shared by every API replica, kept in Redis sorted sets."""

    _LUA_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local counter_key = key .. ':seq'
    local window_ms = tonumber(ARGV[1])
    local max_requests = tonumber(ARGV[2])
    local now_ms = tonumber(ARGV[3])

    redis.call('ZREMRANGEBYSCORE', key, 0, now_ms - window_ms)
    local current = redis.call('ZCARD', key)
    if current >= max_requests then
        local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
        return {0, tonumber(oldest[2]) + window_ms - now_ms}
    end
    local seq = redis.call('INCR', counter_key)
    redis.call('PEXPIRE', counter_key, window_ms)
    redis.call('ZADD', key, now_ms, tostring(now_ms) .. ':' .. tostring(seq))
    redis.call('PEXPIRE', key, window_ms)
    return {1, 0}
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "faucet:throttle",
    ) -> None:
        self._client = client
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._script = client.register_script(self._LUA_SCRIPT)

    def hit(self, key: str) -> ThrottleDecision:
        now_ms = int(time.time() * 1000)
        redis_key = f"{self._key_prefix}:{key}"
        try:
            allowed, wait_ms = self._script(
                keys=[redis_key], args=[self._window_ms, self._max_requests, now_ms]
            )
        except ResponseError as exc:
            message = str(exc).lower()
            if "unknown command" in message and "eval" in message:
                return self._hit_without_lua(redis_key, now_ms)
            raise
        return _decision(int(allowed) == 1, int(wait_ms))

    def _hit_without_lua(self, redis_key: str, now_ms: int) -> ThrottleDecision:
        """Same algorithm as the Lua script for servers with scripting disabled; not atomic."""
        self._client.zremrangebyscore(redis_key, 0, now_ms - self._window_ms)
        if self._client.zcard(redis_key) >= self._max_requests:
            oldest = self._client.zrange(redis_key, 0, 0, withscores=True)
            wait_ms = int(oldest[0][1]) + self._window_ms - now_ms if oldest else self._window_ms
            return _decision(False, wait_ms)
        seq = self._client.incr(f"{redis_key}:seq")
        self._client.pexpire(f"{redis_key}:seq", self._window_ms)
        self._client.zadd(redis_key, {f"{now_ms}:{seq}": now_ms})
        self._client.pexpire(redis_key, self._window_ms)
        return ThrottleDecision(True)


def _decision(allowed: bool, wait_ms: int) -> ThrottleDecision:
    if allowed:
        return ThrottleDecision(True)
    return ThrottleDecision(False, max((wait_ms + 999) // 1000, 1))


def build_throttle(settings) -> Throttle:
    """Instantiate the configured backend, preferring Redis when it is reachable."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            import redis

            client = redis.from_url(settings.redis_url)
            client.ping()
            logger.info("mint throttle configured for redis backend at %s", settings.redis_url)
            return RedisSlidingWindowThrottle(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
        except Exception as exc:  # pragma: no cover - depends on a live redis
            logger.warning("redis throttle unavailable, falling back to in-memory: %s", exc)

    logger.info("mint throttle using in-memory backend")
    return SlidingWindowThrottle(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
