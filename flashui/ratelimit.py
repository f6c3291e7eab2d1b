from __future__ import annotations

import logging
import os
import time
from typing import Dict, Optional, Tuple

import redis

log = logging.getLogger(__name__)

WINDOW_SECONDS: int = int(os.getenv("RATE_WINDOW_SECONDS", "3600"))
MAX_REQUESTS: int = int(os.getenv("RATE_MAX_REQUESTS", "60"))
REDIS_URL = os.getenv("REDIS_URL", "").strip()

# (allowed, remaining, reset_ts)
Decision = Tuple[bool, int, int]


def _bk(bucket: str, key: str) -> Tuple[str, str]:
    return ((bucket or "default").strip() or "default", (key or "anon").strip() or "anon")


class MemoryRateLimiter:
    """Fixed-window counter kept in process memory."""

    def __init__(self, window_seconds: Optional[int] = None, max_requests: Optional[int] = None) -> None:
        self.window_seconds = int(window_seconds or WINDOW_SECONDS)
        self.max_requests = int(max_requests or MAX_REQUESTS)
        self._store: Dict[Tuple[str, str], Dict[str, int]] = {}

    def check_and_increment(self, bucket: str, key: str, now: Optional[int] = None) -> Decision:
        now = now or int(time.time())
        k = _bk(bucket, key)
        entry = self._store.get(k)
        if entry is None or now >= entry["reset_ts"]:
            entry = {"count": 0, "reset_ts": now + self.window_seconds}
            self._store[k] = entry
        if entry["count"] < self.max_requests:
            entry["count"] += 1
            return True, max(0, self.max_requests - entry["count"]), entry["reset_ts"]
        return False, 0, entry["reset_ts"]

    def reset(self) -> None:
        self._store.clear()


class RedisRateLimiter:
    """
    Fixed-window limiter shared between processes through Redis; same return
    tuple as MemoryRateLimiter.
    """

    def __init__(
        self,
        redis_url: str,
        window_seconds: Optional[int] = None,
        max_requests: Optional[int] = None,
    ) -> None:
        self.window_seconds = int(window_seconds or WINDOW_SECONDS)
        self.max_requests = int(max_requests or MAX_REQUESTS)
        # Lazy connection; nothing hits the network until the first command
        self._client = redis.from_url(redis_url, decode_responses=True)

    def _bucket_key(self, bucket: str, key: str, now: int) -> str:
        b, k = _bk(bucket, key)
        window_start = now - (now % self.window_seconds)
        return f"flashui:rl:{b}:{k}:{window_start}"

    def check_and_increment(self, bucket: str, key: str, now: Optional[int] = None) -> Decision:
        current_ts = now or int(time.time())
        bucket_key = self._bucket_key(bucket, key, current_ts)
        pipe = self._client.pipeline()
        pipe.incr(bucket_key, 1)
        pipe.expire(bucket_key, self.window_seconds)
        count, _ = pipe.execute()
        used = int(count)
        remaining = max(0, self.max_requests - used)
        reset_ts = current_ts - (current_ts % self.window_seconds) + self.window_seconds
        return used <= self.max_requests, remaining, reset_ts


_memory = MemoryRateLimiter()
_redis_limiter: Optional[RedisRateLimiter] = None
if REDIS_URL and not os.getenv("PYTEST_CURRENT_TEST"):
    try:
        _redis_limiter = RedisRateLimiter(REDIS_URL)
    except (redis.RedisError, ValueError) as exc:
        log.warning("ratelimit: Redis limiter unavailable, using in-process limiter: %s", exc)
        _redis_limiter = None


def check(bucket: str, key: str) -> Decision:
    """Consult Redis when configured; on Redis errors fall back to the in-process window."""
    if _redis_limiter is not None:
        try:
            return _redis_limiter.check_and_increment(bucket, key)
        except redis.RedisError as exc:
            log.warning("ratelimit: Redis check failed, falling back: %s", exc)
    return _memory.check_and_increment(bucket, key)


def configure(window_seconds: Optional[int] = None, max_requests: Optional[int] = None) -> MemoryRateLimiter:
    """Replace the in-process limiter (used by tests and embedding apps)."""
    global _memory
    _memory = MemoryRateLimiter(window_seconds, max_requests)
    return _memory


def _reset() -> None:
    """Used by tests to clear state."""
    _memory.reset()
