"""Redis token bucket (capacity = refill rate = limit per minute)."""

from time import time

import redis


class TokenBucket:
    def __init__(self, rdb: redis.Redis, limit_per_minute: int, prefix: str = "tokenbucket") -> None:
        self.rdb = rdb
        self.capacity = float(limit_per_minute)
        self.refill_per_sec = self.capacity / 60.0
        self.prefix = prefix

    def allow(self, subject: str, now: float | None = None) -> bool:
        """Take one token for `subject`; False when the bucket is empty."""

        key = f"{self.prefix}:{subject}"
        now = time() if now is None else now
        values = self.rdb.hmget(key, "tokens", "updated_at")
        tokens = float(values[0]) if values[0] is not None else self.capacity
        updated_at = float(values[1]) if values[1] is not None else now
        elapsed = max(0.0, now - updated_at)
        tokens = min(self.capacity, tokens + elapsed * self.refill_per_sec)

        allowed = tokens >= 1.0
        if allowed:
            tokens -= 1.0
        self.rdb.hset(key, mapping={"tokens": tokens, "updated_at": now})
        self.rdb.expire(key, 120)
        return allowed
