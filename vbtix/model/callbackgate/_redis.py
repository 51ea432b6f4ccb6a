# callbackgate/_redis.py
from __future__ import annotations
from typing import Optional
import redis.asyncio as redis


def k_seen(key: str) -> str: return f"webhook:seen:{key}"


class CallbackGate:
    def __init__(self, *, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def is_seen(self, key: Optional[str]) -> bool:
        if not key:
            return False
        return bool(await self.r.exists(k_seen(key)))

    async def mark_seen(self, key: Optional[str]) -> bool:
        """True if the key is new. Keys expire after the TTL."""
        if not key:
            return True
        ok = await self.r.set(k_seen(key), "1", nx=True, ex=self.ttl)
        return bool(ok)

    async def purge(self, older_than: float) -> int:
        # redis expires keys by itself
        return 0
