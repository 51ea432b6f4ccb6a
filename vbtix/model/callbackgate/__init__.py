from typing import Optional
import redis.asyncio as redis

from ...config import CALLBACK_GATE_BACKEND
from ...infra.sql import GatedAsyncSession

BACKEND = CALLBACK_GATE_BACKEND  # 'sql' | 'redis'

if BACKEND == "redis":
    from ._redis import CallbackGate as _CallbackGate
else:
    from ._sql import CallbackGate as _CallbackGate


# Factory keeps server.py simple and constructor-agnostic:
def new_gate(*, db: Optional[GatedAsyncSession] = None,
             r: Optional[redis.Redis] = None,
             ttl_seconds: int = 3600):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError("CallbackGate(redis) requires r=redis.Redis")
        return _CallbackGate(r=r, ttl_seconds=ttl_seconds)
    if db is None:
        raise RuntimeError("CallbackGate(sql) requires db=GatedAsyncSession")
    return _CallbackGate(db=db)


CallbackGate = _CallbackGate
__all__ = ["CallbackGate", "new_gate", "BACKEND"]
