# model/rungate.py
from __future__ import annotations
from typing import Optional, Set
import redis.asyncio as redis


def k_run(window: str) -> str: return f"fulfillment:ran:{window}"


class MemoryRunGate:
    def __init__(self) -> None:
        self.seen: Set[str] = set()

    async def claim(self, window: str, ttl_seconds: int = 3600) -> bool:
        if window in self.seen:
            return False
        self.seen.add(window)
        return True


class RedisRunGate:
    """Shared across workers, so only one of them scans per window."""

    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def claim(self, window: str, ttl_seconds: int = 3600) -> bool:
        # NX gate, expires once the window is long gone
        ok = await self.r.set(k_run(window), "1", nx=True, ex=ttl_seconds)
        return bool(ok)


def new_run_gate(r: Optional[redis.Redis] = None):
    if r is None:
        return MemoryRunGate()
    return RedisRunGate(r)
