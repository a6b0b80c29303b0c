# model/store/__init__.py
import os
from typing import Optional, Callable, AsyncContextManager
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

Gated = Callable[[], AsyncContextManager[None]]

# 'memory' | 'pg'
BACKEND = os.getenv(
    "STORE_BACKEND", "pg" if os.getenv("DATABASE_URL") else "memory"
).lower()

if BACKEND == "pg":
    from ._postgres import PreOrderStore as _PreOrderStore
else:
    from ._memory import PreOrderStore as _PreOrderStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, sessions: Optional[async_sessionmaker[AsyncSession]] = None,
              gated: Gated = None):
    if BACKEND == "pg":
        if sessions is None:
            raise RuntimeError(
                "PreOrderStore(pg) requires sessions=async_sessionmaker"
            )
        if gated is None:
            raise RuntimeError("PreOrderStore(pg) requires gated=Gated")
        return _PreOrderStore(sessions=sessions, gated=gated)
    return _PreOrderStore()


PreOrderStore = _PreOrderStore
__all__ = ["PreOrderStore", "new_store", "BACKEND"]
