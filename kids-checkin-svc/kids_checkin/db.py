from __future__ import annotations
from typing import Any, AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .core.config import get_settings
from .models import Base

settings = get_settings()

def engine_options(database_url: str) -> dict[str, Any]:
    if database_url.startswith("sqlite"):
        # concurrent approvals queue on the database write lock instead of failing fast
        return {"connect_args": {"timeout": 30}}
    # pooled PostgreSQL connections can go stale between check-in rushes
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}

engine = create_async_engine(settings.database_url, echo=False, **engine_options(settings.database_url))
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        yield session
