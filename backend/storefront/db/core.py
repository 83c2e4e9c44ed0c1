from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from ..settings import settings, to_async_url

Base = declarative_base()


def build_engine(url: str | None = None, **kwargs: Any) -> AsyncEngine:
    target = to_async_url(url) if url else settings.async_database_url
    connect_args = {"timeout": 15} if target.startswith("sqlite") else {}
    kwargs.setdefault("pool_pre_ping", True)
    return create_async_engine(
        target,
        future=True,
        echo=False,
        connect_args=connect_args,
        **kwargs,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        autoflush=False,
        expire_on_commit=False,
    )


engine = build_engine()
SessionLocal = build_session_factory(engine)


async def init_db(bind: AsyncEngine | None = None) -> None:
    from . import models  # noqa: F401 - ensure models registered

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
