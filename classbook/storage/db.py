# classbook/storage/db.py
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from classbook.config import settings

class Base(DeclarativeBase):
    pass

def make_engine(url: str) -> AsyncEngine:
    connect_args = {}
    if url.startswith("sqlite"):
        # concurrent writers wait on the file lock instead of failing fast
        connect_args["timeout"] = 30
    return create_async_engine(
        url,
        future=True,
        pool_pre_ping=True,
        echo=False,
        connect_args=connect_args,
    )

def make_sessionmaker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

engine = make_engine(settings.db_url)

SessionLocal: async_sessionmaker[AsyncSession] = make_sessionmaker(engine)

async def init_db(bind: AsyncEngine | None = None) -> None:
    from classbook.storage import models  # noqa: F401  (registers tables)

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

@asynccontextmanager
async def get_session_ctx() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session
