# lotledger/db/session.py
# 统一的异步会话工厂 + FastAPI 依赖（get_session）
from __future__ import annotations

import logging
import re
from collections.abc import AsyncGenerator
from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from lotledger.core.config import get_settings
from lotledger.db.engine import create_async_engine_safe

log = logging.getLogger("lotledger.db")


def normalize_async_dsn(url: str) -> str:
    """把常见 DSN 写法统一到 psycopg3 / aiosqlite。"""
    url = url.strip()
    if (url.startswith('"') and url.endswith('"')) or (url.startswith("'") and url.endswith("'")):
        url = url[1:-1].strip()
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite://" + url[len("sqlite:///") - 1 :]
    if url.startswith("postgresql+asyncpg://") or url.startswith("postgres+asyncpg://"):
        return re.sub(r"^postgres(?:ql)?\+asyncpg://", "postgresql+psycopg://", url)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


@lru_cache
def get_engine() -> AsyncEngine:
    settings = get_settings()
    dsn = normalize_async_dsn(settings.DATABASE_URL)
    log.info("Using DSN (async): %s", make_safe_dsn(dsn))
    return create_async_engine_safe(dsn, echo=settings.SQL_ECHO)


@lru_cache
def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=get_engine(), class_=AsyncSession, expire_on_commit=False)


def make_safe_dsn(dsn: str) -> str:
    """日志里隐藏密码。"""
    return re.sub(r"://([^:/@]+):([^@]+)@", r"://\1:***@", dsn)


# ---- FastAPI 依赖 ----
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with get_sessionmaker()() as session:
        yield session


async def close_engine() -> None:
    # 从未建立过连接时不必创建引擎
    if get_engine.cache_info().currsize == 0:
        return
    await get_engine().dispose()
