# lotledger/db/dialect.py
# 方言相关的 INSERT 构造：PostgreSQL / SQLite 都支持 ON CONFLICT ... RETURNING
from __future__ import annotations

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def dialect_name(session: AsyncSession) -> str:
    return session.get_bind().dialect.name


def insert_for(session: AsyncSession):
    """返回当前方言的 insert()，带 on_conflict_do_update / on_conflict_do_nothing。"""
    name = dialect_name(session)
    try:
        return _INSERTS[name]
    except KeyError:
        raise RuntimeError(f"upsert not supported on dialect {name!r}") from None
