# alembic/env.py：批次台账迁移入口，DSN 取自 LEDGER_DATABASE_URL（同步驱动执行）
from __future__ import annotations

import os
from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

from lotledger.db.base import Base, init_models  # noqa: E402
from lotledger.db.session import normalize_async_dsn  # noqa: E402

# 运行期走 psycopg(async) / aiosqlite，迁移统一换成同步驱动
_SYNC_DRIVERS = {
    "sqlite+aiosqlite://": "sqlite://",
}


def migration_url() -> str:
    raw = os.getenv("LEDGER_DATABASE_URL") or config.get_main_option("sqlalchemy.url") or ""
    if not raw.strip():
        raise RuntimeError("set LEDGER_DATABASE_URL (or sqlalchemy.url in alembic.ini) before migrating")
    url = normalize_async_dsn(raw)
    for async_prefix, sync_prefix in _SYNC_DRIVERS.items():
        if url.startswith(async_prefix):
            return sync_prefix + url[len(async_prefix) :]
    # postgresql+psycopg 同一个 URL 同步/异步通用
    return url


def _skip_unknown(obj: Any, name: str | None, type_: str, reflected: bool, compare_to: Any) -> bool:
    """库里有、模型里没有的对象不参与 autogenerate，避免生成 drop。"""
    return not (reflected and compare_to is None)


def _options(url: str) -> dict[str, Any]:
    return {
        "target_metadata": Base.metadata,
        "compare_type": True,
        "include_object": _skip_unknown,
        "render_as_batch": url.startswith("sqlite"),
    }


def run_migrations_offline() -> None:
    init_models()
    url = migration_url()
    context.configure(url=url, literal_binds=True, dialect_opts={"paramstyle": "named"}, **_options(url))
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    init_models()
    url = migration_url()
    engine = create_engine(url, poolclass=NullPool)
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, **_options(url))
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
