# lotledger/db/engine.py
# 统一引擎工厂：PG 下注入 server_settings；SQLite 改为 BEGIN IMMEDIATE 以串行化写事务
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

__all__ = ["create_async_engine_safe"]


def _connect_args_for(url_str: str) -> dict[str, Any]:
    """
    返回后端专属 connect_args：
    - PostgreSQL(psycopg): 不传 server_settings（psycopg3 不支持该参数）
    - SQLite: busy timeout，等锁而不是立刻报 database is locked
    """
    backend = make_url(url_str).get_backend_name()

    if backend.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": 30}

    return {}


def _install_sqlite_immediate_begin(engine: AsyncEngine) -> None:
    """
    pysqlite/aiosqlite 默认的 BEGIN 是 DEFERRED，并发写入时读锁升级会直接 BUSY；
    关掉驱动自带的 BEGIN，由 SQLAlchemy 在事务开始时发 BEGIN IMMEDIATE。
    同时让 SAVEPOINT（begin_nested）可用。
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_async_engine_safe(url_str: str, *, echo: bool = False, **extra: Any) -> AsyncEngine:
    """Async 引擎（'postgresql+psycopg' 或 'sqlite+aiosqlite'）。"""
    connect_args: dict[str, Any] = _connect_args_for(url_str)
    backend = make_url(url_str).get_backend_name()

    kwargs: dict[str, Any] = {"echo": echo}
    if backend.startswith("postgresql"):
        kwargs["pool_pre_ping"] = True
    if connect_args:
        kwargs["connect_args"] = connect_args
    kwargs.update(extra)

    engine = create_async_engine(url_str, **kwargs)
    if backend.startswith("sqlite"):
        _install_sqlite_immediate_begin(engine)
    return engine
