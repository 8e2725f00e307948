# tests/conftest.py
from __future__ import annotations

from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from lotledger.core.config import LedgerSettings
from lotledger.db.base import Base, init_models
from lotledger.db.engine import create_async_engine_safe
from lotledger.services.duplicate_reconcile_service import DuplicateReconcileService
from lotledger.services.integrity_guard import IntegrityGuard
from lotledger.services.lot_ledger_service import LotLedgerService
from lotledger.services.operation_guard import OperationGuard
from lotledger.services.sequence_service import SequenceService


# =========================================
# 每用例独立 SQLite 文件库（NullPool，避免跨 loop）
# =========================================
@pytest.fixture(scope="function")
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"


@pytest.fixture(scope="function")
def settings(database_url: str) -> LedgerSettings:
    return LedgerSettings(
        DATABASE_URL=database_url,
        TIMEZONE="UTC",
        GUARD_BACKEND="memory",
        GUARD_TIMEOUT_SECONDS=30.0,
        RECONCILE_LEASE_SECONDS=5.0,
        RECONCILE_POLL_SECONDS=0.05,
        VERSION_CONFLICT_RETRIES=3,
        MAX_REPAIR_ATTEMPTS=1,
    )


@pytest_asyncio.fixture(scope="function")
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine, None]:
    init_models()
    engine = create_async_engine_safe(database_url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """
    标准 Session：用例内自行 commit；结束时未提交的事务一律回滚。
    SQLite 下开着的事务持有写锁，调用会另开 session 的方法（租约 / 并发）前要先 commit。
    """
    async with session_factory() as sess:
        try:
            yield sess
        finally:
            if sess.in_transaction():
                await sess.rollback()


# =========================================
# 服务（与 app 里的单例同构，但绑定到本用例的库）
# =========================================
@pytest.fixture
def sequence(settings) -> SequenceService:
    return SequenceService(settings)


@pytest.fixture
def ledger(settings, sequence) -> LotLedgerService:
    return LotLedgerService(settings, sequence)


@pytest.fixture
def reconcile(settings, sequence, session_factory) -> DuplicateReconcileService:
    return DuplicateReconcileService(settings, sequence=sequence, session_factory=session_factory)


@pytest.fixture
def integrity(settings) -> IntegrityGuard:
    return IntegrityGuard(settings)


@pytest.fixture
def guard(settings, session_factory) -> OperationGuard:
    return OperationGuard(settings, session_factory=session_factory)


# =========================================
# FastAPI / httpx AsyncClient
# =========================================
@pytest_asyncio.fixture(scope="function")
async def client(
    session_factory, ledger, reconcile, sequence, guard
) -> AsyncGenerator[httpx.AsyncClient, None]:
    from lotledger.api import deps
    from lotledger.main import app

    async def _session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as sess:
            yield sess

    app.dependency_overrides[deps.get_session] = _session
    app.dependency_overrides[deps.get_ledger_service] = lambda: ledger
    app.dependency_overrides[deps.get_reconcile_service] = lambda: reconcile
    app.dependency_overrides[deps.get_sequence_service] = lambda: sequence
    app.dependency_overrides[deps.get_guard] = lambda: guard

    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(
            transport=transport,
            base_url="http://testserver",
            timeout=httpx.Timeout(10.0, connect=5.0, read=10.0, write=5.0, pool=5.0),
        ) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
