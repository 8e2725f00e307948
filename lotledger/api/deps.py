# lotledger/api/deps.py
from __future__ import annotations

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from lotledger.core.config import get_settings
from lotledger.db.session import get_session  # noqa: F401  统一出口
from lotledger.services.duplicate_reconcile_service import DuplicateReconcileService
from lotledger.services.lot_ledger_service import LotLedgerService
from lotledger.services.operation_guard import OperationGuard, get_operation_guard
from lotledger.services.sequence_service import SequenceService
from lotledger.usecases.lot_intake import LotIntakeUseCase


# ---------------------------
# 服务单例（进程内共享）
# reconcile 的 asyncio.Lock / 统计，guard 的占位表都必须是同一个实例
# ---------------------------
@lru_cache
def get_sequence_service() -> SequenceService:
    return SequenceService(get_settings())


@lru_cache
def get_ledger_service() -> LotLedgerService:
    return LotLedgerService(get_settings(), get_sequence_service())


@lru_cache
def get_reconcile_service() -> DuplicateReconcileService:
    return DuplicateReconcileService(get_settings(), sequence=get_sequence_service())


def get_guard() -> OperationGuard:
    return get_operation_guard()


def get_intake_usecase(
    ledger: LotLedgerService = Depends(get_ledger_service),
    reconcile: DuplicateReconcileService = Depends(get_reconcile_service),
) -> LotIntakeUseCase:
    return LotIntakeUseCase(ledger, reconcile)


@asynccontextmanager
async def guarded_write(
    session: AsyncSession, guard: OperationGuard, key: str
) -> AsyncIterator[None]:
    """
    同一 key 的写操作互斥；块内正常结束则 commit，任何异常先 rollback 再抛出。
    """
    async with guard.hold(key):
        try:
            yield
            await session.commit()
        except Exception:
            await session.rollback()
            raise
