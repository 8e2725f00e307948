# lotledger/api/routers/reconcile.py
# 运维入口：重复数据清理、编号计数器校准、预警刷新、过期批处理
from __future__ import annotations

from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from lotledger.api.deps import (
    get_ledger_service,
    get_reconcile_service,
    get_sequence_service,
    get_session,
)
from lotledger.jobs.lot_expiry_sweep import LotExpirySweep
from lotledger.services.duplicate_reconcile_service import DuplicateReconcileService
from lotledger.services.lot_ledger_service import LotLedgerService
from lotledger.services.sequence_service import SequenceService

router = APIRouter(prefix="/reconcile", tags=["reconcile"])


@router.get("/stats")
async def cleanup_stats(
    reconcile: DuplicateReconcileService = Depends(get_reconcile_service),
) -> Dict[str, Any]:
    return reconcile.stats()


@router.post("/sweep")
async def sweep_duplicates(
    session: AsyncSession = Depends(get_session),
    reconcile: DuplicateReconcileService = Depends(get_reconcile_service),
) -> Dict[str, Any]:
    return await reconcile.sweep_now(session)


@router.post("/check")
async def check_and_clean(
    session: AsyncSession = Depends(get_session),
    reconcile: DuplicateReconcileService = Depends(get_reconcile_service),
) -> Dict[str, Any]:
    return await reconcile.sweep_now(session, only_if_needed=True)


@router.post("/sequences/realign")
async def realign_sequences(
    session: AsyncSession = Depends(get_session),
    sequence: SequenceService = Depends(get_sequence_service),
) -> Dict[str, Any]:
    counters = await sequence.realign_all(session)
    await session.commit()
    return {"counters": counters}


@router.post("/alerts/refresh")
async def refresh_alerts(
    session: AsyncSession = Depends(get_session),
    ledger: LotLedgerService = Depends(get_ledger_service),
) -> Dict[str, Any]:
    changed = await ledger.refresh_alerts(session)
    await session.commit()
    return {"changed": changed}


@router.post("/expiry-sweep")
async def expiry_sweep(
    today: Optional[date] = None,
    session: AsyncSession = Depends(get_session),
    ledger: LotLedgerService = Depends(get_ledger_service),
) -> Dict[str, Any]:
    result = await LotExpirySweep(ledger).run(session, today=today)
    await session.commit()
    return result
