# lotledger/api/routers/catalog_items.py
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from lotledger.api.deps import get_guard, get_ledger_service, get_session, guarded_write
from lotledger.schemas.lot_entry import FifoAllocationOut, FifoConsumeIn, FifoConsumeOut
from lotledger.services.lot_ledger_service import LotLedgerService
from lotledger.services.operation_guard import OperationGuard

router = APIRouter(prefix="/catalog-items", tags=["catalog-items"])

_ROUTE = "/catalog-items"


@router.get("/{catalog_item_id}/stock-summary")
async def stock_summary(
    catalog_item_id: int,
    session: AsyncSession = Depends(get_session),
    ledger: LotLedgerService = Depends(get_ledger_service),
) -> Dict[str, Any]:
    return await ledger.summary_for_catalog_item(session, catalog_item_id)


@router.post("/{catalog_item_id}/consume-fifo", response_model=FifoConsumeOut)
async def consume_fifo(
    catalog_item_id: int,
    payload: FifoConsumeIn,
    session: AsyncSession = Depends(get_session),
    ledger: LotLedgerService = Depends(get_ledger_service),
    guard: OperationGuard = Depends(get_guard),
) -> FifoConsumeOut:
    """按 rotation_priority 先进先出扣减，可跨批次拆分；可用量不足时一件都不扣。"""
    key = OperationGuard.key_for("POST", f"{_ROUTE}/{catalog_item_id}/consume-fifo", catalog_item_id)
    async with guarded_write(session, guard, key):
        rows = await ledger.consume_from_item(
            session,
            catalog_item_id,
            payload.quantity,
            reason=payload.reason,
            actor=payload.actor,
            authorized=payload.authorized,
        )
    return FifoConsumeOut(
        catalog_item_id=catalog_item_id,
        requested=payload.quantity,
        allocations=[FifoAllocationOut.model_validate(r) for r in rows],
    )


@router.post("/{catalog_item_id}/recompute")
async def recompute_stock(
    catalog_item_id: int,
    dry_run: bool = True,
    session: AsyncSession = Depends(get_session),
    ledger: LotLedgerService = Depends(get_ledger_service),
    guard: OperationGuard = Depends(get_guard),
) -> Dict[str, Any]:
    """以批次为准重建商品冗余库存；dry_run=True 只返回差异。"""
    key = OperationGuard.key_for("POST", f"{_ROUTE}/{catalog_item_id}/recompute", catalog_item_id)
    async with guarded_write(session, guard, key):
        return await ledger.recompute(session, catalog_item_id, dry_run=dry_run)
