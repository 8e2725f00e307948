# lotledger/api/routers/lot_entries.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from lotledger.api.deps import (
    get_guard,
    get_intake_usecase,
    get_ledger_service,
    get_session,
    guarded_write,
)
from lotledger.schemas.lot_entry import (
    ConsumeIn,
    LotEntryCreateIn,
    LotEntryCreateOut,
    LotEntryDeleteOut,
    LotEntryListOut,
    LotEntryOut,
    LotEntryUpdateIn,
    LotStateIn,
    ReserveIn,
    RestockIn,
)
from lotledger.services.lot_ledger_queries import LotEntryFilter, PageRequest
from lotledger.services.lot_ledger_service import LotConfig, LotLedgerService
from lotledger.services.operation_guard import OperationGuard
from lotledger.usecases.lot_intake import LotIntakeUseCase

router = APIRouter(prefix="/lot-entries", tags=["lot-entries"])

_ROUTE = "/lot-entries"


def _lot_key(method: str, entry_id: int, action: str = "") -> str:
    """同一批次、同一动作互斥；不同动作 / 不同批次互不影响。"""
    path = f"{_ROUTE}/{entry_id}" + (f"/{action}" if action else "")
    return OperationGuard.key_for(method, path, entry_id)


def intake_key(*, product_id=None, catalog_item_id=None) -> str:
    if product_id is not None:
        return OperationGuard.key_for("POST", f"{_ROUTE}:product", product_id)
    return OperationGuard.key_for("POST", f"{_ROUTE}:catalog", catalog_item_id)


@router.post("", response_model=LotEntryCreateOut, status_code=status.HTTP_201_CREATED)
async def create_lot_entry(
    payload: LotEntryCreateIn,
    session: AsyncSession = Depends(get_session),
    intake: LotIntakeUseCase = Depends(get_intake_usecase),
    guard: OperationGuard = Depends(get_guard),
) -> LotEntryCreateOut:
    """
    入库：
    - 按 product_id 时先做引用完整性校验（必要时自修复）
    - 编号冲突时自动去重后重试一次
    """
    data = payload.model_dump(exclude={"config"})
    cfg = LotConfig(**payload.config.model_dump()) if payload.config else None
    key = intake_key(product_id=payload.product_id, catalog_item_id=payload.catalog_item_id)
    async with guard.hold(key):
        result = await intake.execute(session, config=cfg, **data)

    return LotEntryCreateOut(
        entry=LotEntryOut.model_validate(result.entry),
        repaired=result.repaired,
        reconciled=result.reconciled,
    )


@router.get("", response_model=LotEntryListOut)
async def list_lot_entries(
    state: Optional[str] = None,
    catalog_item_id: Optional[int] = None,
    product_id: Optional[int] = None,
    created_by: Optional[str] = None,
    intake_from: Optional[datetime] = None,
    intake_to: Optional[datetime] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1),
    sort_by: str = "intake_date",
    sort_dir: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
    ledger: LotLedgerService = Depends(get_ledger_service),
) -> LotEntryListOut:
    filters = LotEntryFilter(
        state=state,
        catalog_item_id=catalog_item_id,
        product_id=product_id,
        created_by=created_by,
        intake_from=intake_from,
        intake_to=intake_to,
        search=search,
    )
    req = PageRequest(
        page=page,
        page_size=page_size or ledger.settings.DEFAULT_PAGE_SIZE,
        sort_by=sort_by,
        sort_dir=sort_dir,
    )
    out = await ledger.list_entries(session, filters, req)
    return LotEntryListOut.model_validate(out, from_attributes=True)


@router.get("/statistics")
async def lot_statistics(
    window_days: Optional[int] = None,
    session: AsyncSession = Depends(get_session),
    ledger: LotLedgerService = Depends(get_ledger_service),
) -> Dict[str, Any]:
    return await ledger.general_statistics(session, window_days=window_days)


@router.get("/{entry_id}", response_model=LotEntryOut)
async def get_lot_entry(
    entry_id: int,
    session: AsyncSession = Depends(get_session),
    ledger: LotLedgerService = Depends(get_ledger_service),
) -> LotEntryOut:
    return LotEntryOut.model_validate(await ledger.get_entry(session, entry_id))


@router.patch("/{entry_id}", response_model=LotEntryOut)
async def update_lot_entry(
    entry_id: int,
    payload: LotEntryUpdateIn,
    session: AsyncSession = Depends(get_session),
    ledger: LotLedgerService = Depends(get_ledger_service),
    guard: OperationGuard = Depends(get_guard),
) -> LotEntryOut:
    async with guarded_write(session, guard, _lot_key("PATCH", entry_id)):
        entry = await ledger.update_entry(
            session, entry_id, updated_by=payload.updated_by, **payload.changes()
        )
    return LotEntryOut.model_validate(entry)


@router.post("/{entry_id}/state", response_model=LotEntryOut)
async def set_lot_state(
    entry_id: int,
    payload: LotStateIn,
    session: AsyncSession = Depends(get_session),
    ledger: LotLedgerService = Depends(get_ledger_service),
    guard: OperationGuard = Depends(get_guard),
) -> LotEntryOut:
    async with guarded_write(session, guard, _lot_key("POST", entry_id, "state")):
        entry = await ledger.set_state(
            session, entry_id, payload.state, reason=payload.reason, updated_by=payload.updated_by
        )
    return LotEntryOut.model_validate(entry)


@router.delete("/{entry_id}", response_model=LotEntryDeleteOut)
async def delete_lot_entry(
    entry_id: int,
    session: AsyncSession = Depends(get_session),
    ledger: LotLedgerService = Depends(get_ledger_service),
    guard: OperationGuard = Depends(get_guard),
) -> LotEntryDeleteOut:
    async with guarded_write(session, guard, _lot_key("DELETE", entry_id)):
        out = await ledger.delete_entry(session, entry_id)
    return LotEntryDeleteOut.model_validate(out)


# ---------------------------
# 库存动作（同一批次的并发请求 429）
# ---------------------------
@router.post("/{entry_id}/consume", response_model=LotEntryOut)
async def consume_lot(
    entry_id: int,
    payload: ConsumeIn,
    session: AsyncSession = Depends(get_session),
    ledger: LotLedgerService = Depends(get_ledger_service),
    guard: OperationGuard = Depends(get_guard),
) -> LotEntryOut:
    async with guarded_write(session, guard, _lot_key("POST", entry_id, "consume")):
        entry = await ledger.consume(
            session,
            entry_id,
            payload.quantity,
            reason=payload.reason,
            actor=payload.actor,
            notes=payload.notes,
            authorized=payload.authorized,
        )
    return LotEntryOut.model_validate(entry)


@router.post("/{entry_id}/restock", response_model=LotEntryOut)
async def restock_lot(
    entry_id: int,
    payload: RestockIn,
    session: AsyncSession = Depends(get_session),
    ledger: LotLedgerService = Depends(get_ledger_service),
    guard: OperationGuard = Depends(get_guard),
) -> LotEntryOut:
    async with guarded_write(session, guard, _lot_key("POST", entry_id, "restock")):
        entry = await ledger.restock(
            session,
            entry_id,
            payload.quantity,
            reason=payload.reason,
            actor=payload.actor,
            notes=payload.notes,
        )
    return LotEntryOut.model_validate(entry)


@router.post("/{entry_id}/reserve", response_model=LotEntryOut)
async def reserve_lot(
    entry_id: int,
    payload: ReserveIn,
    session: AsyncSession = Depends(get_session),
    ledger: LotLedgerService = Depends(get_ledger_service),
    guard: OperationGuard = Depends(get_guard),
) -> LotEntryOut:
    async with guarded_write(session, guard, _lot_key("POST", entry_id, "reserve")):
        entry = await ledger.reserve(session, entry_id, payload.quantity, actor=payload.actor)
    return LotEntryOut.model_validate(entry)


@router.post("/{entry_id}/release", response_model=LotEntryOut)
async def release_lot(
    entry_id: int,
    payload: ReserveIn,
    session: AsyncSession = Depends(get_session),
    ledger: LotLedgerService = Depends(get_ledger_service),
    guard: OperationGuard = Depends(get_guard),
) -> LotEntryOut:
    async with guarded_write(session, guard, _lot_key("POST", entry_id, "release")):
        entry = await ledger.release(session, entry_id, payload.quantity, actor=payload.actor)
    return LotEntryOut.model_validate(entry)
