# lotledger/services/lot_ledger_queries.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, distinct, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from lotledger.db.types import utcnow
from lotledger.models.enums import LotState
from lotledger.models.lot_entry import LotEntry
from lotledger.services.errors import InvalidInputError
from lotledger.services.lot_alerts import active_alerts

SORT_FIELDS = {
    "intake_date": LotEntry.intake_date,
    "rotation_priority": LotEntry.rotation_priority,
    "expiry_date": LotEntry.expiry_date,
    "entry_number": LotEntry.entry_number,
    "created_at": LotEntry.created_at,
}

# 未显式给方向时的默认排序：rotation_priority 走 FIFO（升序），其余按时间倒序
_DEFAULT_DIR = {"rotation_priority": "asc", "entry_number": "asc", "expiry_date": "asc"}


@dataclass
class LotEntryFilter:
    state: Optional[str] = None
    catalog_item_id: Optional[int] = None
    product_id: Optional[int] = None
    created_by: Optional[str] = None
    intake_from: Optional[datetime] = None
    intake_to: Optional[datetime] = None
    search: Optional[str] = None


@dataclass
class PageRequest:
    page: int = 1
    page_size: int = 50
    sort_by: str = "intake_date"
    sort_dir: Optional[str] = None


def _money(v: Any) -> Decimal:
    return Decimal(str(v or 0)).quantize(Decimal("0.01"))


def _like(s: str) -> str:
    escaped = s.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def build_conditions(f: LotEntryFilter) -> List[Any]:
    conds: List[Any] = []
    if f.state:
        try:
            conds.append(LotEntry.state == LotState(f.state).value)
        except ValueError:
            raise InvalidInputError(f"unknown lot state: {f.state!r}", context={"state": f.state})
    if f.catalog_item_id is not None:
        conds.append(LotEntry.catalog_item_id == int(f.catalog_item_id))
    if f.product_id is not None:
        conds.append(LotEntry.product_id == int(f.product_id))
    if f.created_by:
        conds.append(func.lower(LotEntry.created_by).like(_like(f.created_by.lower()), escape="\\"))
    if f.intake_from is not None:
        conds.append(LotEntry.intake_date >= f.intake_from)
    if f.intake_to is not None:
        conds.append(LotEntry.intake_date <= f.intake_to)
    if f.search:
        pattern = _like(f.search.strip().lower())
        conds.append(
            or_(
                *[
                    func.lower(col).like(pattern, escape="\\")
                    for col in (
                        LotEntry.product_name,
                        LotEntry.product_code,
                        LotEntry.entry_number,
                        LotEntry.lot_code,
                        LotEntry.supplier,
                    )
                ]
            )
        )
    return conds


async def list_entries(
    session: AsyncSession,
    f: LotEntryFilter,
    page: PageRequest,
    *,
    max_page_size: int = 200,
) -> Dict[str, Any]:
    if page.sort_by not in SORT_FIELDS:
        raise InvalidInputError(
            f"unsupported sort field: {page.sort_by!r}",
            context={"sort_by": page.sort_by, "allowed": sorted(SORT_FIELDS)},
        )
    direction = (page.sort_dir or _DEFAULT_DIR.get(page.sort_by, "desc")).lower()
    if direction not in ("asc", "desc"):
        raise InvalidInputError("sort_dir must be asc or desc", context={"sort_dir": page.sort_dir})

    page_no = max(1, int(page.page or 1))
    size = max(1, min(int(page.page_size or 1), int(max_page_size)))

    conds = build_conditions(f)
    where = and_(*conds) if conds else None

    col = SORT_FIELDS[page.sort_by]
    order = col.asc() if direction == "asc" else col.desc()
    tie = LotEntry.id.asc() if direction == "asc" else LotEntry.id.desc()

    stmt = select(LotEntry)
    count_stmt = select(func.count(LotEntry.id))
    if where is not None:
        stmt = stmt.where(where)
        count_stmt = count_stmt.where(where)
    stmt = stmt.order_by(order, tie).offset((page_no - 1) * size).limit(size)

    entries = list(
        (await session.execute(stmt.execution_options(populate_existing=True))).scalars().all()
    )
    total = int((await session.execute(count_stmt)).scalar_one() or 0)

    # 汇总只统计 active
    agg = select(
        func.coalesce(func.sum(LotEntry.available), 0),
        func.coalesce(func.sum(LotEntry.available * LotEntry.purchase_price), 0),
    ).where(LotEntry.state == LotState.ACTIVE.value)
    if where is not None:
        agg = agg.where(where)
    total_available, total_value = (await session.execute(agg)).one()

    pages = (total + size - 1) // size if total else 0
    return {
        "entries": entries,
        "pagination": {
            "page": page_no,
            "page_size": size,
            "total": total,
            "pages": pages,
            "has_next": page_no < pages,
            "has_prev": page_no > 1,
        },
        "summary": {
            "total_entries": total,
            "total_available": int(total_available or 0),
            "total_value": _money(total_value),
        },
    }


async def summary_for_catalog_item(session: AsyncSession, catalog_item_id: int) -> Dict[str, Any]:
    cid = int(catalog_item_id)
    live = and_(LotEntry.catalog_item_id == cid, LotEntry.state != LotState.INACTIVE.value)

    row = (
        await session.execute(
            select(
                func.coalesce(func.sum(LotEntry.available), 0),
                func.coalesce(func.sum(LotEntry.reserved), 0),
                func.coalesce(func.sum(LotEntry.available * LotEntry.purchase_price), 0),
                func.count(LotEntry.id),
                func.min(LotEntry.expiry_date),
            ).where(live)
        )
    ).one()

    alert_rows = (
        await session.execute(
            select(LotEntry.id, LotEntry.entry_number, LotEntry.alerts)
            .where(live)
            .order_by(LotEntry.rotation_priority.asc(), LotEntry.id.asc())
        )
    ).all()
    alerts: List[Dict[str, Any]] = []
    for lot_id, number, lot_alerts in alert_rows:
        for a in active_alerts(lot_alerts):
            alerts.append({**a, "lot_entry_id": lot_id, "entry_number": number})

    return {
        "catalog_item_id": cid,
        "total_available": int(row[0] or 0),
        "total_reserved": int(row[1] or 0),
        "total_value": _money(row[2]),
        "lot_count": int(row[3] or 0),
        "next_expiry": row[4],
        "active_alerts": alerts,
    }


async def expiring_soon(
    session: AsyncSession, *, today: date, window_days: int
) -> List[Dict[str, Any]]:
    limit = today + timedelta(days=int(window_days))
    rows = (
        await session.execute(
            select(LotEntry)
            .where(
                LotEntry.state == LotState.ACTIVE.value,
                LotEntry.available > 0,
                LotEntry.expiry_date.is_not(None),
                LotEntry.expiry_date <= limit,
            )
            .order_by(LotEntry.expiry_date.asc(), LotEntry.id.asc())
            .execution_options(populate_existing=True)
        )
    ).scalars()
    return [
        {
            "lot_entry_id": e.id,
            "entry_number": e.entry_number,
            "product_name": e.product_name,
            "expiry_date": e.expiry_date,
            "available": int(e.available),
            "days_left": (e.expiry_date - today).days,
        }
        for e in rows
    ]


async def low_stock(session: AsyncSession) -> List[Dict[str, Any]]:
    rows = (
        await session.execute(
            select(LotEntry)
            .where(
                LotEntry.state == LotState.ACTIVE.value,
                LotEntry.available <= LotEntry.min_stock,
            )
            .order_by(LotEntry.available.asc(), LotEntry.id.asc())
            .execution_options(populate_existing=True)
        )
    ).scalars()
    return [
        {
            "lot_entry_id": e.id,
            "entry_number": e.entry_number,
            "product_name": e.product_name,
            "available": int(e.available),
            "min_stock": int(e.min_stock),
        }
        for e in rows
    ]


async def general_statistics(
    session: AsyncSession, *, window_days: int, now: Optional[datetime] = None
) -> Dict[str, Any]:
    now = now or utcnow()
    today = now.date()

    state_counts = dict(
        (await session.execute(select(LotEntry.state, func.count(LotEntry.id)).group_by(LotEntry.state))).all()
    )
    total = sum(int(v) for v in state_counts.values())
    active = int(state_counts.get(LotState.ACTIVE.value, 0))

    total_value = (
        await session.execute(
            select(
                func.coalesce(func.sum(LotEntry.available * LotEntry.purchase_price), 0)
            ).where(LotEntry.state == LotState.ACTIVE.value)
        )
    ).scalar_one()
    items_with_stock = (
        await session.execute(
            select(func.count(distinct(LotEntry.catalog_item_id))).where(
                LotEntry.state == LotState.ACTIVE.value, LotEntry.available > 0
            )
        )
    ).scalar_one()

    soon = await expiring_soon(session, today=today, window_days=window_days)
    low = await low_stock(session)

    return {
        "counts": {
            "total": total,
            "active": active,
            "inactive": total - active,
            "depleted": int(state_counts.get(LotState.DEPLETED.value, 0)),
            "by_state": {str(k): int(v) for k, v in state_counts.items()},
        },
        "valuation": {
            "total_value": _money(total_value),
            "items_with_stock": int(items_with_stock or 0),
        },
        "alerts": {
            "window_days": int(window_days),
            "expiring_soon": soon,
            "low_stock": low,
            "total": len(soon) + len(low),
        },
    }
