# lotledger/services/product_stock_sync.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lotledger import metrics
from lotledger.db.types import utcnow
from lotledger.models.lot_entry import LotEntry
from lotledger.models.product import Product

logger = logging.getLogger("lotledger.product_sync")


def _floor_zero(col, delta: int):
    return case((col + delta < 0, 0), else_=col + delta)


class ProductStockSync:
    """
    商品冗余库存计数（quantity_on_hand / quantity_sold）：

    - apply_delta：随消耗 / 补货做增量同步，尽力而为（SAVEPOINT，失败只记日志）
    - recompute  ：以批次台账为准重算，返回 ledger vs product 差异（dry_run 只出报告）

    归属：批次按 lot.product_id 归到商品；未挂商品的批次计入 unattributed。
    """

    @staticmethod
    async def apply_delta(
        session: AsyncSession,
        product_id: Optional[int],
        *,
        on_hand: int = 0,
        sold: int = 0,
    ) -> bool:
        if product_id is None or (on_hand == 0 and sold == 0):
            return True
        try:
            async with session.begin_nested():
                res = await session.execute(
                    update(Product)
                    .where(Product.id == int(product_id))
                    .values(
                        quantity_on_hand=_floor_zero(Product.quantity_on_hand, int(on_hand)),
                        quantity_sold=_floor_zero(Product.quantity_sold, int(sold)),
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if (res.rowcount or 0) == 0:
                    logger.warning("product %s not found; stock counters not synced", product_id)
                    return False
            return True
        except SQLAlchemyError as e:
            metrics.SIDE_EFFECT_FAILURES.labels(kind="product_sync").inc()
            logger.warning(
                "product %s stock sync failed (on_hand%+d sold%+d): %s",
                product_id,
                on_hand,
                sold,
                e,
            )
            return False

    @staticmethod
    async def recompute(
        session: AsyncSession,
        catalog_item_id: int,
        *,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        cid = int(catalog_item_id)

        sql_ledger = (
            select(
                LotEntry.product_id,
                func.coalesce(func.sum(LotEntry.available), 0),
                func.coalesce(func.sum(LotEntry.sold - LotEntry.returned), 0),
            )
            .where(LotEntry.catalog_item_id == cid)
            .group_by(LotEntry.product_id)
        )
        ledger_map: Dict[Optional[int], tuple[int, int]] = {
            pid: (int(avail), int(sold))
            for pid, avail, sold in (await session.execute(sql_ledger)).all()
        }
        unattributed = ledger_map.pop(None, (0, 0))

        linked_ids = [pid for pid in ledger_map.keys()]
        cond = Product.catalog_item_id == cid
        if linked_ids:
            cond = or_(cond, Product.id.in_(linked_ids))
        products = (
            (
                await session.execute(
                    select(Product)
                    .where(cond)
                    .order_by(Product.id)
                    .execution_options(populate_existing=True)
                )
            )
            .scalars()
            .all()
        )

        diffs = []
        for p in products:
            ledger_on_hand, ledger_sold = ledger_map.get(p.id, (0, 0))
            product_on_hand = int(p.quantity_on_hand or 0)
            product_sold = int(p.quantity_sold or 0)
            diff_on_hand = ledger_on_hand - product_on_hand
            diff_sold = ledger_sold - product_sold
            diffs.append(
                {
                    "product_id": p.id,
                    "product_code": p.code,
                    "ledger_on_hand": ledger_on_hand,
                    "product_on_hand": product_on_hand,
                    "diff_on_hand": diff_on_hand,
                    "ledger_sold": ledger_sold,
                    "product_sold": product_sold,
                    "diff_sold": diff_sold,
                    "action": "NONE" if diff_on_hand == 0 and diff_sold == 0 else "SET",
                }
            )

        changed = [d for d in diffs if d["action"] == "SET"]
        if not dry_run:
            for d in changed:
                await session.execute(
                    update(Product)
                    .where(Product.id == d["product_id"])
                    .values(
                        quantity_on_hand=d["ledger_on_hand"],
                        quantity_sold=d["ledger_sold"],
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
            if changed:
                logger.info(
                    "recomputed %d product counter(s) for catalog item %s", len(changed), cid
                )

        return {
            "catalog_item_id": cid,
            "dry_run": bool(dry_run),
            "count": len(changed),
            "products": diffs,
            "unattributed": {"available": unattributed[0], "sold": unattributed[1]},
        }
