# lotledger/services/integrity_guard.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional, Type

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lotledger import metrics
from lotledger.core.config import LedgerSettings, get_settings
from lotledger.models.catalog_item import CatalogItem
from lotledger.models.product import Product
from lotledger.services.errors import (
    CatalogItemInactiveError,
    DataCorruptionError,
    LedgerError,
    NotFoundError,
    ReferenceCorruptionError,
)

logger = logging.getLogger("lotledger.integrity")


@dataclass
class ValidatedContext:
    product: Product
    catalog_item: CatalogItem
    repaired: List[str] = field(default_factory=list)


class IntegrityGuard:
    """
    库存操作前置校验（按 product_id）：

      1) 商品不存在                 -> NotFoundError
      2) 商品没挂目录项             -> 用商品字段合成一条目录项并回挂；失败 -> DataCorruptionError
      3) 挂的目录项已不存在         -> 以同一 id 重建目录项；失败 -> ReferenceCorruptionError
      4) 目录项已停用               -> CatalogItemInactiveError

    修复写在 SAVEPOINT 里：修复失败不会污染调用方事务。
    每一步最多尝试 MAX_REPAIR_ATTEMPTS 次，之后直接升级为 corruption 错误。
    修复是幂等的补充写入，调用方后续主操作失败也不需要撤销。
    """

    def __init__(self, settings: Optional[LedgerSettings] = None) -> None:
        self.settings = settings or get_settings()

    async def validate(self, session: AsyncSession, product_id: int) -> ValidatedContext:
        product = await session.get(Product, int(product_id), populate_existing=True)
        if product is None:
            raise NotFoundError(f"product {product_id} not found", context={"product_id": product_id})

        # 修复失败回滚 SAVEPOINT 会让 product 过期，先取出需要的字段
        pid = int(product.id)
        link = product.catalog_item_id
        fields = self._catalog_fields(product)
        repaired: List[str] = []

        if link is None:
            logger.warning("product %s has no catalog item link, synthesizing one", pid)
            item = await self._repair(
                session,
                lambda: self._synthesize_catalog_item(session, product, fields),
                kind="catalog_link_created",
                error_cls=DataCorruptionError,
                message=f"product {pid} has inconsistent data that cannot be repaired",
                product_id=pid,
                catalog_item_id=None,
            )
            repaired.append("catalog_link_created")
        else:
            item = await session.get(CatalogItem, int(link), populate_existing=True)
            if item is None:
                logger.warning("product %s links to missing catalog item %s, recreating it", pid, link)
                item = await self._repair(
                    session,
                    lambda: self._recreate_catalog_item(session, int(link), fields),
                    kind="catalog_item_recreated",
                    error_cls=ReferenceCorruptionError,
                    message=f"catalog reference {link} of product {pid} is corrupt and cannot be repaired",
                    product_id=pid,
                    catalog_item_id=int(link),
                )
                repaired.append("catalog_item_recreated")

        if not item.active:
            raise CatalogItemInactiveError(
                f"catalog item '{item.name}' is inactive",
                context={"product_id": pid, "catalog_item_id": item.id},
            )

        return ValidatedContext(product=product, catalog_item=item, repaired=repaired)

    # ------------------------------------------------------------------
    async def _repair(
        self,
        session: AsyncSession,
        attempt: Callable[[], Awaitable[CatalogItem]],
        *,
        kind: str,
        error_cls: Type[LedgerError],
        message: str,
        product_id: int,
        catalog_item_id: Optional[int],
    ) -> CatalogItem:
        last: Optional[BaseException] = None
        limit = int(self.settings.MAX_REPAIR_ATTEMPTS)
        for n in range(1, limit + 1):
            try:
                async with session.begin_nested():
                    item = await attempt()
                metrics.INTEGRITY_REPAIRS.labels(kind=kind).inc()
                logger.info("repair %s succeeded for product %s (catalog item %s)", kind, product_id, item.id)
                return item
            except SQLAlchemyError as e:
                last = e
                logger.warning("repair %s attempt %d/%d failed for product %s: %s", kind, n, limit, product_id, e)

        raise error_cls(
            message,
            context={
                "product_id": product_id,
                "catalog_item_id": catalog_item_id,
                "cause": str(last) if last else "",
            },
        ) from last

    @staticmethod
    def _catalog_fields(product: Product) -> dict:
        return {
            "code": (product.code or "").strip(),
            "name": product.name or (product.code or "unnamed"),
            "price": Decimal(product.price) if product.price is not None else Decimal("0"),
            "active": True,
        }

    @staticmethod
    def _new_item(fields: dict, **extra) -> CatalogItem:
        values = dict(fields, **extra)
        if not values["code"]:
            values["code"] = f"AUTO-{uuid.uuid4().hex[:10].upper()}"
        return CatalogItem(**values)

    async def _synthesize_catalog_item(
        self, session: AsyncSession, product: Product, fields: dict
    ) -> CatalogItem:
        item = self._new_item(fields)
        session.add(item)
        await session.flush()
        product.catalog_item_id = item.id
        await session.flush()
        return item

    async def _recreate_catalog_item(
        self, session: AsyncSession, catalog_item_id: int, fields: dict
    ) -> CatalogItem:
        item = self._new_item(fields, id=int(catalog_item_id))
        session.add(item)
        await session.flush()
        return item
