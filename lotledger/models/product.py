# lotledger/models/product.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Index, Integer, Numeric, String, text
from sqlalchemy.orm import Mapped, mapped_column

from lotledger.db.base import Base
from lotledger.db.types import UTCDateTime, utcnow


class Product(Base):
    """
    可售商品（销售模块的视图；外部协作方）

    - catalog_item_id 为软引用（无外键）：源系统是文档库，悬空引用真实存在，
      由 IntegrityGuard 负责修复
    - quantity_on_hand / quantity_sold 为批次台账的冗余计数，尽力同步，
      以批次为准（见 ProductStockSync.recompute）

    唯一约束（重复数据自愈的依据）：
      - uq_products_code               (code)
      - uq_products_catalog_category   (catalog_item_id, category_id)
    """

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)

    category_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    category_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    catalog_item_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)

    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    quantity_on_hand: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    quantity_sold: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("uq_products_code", "code", unique=True),
        Index("uq_products_catalog_category", "catalog_item_id", "category_id", unique=True),
    )

    def __repr__(self) -> str:
        return (
            f"<Product id={self.id} code={self.code} catalog={self.catalog_item_id} "
            f"category={self.category_id} on_hand={self.quantity_on_hand}>"
        )
