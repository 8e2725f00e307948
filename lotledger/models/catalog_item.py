# lotledger/models/catalog_item.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, Index, Integer, Numeric, String, text
from sqlalchemy.orm import Mapped, mapped_column

from lotledger.db.base import Base
from lotledger.db.types import UTCDateTime, utcnow


class CatalogItem(Base):
    """
    商品目录（外部协作方，只用到最小形状）：

        id / code（唯一） / name / price / active
    """

    __tablename__ = "catalog_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("uq_catalog_items_code", "code", unique=True),)

    def __repr__(self) -> str:
        return f"<CatalogItem id={self.id} code={self.code} active={self.active}>"
