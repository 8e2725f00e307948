# lotledger/models/lot_entry.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from lotledger.db.base import Base
from lotledger.db.types import UTCDateTime, utcnow
from lotledger.models.enums import LotState


class LotEntry(Base):
    """
    批次入库单（台账行，一次实物入库 = 一行）

    身份：
        id             系统主键
        entry_number   ENT-<YYYYMMDD>-<seq:03d>，全局唯一

    数量桶（件数，非负）：
        initial / available / reserved / sold / returned / lost
        约束：available + reserved + sold + lost - returned <= initial
        （由 services.lot_rules 在每次变更时校验，available 直接维护不反推）

    价格：
        purchase_price > 0；total_cost = initial * purchase_price（仅改进价时重算）

    状态：
        见 LotState；只有 depleted 由系统自动推导

    并发：
        version 为乐观锁版本号，所有读改写都按 (id, version) 条件更新
    """

    __tablename__ = "lot_entries"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    entry_number: Mapped[str] = mapped_column(sa.String(32), nullable=False)

    # 引用（软引用）
    catalog_item_id: Mapped[int] = mapped_column(sa.Integer, nullable=False, index=True)
    product_id: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True, index=True)

    # 冗余展示字段（创建时复制，不自动回写）
    product_code: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    product_name: Mapped[str] = mapped_column(sa.String(128), nullable=False)

    # 批次 / 追溯
    lot_code: Mapped[str] = mapped_column(sa.String(64), nullable=False, default="")
    supplier: Mapped[str] = mapped_column(sa.String(128), nullable=False, default="")
    invoice_number: Mapped[str] = mapped_column(sa.String(64), nullable=False, default="")
    notes: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    intake_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    expiry_date: Mapped[Optional[date]] = mapped_column(sa.Date, nullable=True)

    # 数量桶
    initial: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    available: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    reserved: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    sold: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    returned: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    lost: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    # 价格
    purchase_price: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), nullable=False)
    sale_price: Mapped[Optional[Decimal]] = mapped_column(sa.Numeric(12, 2), nullable=True)
    total_cost: Mapped[Decimal] = mapped_column(sa.Numeric(14, 2), nullable=False)

    # 状态
    state: Mapped[str] = mapped_column(
        sa.String(16), nullable=False, default=LotState.ACTIVE.value
    )
    state_reason: Mapped[str] = mapped_column(sa.String(255), nullable=False, default="")
    rotation_priority: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)

    # 审计
    created_by: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    created_by_email: Mapped[str] = mapped_column(sa.String(128), nullable=False, default="")
    created_by_role: Mapped[str] = mapped_column(sa.String(32), nullable=False, default="user")
    updated_by: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    # 预警
    alerts: Mapped[list[dict[str, Any]]] = mapped_column(sa.JSON, nullable=False, default=list)
    next_alert_on: Mapped[Optional[date]] = mapped_column(sa.Date, nullable=True)

    # 单批次配置
    allow_partial_sale: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    expiry_alert_days: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=7)
    min_stock: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    requires_authorization: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=False
    )

    version: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)

    __table_args__ = (
        sa.Index("uq_lot_entries_entry_number", "entry_number", unique=True),
        sa.Index("ix_lot_entries_catalog_intake", "catalog_item_id", "intake_date"),
        sa.Index("ix_lot_entries_state_intake", "state", "intake_date"),
        sa.Index("ix_lot_entries_rotation", "catalog_item_id", "state", "rotation_priority"),
        sa.Index("ix_lot_entries_expiry_state", "expiry_date", "state"),
        sa.Index("ix_lot_entries_created_by", "created_by", "intake_date"),
        sa.Index("ix_lot_entries_supplier", "supplier", "intake_date"),
    )

    # ---------- 只读派生 ----------
    @property
    def usage_percent(self) -> int:
        if not self.initial:
            return 0
        used = int(self.sold or 0) + int(self.lost or 0)
        return round(used * 100 / int(self.initial))

    @property
    def valuation(self) -> Decimal:
        return Decimal(int(self.available or 0)) * Decimal(self.purchase_price or 0)

    def __repr__(self) -> str:
        return (
            f"<LotEntry id={self.id} no={self.entry_number} catalog={self.catalog_item_id} "
            f"state={self.state} avail={self.available}/{self.initial} v={self.version}>"
        )
