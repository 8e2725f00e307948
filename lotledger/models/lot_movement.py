# lotledger/models/lot_movement.py
from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from lotledger.db.base import Base
from lotledger.db.types import UTCDateTime, utcnow


class LotMovement(Base):
    """
    批次流水（只增不改，尽力写入；写失败不回滚库存变更）
    """

    __tablename__ = "lot_movements"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    lot_entry_id: Mapped[int] = mapped_column(sa.Integer, nullable=False, index=True)

    kind: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    reason: Mapped[str] = mapped_column(sa.String(32), nullable=False, default="")
    actor: Mapped[str] = mapped_column(sa.String(64), nullable=False, default="")
    notes: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")

    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (sa.Index("ix_lot_movements_entry_time", "lot_entry_id", "occurred_at"),)

    def __repr__(self) -> str:
        return (
            f"<LotMovement lot={self.lot_entry_id} {self.kind} qty={self.quantity} "
            f"reason={self.reason} actor={self.actor}>"
        )
