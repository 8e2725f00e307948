# lotledger/models/ledger_lease.py
from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from lotledger.db.base import Base
from lotledger.db.types import UTCDateTime, utcnow


class LedgerLease(Base):
    """
    共享存储里的租约锁（带 TTL）：跨实例互斥用。
    过期的租约可被任何实例直接抢占。
    """

    __tablename__ = "ledger_leases"

    name: Mapped[str] = mapped_column(sa.String(191), primary_key=True)
    holder: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<LedgerLease {self.name} holder={self.holder} exp={self.expires_at}>"
