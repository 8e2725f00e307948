# lotledger/models/sequence_counter.py
from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from lotledger.db.base import Base
from lotledger.db.types import UTCDateTime, utcnow


class SequenceCounter(Base):
    """
    按日计数器：key = "<domain>_<YYYY-MM-DD>"

    只允许通过单条原子语句（upsert + returning）自增，禁止先读后写。
    """

    __tablename__ = "sequence_counters"

    key: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    seq: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<SequenceCounter {self.key}={self.seq}>"
