# lotledger/services/sequence_service.py
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy import case, select
from sqlalchemy.ext.asyncio import AsyncSession

from lotledger.core.config import LedgerSettings, get_settings
from lotledger.db.dialect import insert_for
from lotledger.db.types import UTC, utcnow
from lotledger.models.lot_entry import LotEntry
from lotledger.models.sequence_counter import SequenceCounter

log = logging.getLogger("lotledger.sequence")

_COUNTERS = SequenceCounter.__table__


class SequenceService:
    """
    入库单号生成器：

      key    = "<SEQUENCE_DOMAIN>_<YYYY-MM-DD>"
      number = "<ENTRY_PREFIX>-<YYYYMMDD>-<seq:03d>"

    自增只走一条原子语句：
        INSERT ... ON CONFLICT (key) DO UPDATE SET seq = seq + 1 RETURNING seq
    计数器不可用时直接抛错，不存在“数行数 + 1”之类的兜底编号。

    计数器与调用方共用同一个 session / 事务：事务回滚则编号随之作废，
    已提交的编号永不重复。
    """

    def __init__(self, settings: Optional[LedgerSettings] = None) -> None:
        self.settings = settings or get_settings()

    # ---------- 纯函数 ----------
    def business_day(self, on: Union[datetime, date, None] = None) -> date:
        if on is None:
            on = utcnow()
        if isinstance(on, datetime):
            if on.tzinfo is None:
                on = on.replace(tzinfo=UTC)
            return on.astimezone(ZoneInfo(self.settings.TIMEZONE)).date()
        return on

    def counter_key(self, day: date) -> str:
        return f"{self.settings.SEQUENCE_DOMAIN}_{day.isoformat()}"

    def entry_prefix(self, day: date) -> str:
        return f"{self.settings.ENTRY_PREFIX}-{day.strftime('%Y%m%d')}-"

    def format_entry_number(self, day: date, seq: int) -> str:
        return f"{self.entry_prefix(day)}{int(seq):03d}"

    def parse_entry_number(self, number: str) -> Optional[tuple[date, int]]:
        head = f"{self.settings.ENTRY_PREFIX}-"
        if not number or not number.startswith(head):
            return None
        parts = number[len(head):].split("-")
        if len(parts) != 2 or not parts[1].isdigit():
            return None
        try:
            day = datetime.strptime(parts[0], "%Y%m%d").date()
        except ValueError:
            return None
        return day, int(parts[1])

    # ---------- 原子自增 ----------
    async def next_value(self, session: AsyncSession, key: str) -> int:
        insert = insert_for(session)
        now = utcnow()
        stmt = (
            insert(_COUNTERS)
            .values(key=key, seq=1, updated_at=now)
            .on_conflict_do_update(
                index_elements=[_COUNTERS.c.key],
                set_={"seq": _COUNTERS.c.seq + 1, "updated_at": now},
            )
            .returning(_COUNTERS.c.seq)
        )
        seq = (await session.execute(stmt)).scalar_one()
        return int(seq)

    async def next_entry_number(
        self, session: AsyncSession, *, on: Union[datetime, date, None] = None
    ) -> str:
        day = self.business_day(on)
        seq = await self.next_value(session, self.counter_key(day))
        number = self.format_entry_number(day, seq)
        log.debug("issued entry number %s", number)
        return number

    # ---------- 诊断 / 修复 ----------
    async def peek(self, session: AsyncSession, *, day: date) -> int:
        row = await session.execute(
            select(SequenceCounter.seq).where(SequenceCounter.key == self.counter_key(day))
        )
        return int(row.scalar_one_or_none() or 0)

    async def highest_issued(self, session: AsyncSession, *, day: date) -> int:
        """lot_entries 里当天已出现过的最大序号（只用于对齐计数器，不用于发号）。"""
        prefix = self.entry_prefix(day)
        rows = await session.execute(
            select(LotEntry.entry_number).where(LotEntry.entry_number.like(prefix + "%"))
        )
        best = 0
        for (number,) in rows.all():
            tail = number[len(prefix):]
            if tail.isdigit():
                best = max(best, int(tail))
        return best

    async def realign(self, session: AsyncSession, *, day: date) -> int:
        """
        把当天计数器抬到不低于已落库的最大序号。
        计数器只升不降；本方法不发号。
        """
        floor = await self.highest_issued(session, day=day)
        insert = insert_for(session)
        now = utcnow()
        stmt = (
            insert(_COUNTERS)
            .values(key=self.counter_key(day), seq=floor, updated_at=now)
            .on_conflict_do_update(
                index_elements=[_COUNTERS.c.key],
                set_={
                    "seq": case(
                        (_COUNTERS.c.seq < floor, floor),
                        else_=_COUNTERS.c.seq,
                    ),
                    "updated_at": now,
                },
            )
            .returning(_COUNTERS.c.seq)
        )
        value = int((await session.execute(stmt)).scalar_one())
        log.info("sequence %s realigned to %d (highest issued=%d)", self.counter_key(day), value, floor)
        return value

    async def realign_all(self, session: AsyncSession) -> dict[str, int]:
        """对所有已有计数器的日期及当天逐一 realign（冲突键值未知时的兜底修复）。"""
        head = f"{self.settings.SEQUENCE_DOMAIN}_"
        keys = (
            await session.execute(
                select(SequenceCounter.key).where(SequenceCounter.key.like(head + "%"))
            )
        ).scalars().all()
        days = {self.business_day()}
        for key in keys:
            try:
                days.add(date.fromisoformat(key[len(head):]))
            except ValueError:
                continue
        out: dict[str, int] = {}
        for day in sorted(days):
            out[self.counter_key(day)] = await self.realign(session, day=day)
        return out
