# lotledger/jobs/lot_expiry_sweep.py
"""
Lot Expiry Sweep（过期批次批处理）

目标：
  - 把 expiry_date 已过（严格早于当天业务日）且仍在 active / fully_reserved 的批次标记为 expired
  - 走 LotLedgerService.set_state（版本 CAS + 流水），不直接写表
  - 幂等：已经 expired 的批次不会再被选中

用法：
  - 显式管理操作：
        python -m lotledger.jobs.lot_expiry_sweep
  - 也可以由 scheduler 定期调用 main()。
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lotledger.core.config import get_settings
from lotledger.core.logging import setup_logging
from lotledger.models.enums import LotState
from lotledger.models.lot_entry import LotEntry
from lotledger.services.errors import ConcurrentOperationError
from lotledger.services.lot_ledger_service import LotLedgerService

logger = logging.getLogger("lotledger.jobs.expiry")

SWEEP_ACTOR = "system:expiry-sweep"

_EXPIRABLE = (LotState.ACTIVE.value, LotState.FULLY_RESERVED.value)


class LotExpirySweep:
    def __init__(self, ledger: Optional[LotLedgerService] = None) -> None:
        self.ledger = ledger or LotLedgerService()

    async def run(
        self,
        session: AsyncSession,
        *,
        today: Optional[date] = None,
        actor: str = SWEEP_ACTOR,
    ) -> Dict[str, Any]:
        """不 commit；返回 {as_of, expired: [...], skipped: [...]}。"""
        as_of = today or self.ledger.sequence.business_day()

        ids = (
            (
                await session.execute(
                    select(LotEntry.id)
                    .where(
                        LotEntry.state.in_(_EXPIRABLE),
                        LotEntry.expiry_date.is_not(None),
                        LotEntry.expiry_date < as_of,
                    )
                    .order_by(LotEntry.expiry_date.asc(), LotEntry.id.asc())
                )
            )
            .scalars()
            .all()
        )

        expired: List[Dict[str, Any]] = []
        skipped: List[int] = []
        for lot_id in ids:
            try:
                entry = await self.ledger.set_state(
                    session,
                    lot_id,
                    LotState.EXPIRED,
                    reason=f"expired before {as_of.isoformat()}",
                    updated_by=actor,
                )
            except ConcurrentOperationError:
                logger.warning("lot %s changed concurrently during expiry sweep, skipped", lot_id)
                skipped.append(lot_id)
                continue
            expired.append(
                {
                    "lot_entry_id": entry.id,
                    "entry_number": entry.entry_number,
                    "expiry_date": entry.expiry_date.isoformat() if entry.expiry_date else None,
                    "available": int(entry.available),
                }
            )

        logger.info(
            "expiry sweep as of %s: expired=%d skipped=%d", as_of, len(expired), len(skipped)
        )
        return {"as_of": as_of.isoformat(), "expired": expired, "skipped": skipped}


async def main() -> None:
    """
    独立运行入口：连接 LEDGER_DATABASE_URL，扫描一次并提交。
    """
    from lotledger.db.session import close_engine, get_sessionmaker

    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, json=settings.JSON_LOG)

    try:
        async with get_sessionmaker()() as session:
            result = await LotExpirySweep().run(session)
            await session.commit()
            logger.info("[ExpirySweep] marked %d lot(s) expired", len(result["expired"]))
    finally:
        await close_engine()


if __name__ == "__main__":
    import asyncio

    asyncio.run(main())
