# lotledger/services/movement_writer.py
from __future__ import annotations

import logging

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lotledger.models.lot_movement import LotMovement

logger = logging.getLogger("lotledger.movements")


class MovementWriter:
    """
    批次流水写入器：

    - 唯一职责：往 lot_movements 写一行。
    - 尽力而为：写在 SAVEPOINT 里，失败只回滚这一行并打日志，
      库存变更照常生效。
    """

    @staticmethod
    async def write(
        session: AsyncSession,
        *,
        lot_entry_id: int,
        kind: str,
        quantity: int,
        reason: str = "",
        actor: str = "",
        notes: str = "",
    ) -> bool:
        try:
            async with session.begin_nested():
                session.add(
                    LotMovement(
                        lot_entry_id=int(lot_entry_id),
                        kind=str(kind),
                        quantity=int(quantity),
                        reason=str(reason or ""),
                        actor=str(actor or ""),
                        notes=str(notes or ""),
                    )
                )
            return True
        except SQLAlchemyError as e:
            logger.warning(
                "lot movement not recorded (lot=%s kind=%s qty=%s actor=%s): %s",
                lot_entry_id,
                kind,
                quantity,
                actor,
                e,
            )
            return False

    @staticmethod
    async def purge(session: AsyncSession, lot_entry_ids: list[int]) -> int:
        if not lot_entry_ids:
            return 0
        res = await session.execute(
            delete(LotMovement).where(LotMovement.lot_entry_id.in_(lot_entry_ids))
        )
        return int(res.rowcount or 0)
