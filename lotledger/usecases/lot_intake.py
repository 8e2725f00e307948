# lotledger/usecases/lot_intake.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lotledger.models.lot_entry import LotEntry
from lotledger.services.duplicate_reconcile_service import (
    DuplicateReconcileService,
    extract_duplicate_key,
    is_duplicate_key_error,
)
from lotledger.services.errors import DuplicateKeyError
from lotledger.services.integrity_guard import IntegrityGuard
from lotledger.services.lot_ledger_service import LotLedgerService

logger = logging.getLogger("lotledger.intake")


@dataclass
class IntakeResult:
    entry: LotEntry
    repaired: List[str] = field(default_factory=list)
    reconciled: bool = False


class LotIntakeUseCase:
    """
    入库：IntegrityGuard 校验（按 product_id）-> create_entry -> commit。

    commit 遇到唯一约束冲突：rollback，交给 DuplicateReconcileService 清理后重试一次；
    第二次仍冲突则以 DuplicateKeyError 终止。
    """

    def __init__(
        self,
        ledger: LotLedgerService,
        reconcile: DuplicateReconcileService,
        integrity: Optional[IntegrityGuard] = None,
    ) -> None:
        self.ledger = ledger
        self.reconcile = reconcile
        self.integrity = integrity or IntegrityGuard(ledger.settings)

    async def execute(
        self,
        session: AsyncSession,
        *,
        product_id: Optional[int] = None,
        catalog_item_id: Optional[int] = None,
        **fields: Any,
    ) -> IntakeResult:
        repaired: List[str] = []

        async def attempt() -> LotEntry:
            if product_id is not None:
                ctx = await self.integrity.validate(session, product_id)
                if ctx.repaired:
                    # 修复立即生效，不随后续入库失败回滚
                    await session.commit()
                    repaired.extend(ctx.repaired)
            entry = await self.ledger.create_entry(
                session, product_id=product_id, catalog_item_id=catalog_item_id, **fields
            )
            await session.commit()
            return entry

        first_error: Optional[IntegrityError] = None
        try:
            return IntakeResult(entry=await attempt(), repaired=repaired)
        except IntegrityError as e:
            await session.rollback()
            if not is_duplicate_key_error(e):
                raise
            first_error = e

        logger.warning("lot intake hit a uniqueness violation, reconciling: %s", first_error.orig)

        async def retry() -> LotEntry:
            try:
                return await attempt()
            except IntegrityError as e:
                await session.rollback()
                if not is_duplicate_key_error(e):
                    raise
                info = extract_duplicate_key(e)
                raise DuplicateKeyError(
                    "lot entry could not be stored after duplicate cleanup",
                    key_value=info.values if info else None,
                    context={"spec": info.spec} if info else None,
                ) from e

        entry = await self.reconcile.handle_duplicate_error_and_retry(session, first_error, retry)
        return IntakeResult(entry=entry, repaired=repaired, reconciled=True)
