# lotledger/services/lease_lock.py
from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lotledger.db.dialect import insert_for
from lotledger.db.session import get_sessionmaker
from lotledger.db.types import utcnow
from lotledger.models.ledger_lease import LedgerLease

logger = logging.getLogger("lotledger.lease")

_LEASES = LedgerLease.__table__


def default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class LeaseLock:
    """
    共享存储中的租约锁（ledger_leases 一行 = 一把锁）：

    - acquire：先删掉已过期的同名租约，再 INSERT ... ON CONFLICT DO NOTHING；
               插入成功即拿到锁
    - release：只删除自己持有的那一行
    - 持有者崩溃时，租约在 ttl 后自动失效，任何实例都可以抢占

    每次读写用独立的短事务（自带 session），不与调用方事务混在一起。
    """

    def __init__(
        self,
        name: str,
        *,
        ttl_seconds: float,
        holder: Optional[str] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        self.name = name
        self.ttl_seconds = float(ttl_seconds)
        self.holder = holder or default_holder()
        self._factory = session_factory
        self.held = False

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self._factory or get_sessionmaker()

    async def acquire(self) -> bool:
        now = utcnow()
        async with self._sessions()() as s:
            await s.execute(
                delete(_LEASES).where(_LEASES.c.name == self.name, _LEASES.c.expires_at < now)
            )
            insert = insert_for(s)
            res = await s.execute(
                insert(_LEASES)
                .values(
                    name=self.name,
                    holder=self.holder,
                    acquired_at=now,
                    expires_at=now + timedelta(seconds=self.ttl_seconds),
                )
                .on_conflict_do_nothing(index_elements=[_LEASES.c.name])
            )
            await s.commit()
        self.held = (res.rowcount or 0) == 1
        if self.held:
            logger.debug("lease %s acquired by %s", self.name, self.holder)
        return self.held

    async def release(self) -> None:
        if not self.held:
            return
        async with self._sessions()() as s:
            await s.execute(
                delete(_LEASES).where(_LEASES.c.name == self.name, _LEASES.c.holder == self.holder)
            )
            await s.commit()
        self.held = False
        logger.debug("lease %s released by %s", self.name, self.holder)

    async def current_holder(self) -> Optional[str]:
        async with self._sessions()() as s:
            row = await s.execute(
                select(LedgerLease.holder, LedgerLease.expires_at).where(LedgerLease.name == self.name)
            )
            found = row.first()
        if found is None or found[1] < utcnow():
            return None
        return found[0]

    async def wait_released(self, *, timeout: float, poll: float) -> bool:
        """轮询直到租约被释放或过期；超时返回 False。"""
        deadline = time.monotonic() + float(timeout)
        while time.monotonic() < deadline:
            if await self.current_holder() is None:
                return True
            await asyncio.sleep(float(poll))
        return False
