# lotledger/services/operation_guard.py
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lotledger import metrics
from lotledger.core.config import LedgerSettings, get_settings
from lotledger.services.errors import ConcurrentOperationError
from lotledger.services.lease_lock import LeaseLock

logger = logging.getLogger("lotledger.guard")


class OperationGuard:
    """
    同一 (method, route, item) 的库存操作互斥：第二个并发请求直接 429。

    backend:
      - memory：进程内 dict（key -> 到期时刻）；检查与占位之间没有 await，单事件循环内原子
      - store ：ledger_leases 租约，跨实例生效

    退出 hold() 时释放；漏释放的 key 在 GUARD_TIMEOUT_SECONDS 后自动失效。
    """

    def __init__(
        self,
        settings: Optional[LedgerSettings] = None,
        *,
        backend: Optional[str] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self.backend = backend or self.settings.GUARD_BACKEND
        self.timeout = float(self.settings.GUARD_TIMEOUT_SECONDS)
        self._factory = session_factory
        self._clock = clock
        self._held: Dict[str, float] = {}
        self._leases: Dict[str, LeaseLock] = {}

    @staticmethod
    def key_for(method: str, route: str, item: object) -> str:
        return f"{method.upper()}-{route}-{item}"

    def _purge_expired(self) -> None:
        now = self._clock()
        for key in [k for k, exp in self._held.items() if exp <= now]:
            logger.warning("guard key %s expired without release", key)
            del self._held[key]

    def active_keys(self) -> list[str]:
        self._purge_expired()
        return sorted(self._held) + sorted(self._leases)

    def _reject(self, key: str) -> None:
        metrics.GUARD_REJECTIONS.inc()
        logger.info("concurrent operation rejected: %s", key)
        raise ConcurrentOperationError(
            "operation already in progress for this item, please retry shortly",
            context={"key": key},
        )

    async def acquire(self, key: str) -> None:
        if self.backend == "store":
            lease = LeaseLock(f"guard:{key}", ttl_seconds=self.timeout, session_factory=self._factory)
            if not await lease.acquire():
                self._reject(key)
            self._leases[key] = lease
            return

        self._purge_expired()
        if key in self._held:
            self._reject(key)
        self._held[key] = self._clock() + self.timeout

    async def release(self, key: str) -> None:
        if self.backend == "store":
            lease = self._leases.pop(key, None)
            if lease is not None:
                await lease.release()
            return
        self._held.pop(key, None)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[str]:
        await self.acquire(key)
        try:
            yield key
        finally:
            await self.release(key)


@lru_cache
def get_operation_guard() -> OperationGuard:
    return OperationGuard()
