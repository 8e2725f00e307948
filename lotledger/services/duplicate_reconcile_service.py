# lotledger/services/duplicate_reconcile_service.py
from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lotledger import metrics
from lotledger.core.config import LedgerSettings, get_settings
from lotledger.db.types import utcnow
from lotledger.models.lot_entry import LotEntry
from lotledger.models.product import Product
from lotledger.services.errors import (
    AutoCleanupFailedError,
    DuplicateKeyError,
    InvalidInputError,
)
from lotledger.services.lease_lock import LeaseLock
from lotledger.services.movement_writer import MovementWriter
from lotledger.services.product_stock_sync import ProductStockSync
from lotledger.services.sequence_service import SequenceService

logger = logging.getLogger("lotledger.reconcile")

T = TypeVar("T")

LEASE_NAME = "reconcile:duplicates"


@dataclass(frozen=True)
class DuplicateKeySpec:
    """一组唯一键：表 + 列 + 存储层约束名。"""

    name: str
    model: Any
    columns: Tuple[str, ...]
    constraints: Tuple[str, ...]

    @property
    def table(self) -> str:
        return self.model.__tablename__

    def column(self, name: str):
        return getattr(self.model, name)


KEY_SPECS: Dict[str, DuplicateKeySpec] = {
    spec.name: spec
    for spec in (
        DuplicateKeySpec(
            "product_catalog_category",
            Product,
            ("catalog_item_id", "category_id"),
            ("uq_products_catalog_category",),
        ),
        DuplicateKeySpec("product_code", Product, ("code",), ("uq_products_code",)),
        DuplicateKeySpec(
            "lot_entry_number", LotEntry, ("entry_number",), ("uq_lot_entries_entry_number",)
        ),
    )
}


@dataclass
class DuplicateKeyInfo:
    spec: str
    values: Dict[str, Any] = field(default_factory=dict)
    source: str = "none"  # structured | statement | message | none

    @property
    def complete(self) -> bool:
        cols = KEY_SPECS[self.spec].columns
        return all(c in self.values and self.values[c] is not None for c in cols)


@dataclass
class ResolveResult:
    spec: str
    values: Dict[str, Any]
    eliminated: int
    kept: int
    kept_id: Optional[int] = None
    eliminated_ids: List[int] = field(default_factory=list)


@dataclass
class SweepResult:
    total_eliminated: int = 0
    groups_processed: int = 0
    by_spec: Dict[str, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# 错误分类 / 冲突键解析
# ---------------------------------------------------------------------------
_PG_CONSTRAINT = re.compile(r'unique constraint "([^"]+)"', re.IGNORECASE)
_PG_DETAIL = re.compile(r"Key \((?P<cols>[^)]*)\)=\((?P<vals>.*)\) already exists", re.IGNORECASE)
_SQLITE_UNIQUE = re.compile(r"UNIQUE constraint failed: (?P<cols>[\w., ]+)", re.IGNORECASE)
_INSERT_COLS = re.compile(
    r'^\s*INSERT\s+INTO\s+"?(?P<table>\w+)"?\s*\((?P<cols>[^)]*)\)\s*VALUES\s*\((?P<vals>[^)]*)\)',
    re.IGNORECASE | re.DOTALL,
)


def _chain(err: BaseException, depth: int = 4) -> List[BaseException]:
    out: List[BaseException] = []
    cur: Optional[BaseException] = err
    while cur is not None and len(out) < depth:
        out.append(cur)
        cur = cur.__cause__ or cur.__context__
    return out


def _message(err: BaseException) -> str:
    orig = getattr(err, "orig", None)
    return f"{err} {orig}" if orig is not None else str(err)


def is_duplicate_key_error(err: BaseException) -> bool:
    for e in _chain(err):
        if isinstance(e, DuplicateKeyError):
            return True
        if isinstance(e, IntegrityError):
            orig = e.orig
            code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
            if code == "23505":
                return True
            text = _message(e).lower()
            if "unique constraint failed" in text or "duplicate key" in text:
                return True
    return False


def _spec_by_constraint(name: Optional[str]) -> Optional[DuplicateKeySpec]:
    if not name:
        return None
    for spec in KEY_SPECS.values():
        if name in spec.constraints:
            return spec
    return None


def _spec_by_columns(columns: Sequence[str], table: Optional[str] = None) -> Optional[DuplicateKeySpec]:
    wanted = tuple(sorted(c.strip().strip('"') for c in columns if c.strip()))
    for spec in KEY_SPECS.values():
        if table and spec.table != table:
            continue
        if tuple(sorted(spec.columns)) == wanted:
            return spec
    return None


def _statement_params(err: IntegrityError) -> Optional[Dict[str, Any]]:
    """语句参数 -> {列名: 值}；命名参数直接用，位置参数按 INSERT 列清单对齐。"""
    params = err.params
    if isinstance(params, Mapping):
        return dict(params)
    if not isinstance(params, (list, tuple)) or not err.statement:
        return None
    m = _INSERT_COLS.match(err.statement)
    if not m:
        return None
    cols = [c.strip().strip('"') for c in m.group("cols").split(",")]
    placeholders = [v.strip() for v in m.group("vals").split(",")]
    if len(cols) != len(params) or any(p != "?" for p in placeholders):
        return None
    return dict(zip(cols, params))


def _split_detail(vals: str, n: int) -> Optional[List[str]]:
    parts = [p.strip() for p in vals.split(",")]
    if len(parts) != n:
        return None
    return parts


def extract_duplicate_key(err: BaseException) -> Optional[DuplicateKeyInfo]:
    """
    识别冲突的唯一键：
      1) 约束名（DuplicateKeyError.constraint / psycopg diag / PG 消息）
      2) 列清单（DuplicateKeyError.key_value / SQLite 消息 / PG DETAIL）
    取值优先结构化（key_value、语句参数），其次解析 PG 的 DETAIL: Key (...)=(...)。
    """
    for e in _chain(err):
        if isinstance(e, DuplicateKeyError):
            spec = _spec_by_constraint(e.constraint) or _spec_by_columns(list(e.key_value))
            if spec is None:
                continue
            values = {c: e.key_value.get(c) for c in spec.columns if c in e.key_value}
            return DuplicateKeyInfo(spec.name, values, "structured" if values else "none")

        if not isinstance(e, IntegrityError):
            continue

        text = _message(e)
        diag = getattr(e.orig, "diag", None)
        spec = _spec_by_constraint(getattr(diag, "constraint_name", None))
        if spec is None:
            m = _PG_CONSTRAINT.search(text)
            spec = _spec_by_constraint(m.group(1)) if m else None
        detail = _PG_DETAIL.search(text)
        if spec is None and detail:
            spec = _spec_by_columns(detail.group("cols").split(","))
        if spec is None:
            m = _SQLITE_UNIQUE.search(text)
            if m:
                qualified = [c.strip() for c in m.group("cols").split(",")]
                tables = {c.split(".", 1)[0] for c in qualified if "." in c}
                cols = [c.split(".", 1)[-1] for c in qualified]
                spec = _spec_by_columns(cols, tables.pop() if len(tables) == 1 else None)
        if spec is None:
            return None

        params = _statement_params(e) or {}
        values = {c: params[c] for c in spec.columns if c in params}
        if len(values) == len(spec.columns):
            return DuplicateKeyInfo(spec.name, values, "statement")

        if detail:
            cols = [c.strip().strip('"') for c in detail.group("cols").split(",")]
            parts = _split_detail(detail.group("vals"), len(cols))
            if parts is not None:
                parsed = dict(zip(cols, parts))
                values = {c: _coerce(spec, c, parsed[c]) for c in spec.columns if c in parsed}
                if len(values) == len(spec.columns):
                    return DuplicateKeyInfo(spec.name, values, "message")

        return DuplicateKeyInfo(spec.name, {}, "none")
    return None


def _coerce(spec: DuplicateKeySpec, column: str, raw: str) -> Any:
    python_type = spec.model.__table__.c[column].type.python_type
    if python_type is int:
        try:
            return int(raw)
        except ValueError:
            return raw
    return raw


# ---------------------------------------------------------------------------
# 服务
# ---------------------------------------------------------------------------
class DuplicateReconcileService:
    """
    重复数据自愈：

    - resolve_by_key ：同一唯一键下保留最新创建的一行（created_at desc, id desc），删掉其余
    - full_sweep     ：扫描全部唯一键，逐组 resolve（含 NULL 的组跳过）
    - handle_duplicate_error_and_retry：唯一约束冲突时的入口；
          进程内 asyncio.Lock + 共享存储租约串行化；
          已有清理在跑时等待其结束后直接重试，不做第二次清理。

    resolve / sweep 不 commit；handle_duplicate_error_and_retry 与 sweep_now 自己 commit。
    """

    def __init__(
        self,
        settings: Optional[LedgerSettings] = None,
        *,
        sequence: Optional[SequenceService] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.sequence = sequence or SequenceService(self.settings)
        self._factory = session_factory
        self._lock = asyncio.Lock()
        self._last_cleanup: Optional[datetime] = None
        self._cleanup_count = 0
        self._last_result: Optional[Dict[str, Any]] = None

    # 模块级函数的实例入口
    is_duplicate_key_error = staticmethod(is_duplicate_key_error)
    extract_duplicate_key = staticmethod(extract_duplicate_key)

    def _lease(self) -> LeaseLock:
        return LeaseLock(
            LEASE_NAME,
            ttl_seconds=self.settings.RECONCILE_LEASE_SECONDS,
            session_factory=self._factory,
        )

    # ------------------------------------------------------------------
    async def resolve_by_key(
        self, session: AsyncSession, spec_name: str, values: Mapping[str, Any]
    ) -> ResolveResult:
        spec = KEY_SPECS.get(spec_name)
        if spec is None:
            raise InvalidInputError(f"unknown key spec: {spec_name!r}", context={"spec": spec_name})
        missing = [c for c in spec.columns if values.get(c) is None]
        if missing:
            raise InvalidInputError(
                f"key values missing for {spec_name}: {', '.join(missing)}",
                context={"spec": spec_name, "missing": missing},
            )
        key = {c: values[c] for c in spec.columns}

        rows = (
            (
                await session.execute(
                    select(spec.model)
                    .where(and_(*[spec.column(c) == v for c, v in key.items()]))
                    .order_by(spec.model.created_at.desc(), spec.model.id.desc())
                    .execution_options(populate_existing=True)
                )
            )
            .scalars()
            .all()
        )
        if not rows:
            return ResolveResult(spec.name, key, eliminated=0, kept=0)

        keeper, losers = rows[0], list(rows[1:])
        loser_ids = [r.id for r in losers]

        if spec.model is LotEntry:
            await self._drop_lots(session, keeper, losers)
        elif loser_ids:
            await self._drop_products(session, keeper, losers)

        if loser_ids:
            metrics.CLEANUP_ELIMINATED.labels(spec=spec.name).inc(len(loser_ids))
            logger.warning(
                "duplicate %s %s: kept id=%s, eliminated ids=%s",
                spec.name,
                key,
                keeper.id,
                loser_ids,
            )
        return ResolveResult(
            spec.name,
            key,
            eliminated=len(loser_ids),
            kept=1,
            kept_id=keeper.id,
            eliminated_ids=loser_ids,
        )

    async def _drop_products(self, session: AsyncSession, keeper: Product, losers: List[Product]) -> None:
        ids = [p.id for p in losers]
        # 批次改挂到保留的商品上，避免悬空
        await session.execute(
            update(LotEntry)
            .where(LotEntry.product_id.in_(ids))
            .values(product_id=keeper.id)
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            delete(Product).where(Product.id.in_(ids)).execution_options(synchronize_session=False)
        )
        for p in losers:
            session.expunge(p)
        if keeper.catalog_item_id is not None:
            await ProductStockSync.recompute(session, keeper.catalog_item_id)

    async def _drop_lots(self, session: AsyncSession, keeper: LotEntry, losers: List[LotEntry]) -> None:
        ids = [e.id for e in losers]
        catalogs = {e.catalog_item_id for e in losers}
        if ids:
            await MovementWriter.purge(session, ids)
            await session.execute(
                delete(LotEntry).where(LotEntry.id.in_(ids)).execution_options(synchronize_session=False)
            )
            for e in losers:
                session.expunge(e)
            for cid in sorted(catalogs):
                await ProductStockSync.recompute(session, cid)

        parsed = self.sequence.parse_entry_number(keeper.entry_number)
        if parsed is not None:
            await self.sequence.realign(session, day=parsed[0])

    # ------------------------------------------------------------------
    async def find_duplicate_groups(
        self, session: AsyncSession, *, spec_names: Optional[Sequence[str]] = None
    ) -> List[Tuple[str, Dict[str, Any], int]]:
        out: List[Tuple[str, Dict[str, Any], int]] = []
        for spec in KEY_SPECS.values():
            if spec_names and spec.name not in spec_names:
                continue
            cols = [spec.column(c) for c in spec.columns]
            stmt = (
                select(*cols, func.count(spec.model.id))
                .where(and_(*[c.is_not(None) for c in cols]))
                .group_by(*cols)
                .having(func.count(spec.model.id) > 1)
            )
            for row in (await session.execute(stmt)).all():
                values = dict(zip(spec.columns, row[:-1]))
                out.append((spec.name, values, int(row[-1])))
        return out

    async def full_sweep(
        self, session: AsyncSession, *, spec_names: Optional[Sequence[str]] = None
    ) -> SweepResult:
        result = SweepResult()
        for spec_name, values, _count in await self.find_duplicate_groups(session, spec_names=spec_names):
            r = await self.resolve_by_key(session, spec_name, values)
            result.groups_processed += 1
            result.total_eliminated += r.eliminated
            result.by_spec[spec_name] = result.by_spec.get(spec_name, 0) + r.eliminated
        logger.info(
            "duplicate sweep: groups=%d eliminated=%d",
            result.groups_processed,
            result.total_eliminated,
        )
        return result

    async def check_and_clean(self, session: AsyncSession) -> Dict[str, Any]:
        groups = await self.find_duplicate_groups(session)
        if not groups:
            return {"duplicates_found": 0, "cleaned": False, "total_eliminated": 0, "groups_processed": 0}
        sweep = await self.full_sweep(session)
        return {
            "duplicates_found": len(groups),
            "cleaned": True,
            "total_eliminated": sweep.total_eliminated,
            "groups_processed": sweep.groups_processed,
        }

    # ------------------------------------------------------------------
    async def _cleanup_for(self, session: AsyncSession, err: BaseException) -> Dict[str, Any]:
        info = extract_duplicate_key(err)
        if info is not None and info.complete:
            r = await self.resolve_by_key(session, info.spec, info.values)
            if info.spec == "lot_entry_number" and r.kept == 0:
                parsed = self.sequence.parse_entry_number(str(info.values["entry_number"]))
                if parsed is not None:
                    await self.sequence.realign(session, day=parsed[0])
            return {
                "mode": "targeted",
                "spec": info.spec,
                "key": info.values,
                "key_source": info.source,
                "eliminated": r.eliminated,
                "kept": r.kept,
            }

        spec_names = [info.spec] if info is not None else None
        sweep = await self.full_sweep(session, spec_names=spec_names)
        if info is None or info.spec == "lot_entry_number":
            await self.sequence.realign_all(session)
        return {
            "mode": "sweep",
            "spec": info.spec if info else None,
            "eliminated": sweep.total_eliminated,
            "groups_processed": sweep.groups_processed,
        }

    async def handle_duplicate_error_and_retry(
        self,
        session: AsyncSession,
        err: BaseException,
        retry_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """
        调用前调用方应已 rollback 失败的事务。
        清理失败 -> AutoCleanupFailedError（终态）；retry_fn 只调用一次，结果 / 异常原样返回。
        """
        if not is_duplicate_key_error(err):
            raise err

        if self._lock.locked():
            logger.info("duplicate cleanup already running, waiting before retry")
            async with self._lock:
                pass
            return await retry_fn()

        async with self._lock:
            lease = self._lease()
            try:
                try:
                    acquired = await lease.acquire()
                    if acquired:
                        outcome = await self._cleanup_for(session, err)
                        await session.commit()
                    else:
                        logger.info("duplicate cleanup running on another instance, waiting before retry")
                        await lease.wait_released(
                            timeout=self.settings.RECONCILE_LEASE_SECONDS,
                            poll=self.settings.RECONCILE_POLL_SECONDS,
                        )
                except Exception as cleanup_err:
                    await session.rollback()
                    metrics.CLEANUP_RUNS.labels(mode="error", outcome="failed").inc()
                    logger.error("duplicate cleanup failed: %s (original: %s)", cleanup_err, err)
                    raise AutoCleanupFailedError(err, cleanup_err) from cleanup_err
            finally:
                await lease.release()
            if acquired:
                self._record(outcome)
                metrics.CLEANUP_RUNS.labels(mode="error", outcome="ok").inc()
                logger.info("duplicate cleanup done: %s", outcome)

        return await retry_fn()

    async def sweep_now(self, session: AsyncSession, *, only_if_needed: bool = False) -> Dict[str, Any]:
        """手动 / 定时清理入口：与自动清理共用锁与租约，完成后 commit。"""
        async with self._lock:
            lease = self._lease()
            if not await lease.acquire():
                return {"skipped": True, "reason": "cleanup already running"}
            try:
                if only_if_needed:
                    outcome = await self.check_and_clean(session)
                else:
                    sweep = await self.full_sweep(session)
                    outcome = {
                        "cleaned": True,
                        "total_eliminated": sweep.total_eliminated,
                        "groups_processed": sweep.groups_processed,
                        "by_spec": sweep.by_spec,
                    }
                await session.commit()
            except Exception:
                await session.rollback()
                metrics.CLEANUP_RUNS.labels(mode="manual", outcome="failed").inc()
                raise
            finally:
                await lease.release()
        self._record(outcome)
        metrics.CLEANUP_RUNS.labels(mode="manual", outcome="ok").inc()
        return {"skipped": False, **outcome}

    def _record(self, outcome: Dict[str, Any]) -> None:
        self._last_cleanup = utcnow()
        self._cleanup_count += 1
        self._last_result = outcome

    def stats(self) -> Dict[str, Any]:
        return {
            "is_running": self._lock.locked(),
            "last_cleanup": self._last_cleanup.isoformat() if self._last_cleanup else None,
            "cleanup_count": self._cleanup_count,
            "last_result": self._last_result,
        }
