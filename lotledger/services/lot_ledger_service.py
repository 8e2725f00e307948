# lotledger/services/lot_ledger_service.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lotledger import metrics
from lotledger.core.config import LedgerSettings, get_settings
from lotledger.db.types import UTC, utcnow
from lotledger.models.catalog_item import CatalogItem
from lotledger.models.enums import ConsumeReason, LotState, MovementKind, RestockReason
from lotledger.models.lot_entry import LotEntry
from lotledger.models.product import Product
from lotledger.services import lot_ledger_queries as queries
from lotledger.services import lot_rules
from lotledger.services.errors import (
    CatalogItemInactiveError,
    ConcurrentOperationError,
    InsufficientStockError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from lotledger.services.lot_alerts import alerts_for_entry, compute_alerts, next_alert_on
from lotledger.services.lot_ledger_queries import LotEntryFilter, PageRequest
from lotledger.services.lot_rules import LotBuckets
from lotledger.services.movement_writer import MovementWriter
from lotledger.services.product_stock_sync import ProductStockSync
from lotledger.services.sequence_service import SequenceService

logger = logging.getLogger("lotledger.ledger")

_CENT = Decimal("0.01")

EDITABLE_FIELDS = frozenset(
    {
        "purchase_price",
        "sale_price",
        "lot_code",
        "supplier",
        "invoice_number",
        "notes",
        "expiry_date",
        "allow_partial_sale",
        "expiry_alert_days",
        "min_stock",
        "requires_authorization",
    }
)


@dataclass
class LotConfig:
    allow_partial_sale: bool = True
    expiry_alert_days: Optional[int] = None
    min_stock: int = 0
    requires_authorization: bool = False


def _price(value: Any, field: str, *, required: bool = True) -> Optional[Decimal]:
    if value is None:
        if required:
            raise InvalidInputError(f"{field} is required", context={"field": field})
        return None
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidInputError(f"{field} must be a number", context={"field": field, "value": str(value)})
    if not d.is_finite() or d <= 0:
        raise InvalidInputError(f"{field} must be greater than 0", context={"field": field, "value": str(value)})
    return d.quantize(_CENT)


def _quantity(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, Decimal)) or int(value) != value:
        raise InvalidInputError("quantity must be a positive integer", context={"quantity": str(value)})
    if int(value) <= 0:
        raise InvalidInputError("quantity must be a positive integer", context={"quantity": int(value)})
    return int(value)


def _count(value: Any, field: str) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise InvalidInputError(f"{field} must be an integer", context={field: str(value)})
    if n < 0:
        raise InvalidInputError(f"{field} must be >= 0", context={field: n})
    return n


def _actor(value: Optional[str], field: str = "actor") -> str:
    s = (value or "").strip()
    if not s:
        raise InvalidInputError(f"{field} is required", context={"field": field})
    return s


def _as_date(value: Union[date, datetime, None]) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    return value


def _aware(value: Optional[datetime]) -> datetime:
    if value is None:
        return utcnow()
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class LotLedgerService:
    """
    批次台账服务（全部 async，第一个参数是 AsyncSession；服务本身从不 commit）

    写操作统一走 _cas_update：
        读当前行 -> 纯函数算新值 -> UPDATE ... WHERE id=:id AND version=:v
    命中 0 行视为并发冲突，最多重试 VERSION_CONFLICT_RETRIES 次，
    仍冲突则 ConcurrentOperationError。

    流水（lot_movements）与商品冗余库存同步都是尽力而为：失败只记日志。
    """

    def __init__(
        self,
        settings: Optional[LedgerSettings] = None,
        sequence: Optional[SequenceService] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.sequence = sequence or SequenceService(self.settings)

    # ------------------------------------------------------------------
    # 读
    # ------------------------------------------------------------------
    async def _read(self, session: AsyncSession, entry_id: int) -> Optional[LotEntry]:
        return await session.get(LotEntry, int(entry_id), populate_existing=True)

    async def get_entry(self, session: AsyncSession, entry_id: int) -> LotEntry:
        entry = await self._read(session, entry_id)
        if entry is None:
            raise NotFoundError(f"lot entry {entry_id} not found", context={"lot_entry_id": entry_id})
        return entry

    async def list_entries(
        self,
        session: AsyncSession,
        filters: Optional[LotEntryFilter] = None,
        page: Optional[PageRequest] = None,
    ) -> Dict[str, Any]:
        page = page or PageRequest(page_size=self.settings.DEFAULT_PAGE_SIZE)
        return await queries.list_entries(
            session,
            filters or LotEntryFilter(),
            page,
            max_page_size=self.settings.MAX_PAGE_SIZE,
        )

    async def summary_for_catalog_item(
        self, session: AsyncSession, catalog_item_id: int
    ) -> Dict[str, Any]:
        return await queries.summary_for_catalog_item(session, catalog_item_id)

    async def general_statistics(
        self,
        session: AsyncSession,
        *,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        if window_days is None:
            window_days = self.settings.EXPIRY_WINDOW_DAYS
        if int(window_days) < 0:
            raise InvalidInputError("window_days must be >= 0", context={"window_days": window_days})
        return await queries.general_statistics(session, window_days=int(window_days), now=now)

    # ------------------------------------------------------------------
    # 创建
    # ------------------------------------------------------------------
    async def _resolve_refs(
        self,
        session: AsyncSession,
        *,
        catalog_item_id: Optional[int],
        product_id: Optional[int],
    ) -> Tuple[CatalogItem, Optional[Product]]:
        if catalog_item_id is None and product_id is None:
            raise InvalidInputError("catalog_item_id or product_id is required")

        product: Optional[Product] = None
        if product_id is not None:
            product = await session.get(Product, int(product_id), populate_existing=True)
            if product is None:
                raise NotFoundError(f"product {product_id} not found", context={"product_id": product_id})
            if product.catalog_item_id is None:
                raise NotFoundError(
                    f"product {product_id} is not linked to a catalog item",
                    context={"product_id": product_id},
                )
            if catalog_item_id is not None and int(catalog_item_id) != int(product.catalog_item_id):
                raise InvalidInputError(
                    "product and catalog item references disagree",
                    context={
                        "product_id": product_id,
                        "catalog_item_id": catalog_item_id,
                        "product_catalog_item_id": product.catalog_item_id,
                    },
                )
            catalog_item_id = product.catalog_item_id

        item = await session.get(CatalogItem, int(catalog_item_id), populate_existing=True)
        if item is None:
            raise NotFoundError(
                f"catalog item {catalog_item_id} not found",
                context={"catalog_item_id": catalog_item_id},
            )
        if not item.active:
            raise CatalogItemInactiveError(
                f"catalog item {item.code} is inactive",
                context={"catalog_item_id": item.id},
            )

        if product is None:
            product = (
                await session.execute(
                    select(Product)
                    .where(Product.catalog_item_id == item.id)
                    .order_by(Product.id.asc())
                    .limit(1)
                )
            ).scalar_one_or_none()
        return item, product

    async def create_entry(
        self,
        session: AsyncSession,
        *,
        catalog_item_id: Optional[int] = None,
        product_id: Optional[int] = None,
        quantity: int,
        purchase_price: Any,
        created_by: str,
        created_by_email: Optional[str] = None,
        created_by_role: str = "user",
        lot_code: str = "",
        intake_date: Optional[datetime] = None,
        expiry_date: Union[date, datetime, None] = None,
        supplier: str = "",
        invoice_number: str = "",
        notes: str = "",
        sale_price: Any = None,
        config: Optional[LotConfig] = None,
    ) -> LotEntry:
        qty = _quantity(quantity)
        price = _price(purchase_price, "purchase_price")
        actor = _actor(created_by, "created_by")
        sale = _price(sale_price, "sale_price", required=False)
        intake_at = _aware(intake_date)
        expiry = _as_date(expiry_date)
        if expiry is not None and expiry < intake_at.date():
            raise InvalidInputError(
                "expiry_date must not be before intake_date",
                context={"expiry_date": expiry.isoformat(), "intake_date": intake_at.isoformat()},
            )

        cfg = config or LotConfig()
        alert_days = (
            self.settings.DEFAULT_EXPIRY_ALERT_DAYS
            if cfg.expiry_alert_days is None
            else _count(cfg.expiry_alert_days, "expiry_alert_days")
        )
        min_stock = _count(cfg.min_stock, "min_stock")

        item, product = await self._resolve_refs(
            session, catalog_item_id=catalog_item_id, product_id=product_id
        )
        if sale is None and item.price is not None and Decimal(item.price) > 0:
            sale = Decimal(item.price).quantize(_CENT)

        number = await self.sequence.next_entry_number(session, on=intake_at)
        now = utcnow()

        entry = LotEntry(
            entry_number=number,
            catalog_item_id=item.id,
            product_id=product.id if product is not None else None,
            product_code=item.code,
            product_name=item.name,
            lot_code=(lot_code or "").strip(),
            supplier=(supplier or "").strip(),
            invoice_number=(invoice_number or "").strip(),
            notes=notes or "",
            intake_date=intake_at,
            expiry_date=expiry,
            initial=qty,
            available=qty,
            reserved=0,
            sold=0,
            returned=0,
            lost=0,
            purchase_price=price,
            sale_price=sale,
            total_cost=(price * qty).quantize(_CENT),
            state=LotState.ACTIVE.value,
            state_reason="",
            rotation_priority=int(intake_at.timestamp() * 1000),
            created_by=actor,
            created_by_email=(created_by_email or "").strip(),
            created_by_role=created_by_role or "user",
            updated_by=actor,
            created_at=now,
            updated_at=now,
            allow_partial_sale=bool(cfg.allow_partial_sale),
            expiry_alert_days=alert_days,
            min_stock=min_stock,
            requires_authorization=bool(cfg.requires_authorization),
            next_alert_on=next_alert_on(expiry, alert_days),
            version=1,
        )
        entry.alerts = compute_alerts(
            state=entry.state,
            available=qty,
            min_stock=entry.min_stock,
            expiry_date=expiry,
            expiry_alert_days=alert_days,
            now=now,
        )
        session.add(entry)
        await session.flush()

        await MovementWriter.write(
            session,
            lot_entry_id=entry.id,
            kind=MovementKind.INTAKE.value,
            quantity=qty,
            reason="intake",
            actor=actor,
            notes=entry.notes,
        )
        await ProductStockSync.apply_delta(session, entry.product_id, on_hand=qty)

        metrics.LOTS_CREATED.inc()
        logger.info(
            "lot entry %s created: catalog=%s qty=%d price=%s by=%s",
            entry.entry_number,
            entry.catalog_item_id,
            qty,
            price,
            actor,
        )
        return entry

    # ------------------------------------------------------------------
    # 乐观锁更新
    # ------------------------------------------------------------------
    async def _cas_update(
        self,
        session: AsyncSession,
        entry_id: int,
        build: Callable[[LotEntry], Dict[str, Any]],
        *,
        actor: str,
    ) -> Tuple[LotBuckets, LotEntry]:
        attempts = int(self.settings.VERSION_CONFLICT_RETRIES) + 1
        for attempt in range(1, attempts + 1):
            entry = await self._read(session, entry_id)
            if entry is None:
                raise NotFoundError(
                    f"lot entry {entry_id} not found", context={"lot_entry_id": entry_id}
                )
            before = LotBuckets.of(entry)
            seen_version = int(entry.version)

            values = build(entry)
            if "alerts" not in values:
                values["alerts"] = alerts_for_entry(entry, overrides=values)
            values.update(version=seen_version + 1, updated_by=actor, updated_at=utcnow())

            res = await session.execute(
                update(LotEntry)
                .where(LotEntry.id == entry.id, LotEntry.version == seen_version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if (res.rowcount or 0) == 1:
                return before, await self.get_entry(session, entry.id)

            metrics.VERSION_CONFLICTS.inc()
            logger.info(
                "version conflict on lot %s (seen v%d, attempt %d/%d)",
                entry_id,
                seen_version,
                attempt,
                attempts,
            )

        raise ConcurrentOperationError(
            f"lot entry {entry_id} was modified concurrently, please retry",
            context={"lot_entry_id": entry_id, "attempts": attempts},
        )

    # ------------------------------------------------------------------
    # 消耗 / 补货 / 预留
    # ------------------------------------------------------------------
    async def consume(
        self,
        session: AsyncSession,
        entry_id: int,
        quantity: int,
        *,
        reason: Union[ConsumeReason, str] = ConsumeReason.SALE,
        actor: str,
        notes: str = "",
        authorized: bool = False,
    ) -> LotEntry:
        who = _actor(actor)
        qty = _quantity(quantity)

        def build(entry: LotEntry) -> Dict[str, Any]:
            nxt = lot_rules.apply_consume(LotBuckets.of(entry), qty, reason)
            if entry.requires_authorization and not authorized:
                raise InvalidStateError(
                    f"lot {entry.entry_number} requires authorization to consume",
                    context={"lot_entry_id": entry.id},
                )
            if not entry.allow_partial_sale and qty != int(entry.available):
                raise InvalidStateError(
                    f"lot {entry.entry_number} does not allow partial consumption",
                    context={"lot_entry_id": entry.id, "available": int(entry.available), "requested": qty},
                )
            return nxt.as_values()

        before, entry = await self._cas_update(session, entry_id, build, actor=who)
        why = ConsumeReason(reason)

        await MovementWriter.write(
            session,
            lot_entry_id=entry.id,
            kind=MovementKind.CONSUME.value,
            quantity=qty,
            reason=why.value,
            actor=who,
            notes=notes,
        )
        await ProductStockSync.apply_delta(
            session,
            entry.product_id,
            on_hand=-qty,
            sold=qty if why is ConsumeReason.SALE else 0,
        )
        metrics.UNITS_CONSUMED.labels(reason=why.value).inc(qty)
        logger.info(
            "lot %s consumed %d (%s) by %s: available %d -> %d state=%s",
            entry.entry_number,
            qty,
            why.value,
            who,
            before.available,
            entry.available,
            entry.state,
        )
        return entry

    async def restock(
        self,
        session: AsyncSession,
        entry_id: int,
        quantity: int,
        *,
        reason: Union[RestockReason, str] = RestockReason.RETURN,
        actor: str,
        notes: str = "",
    ) -> LotEntry:
        who = _actor(actor)
        qty = _quantity(quantity)

        def build(entry: LotEntry) -> Dict[str, Any]:
            return lot_rules.apply_restock(LotBuckets.of(entry), qty, reason).as_values()

        before, entry = await self._cas_update(session, entry_id, build, actor=who)
        why = RestockReason(reason)

        await MovementWriter.write(
            session,
            lot_entry_id=entry.id,
            kind=(MovementKind.RESTOCK if why is RestockReason.RETURN else MovementKind.ADJUST).value,
            quantity=qty,
            reason=why.value,
            actor=who,
            notes=notes,
        )
        await ProductStockSync.apply_delta(
            session,
            entry.product_id,
            on_hand=qty,
            sold=-qty if why is RestockReason.RETURN else 0,
        )
        metrics.UNITS_RESTOCKED.labels(reason=why.value).inc(qty)
        logger.info(
            "lot %s restocked %d (%s) by %s: available %d -> %d state=%s",
            entry.entry_number,
            qty,
            why.value,
            who,
            before.available,
            entry.available,
            entry.state,
        )
        return entry

    async def reserve(
        self, session: AsyncSession, entry_id: int, quantity: int, *, actor: str
    ) -> LotEntry:
        who = _actor(actor)
        qty = _quantity(quantity)
        _, entry = await self._cas_update(
            session,
            entry_id,
            lambda e: lot_rules.apply_reserve(LotBuckets.of(e), qty).as_values(),
            actor=who,
        )
        await MovementWriter.write(
            session,
            lot_entry_id=entry.id,
            kind=MovementKind.RESERVE.value,
            quantity=qty,
            actor=who,
        )
        await ProductStockSync.apply_delta(session, entry.product_id, on_hand=-qty)
        return entry

    async def release(
        self, session: AsyncSession, entry_id: int, quantity: int, *, actor: str
    ) -> LotEntry:
        who = _actor(actor)
        qty = _quantity(quantity)
        _, entry = await self._cas_update(
            session,
            entry_id,
            lambda e: lot_rules.apply_release(LotBuckets.of(e), qty).as_values(),
            actor=who,
        )
        await MovementWriter.write(
            session,
            lot_entry_id=entry.id,
            kind=MovementKind.RELEASE.value,
            quantity=qty,
            actor=who,
        )
        await ProductStockSync.apply_delta(session, entry.product_id, on_hand=qty)
        return entry

    async def consume_from_item(
        self,
        session: AsyncSession,
        catalog_item_id: int,
        quantity: int,
        *,
        reason: Union[ConsumeReason, str] = ConsumeReason.SALE,
        actor: str,
        authorized: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        FIFO 出库：按 (rotation_priority, id) 依次从 active 批次扣减，可跨批次拆分。
        先整体校验可用量（不足则一件都不扣），再逐批 consume。
        """
        who = _actor(actor)
        qty = _quantity(quantity)

        lots = (
            (
                await session.execute(
                    select(LotEntry)
                    .where(
                        LotEntry.catalog_item_id == int(catalog_item_id),
                        LotEntry.state == LotState.ACTIVE.value,
                        LotEntry.available > 0,
                    )
                    .order_by(LotEntry.rotation_priority.asc(), LotEntry.id.asc())
                    .execution_options(populate_existing=True)
                )
            )
            .scalars()
            .all()
        )

        plan: List[Tuple[int, int]] = []
        remaining = qty
        for lot in lots:
            if remaining == 0:
                break
            if lot.requires_authorization and not authorized:
                continue
            take = min(remaining, int(lot.available))
            if not lot.allow_partial_sale and take != int(lot.available):
                continue
            plan.append((lot.id, take))
            remaining -= take

        if remaining > 0:
            raise InsufficientStockError(
                f"insufficient stock for catalog item {catalog_item_id}: "
                f"available={qty - remaining}, requested={qty}",
                available=qty - remaining,
                requested=qty,
                context={"catalog_item_id": int(catalog_item_id)},
            )

        out: List[Dict[str, Any]] = []
        for lot_id, take in plan:
            entry = await self.consume(
                session, lot_id, take, reason=reason, actor=who, authorized=authorized
            )
            out.append(
                {
                    "lot_entry_id": entry.id,
                    "entry_number": entry.entry_number,
                    "quantity": take,
                    "available_after": int(entry.available),
                    "state": entry.state,
                }
            )
        return out

    # ------------------------------------------------------------------
    # 管理操作
    # ------------------------------------------------------------------
    async def set_state(
        self,
        session: AsyncSession,
        entry_id: int,
        state: Union[LotState, str],
        *,
        reason: str = "",
        updated_by: str,
    ) -> LotEntry:
        who = _actor(updated_by, "updated_by")

        def build(entry: LotEntry) -> Dict[str, Any]:
            nxt = lot_rules.apply_state(LotBuckets.of(entry), state)
            return {"state": nxt.state, "state_reason": (reason or "").strip()}

        before, entry = await self._cas_update(session, entry_id, build, actor=who)
        await MovementWriter.write(
            session,
            lot_entry_id=entry.id,
            kind=MovementKind.STATE.value,
            quantity=0,
            reason=entry.state,
            actor=who,
            notes=f"{before.state} -> {entry.state}: {entry.state_reason}".strip(),
        )
        logger.info("lot %s state %s -> %s by %s", entry.entry_number, before.state, entry.state, who)
        return entry

    async def update_entry(
        self,
        session: AsyncSession,
        entry_id: int,
        *,
        updated_by: str,
        **fields: Any,
    ) -> LotEntry:
        who = _actor(updated_by, "updated_by")
        unknown = sorted(set(fields) - EDITABLE_FIELDS)
        if unknown:
            raise InvalidInputError(
                f"fields not editable: {', '.join(unknown)}", context={"fields": unknown}
            )
        if not fields:
            return await self.get_entry(session, entry_id)

        def build(entry: LotEntry) -> Dict[str, Any]:
            values: Dict[str, Any] = {}
            for key, val in fields.items():
                if key == "purchase_price":
                    price = _price(val, "purchase_price")
                    values["purchase_price"] = price
                    values["total_cost"] = (price * int(entry.initial)).quantize(_CENT)
                elif key == "sale_price":
                    values["sale_price"] = _price(val, "sale_price", required=False)
                elif key == "expiry_date":
                    exp = _as_date(val)
                    if exp is not None and exp < entry.intake_date.date():
                        raise InvalidInputError(
                            "expiry_date must not be before intake_date",
                            context={"expiry_date": exp.isoformat()},
                        )
                    values["expiry_date"] = exp
                elif key in ("expiry_alert_days", "min_stock"):
                    values[key] = _count(val, key)
                elif key in ("allow_partial_sale", "requires_authorization"):
                    values[key] = bool(val)
                else:
                    values[key] = (val or "").strip() if key != "notes" else (val or "")

            expiry = values.get("expiry_date", entry.expiry_date)
            days = values.get("expiry_alert_days", entry.expiry_alert_days)
            values["next_alert_on"] = next_alert_on(expiry, days)
            return values

        _, entry = await self._cas_update(session, entry_id, build, actor=who)
        logger.info("lot %s updated by %s: %s", entry.entry_number, who, sorted(fields))
        return entry

    async def delete_entry(self, session: AsyncSession, entry_id: int) -> Dict[str, Any]:
        """只允许删除从未动过的批次；同时冲回商品冗余库存、清掉流水。"""
        entry = await self.get_entry(session, entry_id)
        b = LotBuckets.of(entry)
        if b.available != b.initial or b.reserved or b.sold or b.lost or b.returned:
            raise InvalidStateError(
                f"lot {entry.entry_number} has stock movements and cannot be deleted",
                context={"lot_entry_id": entry.id, **b.as_values(), "initial": b.initial},
            )

        res = await session.execute(
            delete(LotEntry)
            .where(LotEntry.id == entry.id, LotEntry.version == entry.version)
            .execution_options(synchronize_session=False)
        )
        if (res.rowcount or 0) != 1:
            raise ConcurrentOperationError(
                f"lot entry {entry_id} was modified concurrently, please retry",
                context={"lot_entry_id": entry_id},
            )
        session.expunge(entry)

        purged = await MovementWriter.purge(session, [entry.id])
        reversed_ok = await ProductStockSync.apply_delta(
            session, entry.product_id, on_hand=-int(entry.initial)
        )
        logger.info("lot %s deleted (movements purged=%d)", entry.entry_number, purged)
        return {
            "deleted": entry.id,
            "entry_number": entry.entry_number,
            "product_stock_reversed": bool(reversed_ok and entry.product_id is not None),
            "movements_purged": purged,
        }

    # ------------------------------------------------------------------
    # 对账 / 预警
    # ------------------------------------------------------------------
    async def recompute(
        self, session: AsyncSession, catalog_item_id: int, *, dry_run: bool = False
    ) -> Dict[str, Any]:
        return await ProductStockSync.recompute(session, catalog_item_id, dry_run=dry_run)

    async def refresh_alerts(self, session: AsyncSession, *, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        lots = (
            (
                await session.execute(
                    select(LotEntry)
                    .where(LotEntry.state != LotState.INACTIVE.value)
                    .order_by(LotEntry.id.asc())
                    .execution_options(populate_existing=True)
                )
            )
            .scalars()
            .all()
        )

        changed = 0
        for lot in lots:
            fresh = alerts_for_entry(lot, now=now)
            old_sig = [(a.get("type"), a.get("message")) for a in (lot.alerts or [])]
            new_sig = [(a.get("type"), a.get("message")) for a in fresh]
            if old_sig == new_sig:
                continue
            res = await session.execute(
                update(LotEntry)
                .where(LotEntry.id == lot.id, LotEntry.version == lot.version)
                .values(alerts=fresh)
                .execution_options(synchronize_session=False)
            )
            changed += int(res.rowcount or 0)
        if changed:
            logger.info("alerts refreshed on %d lot(s)", changed)
        return changed
