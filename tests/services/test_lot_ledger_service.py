import asyncio
import re
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from lotledger.models.enums import LotState
from lotledger.models.lot_entry import LotEntry
from lotledger.models.lot_movement import LotMovement
from lotledger.models.product import Product
from lotledger.services.errors import (
    CatalogItemInactiveError,
    ConcurrentOperationError,
    InsufficientStockError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from lotledger.services.lot_ledger_queries import LotEntryFilter, PageRequest
from lotledger.services.lot_ledger_service import LotConfig
from tests.factories import days_ago, make_catalog_item, make_product

pytestmark = pytest.mark.asyncio


async def _setup(session, *, price="12.50"):
    item = await make_catalog_item(session, price=price)
    product = await make_product(session, catalog_item_id=item.id)
    return item, product


async def _product(session, product_id):
    return await session.get(Product, product_id, populate_existing=True)


async def _movements(session, entry_id):
    rows = await session.execute(
        select(LotMovement.kind, LotMovement.quantity, LotMovement.reason)
        .where(LotMovement.lot_entry_id == entry_id)
        .order_by(LotMovement.id)
    )
    return [tuple(r) for r in rows.all()]


# ---------------------------------------------------------------------------
# 入库
# ---------------------------------------------------------------------------
async def test_create_entry_fills_ledger_row(session, ledger):
    item, product = await _setup(session)

    e = await ledger.create_entry(
        session,
        catalog_item_id=item.id,
        quantity=10,
        purchase_price="2.5",
        created_by="alice",
        supplier="  Acme  ",
    )

    assert re.fullmatch(r"ENT-\d{8}-001", e.entry_number)
    assert (e.initial, e.available, e.reserved, e.sold, e.returned, e.lost) == (10, 10, 0, 0, 0, 0)
    assert e.total_cost == Decimal("25.00")
    assert e.sale_price == Decimal("12.50")
    assert e.product_id == product.id
    assert e.product_code == item.code
    assert e.supplier == "Acme"
    assert e.state == LotState.ACTIVE.value
    assert e.version == 1
    assert e.created_by == e.updated_by == "alice"

    assert (await _product(session, product.id)).quantity_on_hand == 10
    assert await _movements(session, e.id) == [("intake", 10, "intake")]


async def test_create_entry_numbers_are_sequential(session, ledger):
    item, _ = await _setup(session)
    a = await ledger.create_entry(session, catalog_item_id=item.id, quantity=1, purchase_price=1, created_by="a")
    b = await ledger.create_entry(session, catalog_item_id=item.id, quantity=1, purchase_price=1, created_by="a")
    assert int(b.entry_number[-3:]) == int(a.entry_number[-3:]) + 1


async def test_concurrent_creates_get_consecutive_numbers(session, session_factory, ledger):
    item, _ = await _setup(session)
    await session.commit()
    intake = days_ago(0)

    async def create() -> str:
        async with session_factory() as s:
            e = await ledger.create_entry(
                s, catalog_item_id=item.id, quantity=1, purchase_price=1, created_by="a", intake_date=intake
            )
            await s.commit()
            return e.entry_number

    numbers = await asyncio.gather(create(), create(), create())

    assert len(set(numbers)) == 3
    seqs = sorted(int(n[-3:]) for n in numbers)
    assert seqs == [seqs[0], seqs[0] + 1, seqs[0] + 2]
    assert await session.scalar(select(func.count(LotEntry.id))) == 3


@pytest.mark.parametrize(
    "overrides",
    [
        {"quantity": 0},
        {"quantity": -3},
        {"quantity": 1.5},
        {"purchase_price": 0},
        {"purchase_price": "abc"},
        {"purchase_price": None},
        {"created_by": "   "},
    ],
)
async def test_create_entry_rejects_bad_input(session, ledger, overrides):
    item, _ = await _setup(session)
    kwargs = dict(catalog_item_id=item.id, quantity=5, purchase_price="1.00", created_by="alice")
    kwargs.update(overrides)
    with pytest.raises(InvalidInputError):
        await ledger.create_entry(session, **kwargs)


async def test_create_entry_rejects_expiry_before_intake(session, ledger):
    item, _ = await _setup(session)
    with pytest.raises(InvalidInputError):
        await ledger.create_entry(
            session,
            catalog_item_id=item.id,
            quantity=5,
            purchase_price=1,
            created_by="alice",
            intake_date=days_ago(1),
            expiry_date=days_ago(3),
        )


async def test_create_entry_reference_errors(session, ledger):
    item, _ = await _setup(session)
    other = await make_catalog_item(session, code="CAT-2")
    stray = await make_product(session, code="P-2", catalog_item_id=other.id)
    off = await make_catalog_item(session, code="CAT-OFF", active=False)

    with pytest.raises(InvalidInputError):
        await ledger.create_entry(session, quantity=1, purchase_price=1, created_by="a")
    with pytest.raises(NotFoundError):
        await ledger.create_entry(session, catalog_item_id=9999, quantity=1, purchase_price=1, created_by="a")
    with pytest.raises(NotFoundError):
        await ledger.create_entry(session, product_id=9999, quantity=1, purchase_price=1, created_by="a")
    with pytest.raises(InvalidInputError):
        await ledger.create_entry(
            session, catalog_item_id=item.id, product_id=stray.id, quantity=1, purchase_price=1, created_by="a"
        )
    with pytest.raises(CatalogItemInactiveError):
        await ledger.create_entry(session, catalog_item_id=off.id, quantity=1, purchase_price=1, created_by="a")


async def test_create_entry_without_product_is_unattributed(session, ledger):
    item = await make_catalog_item(session, code="LONE", price=None)
    e = await ledger.create_entry(session, catalog_item_id=item.id, quantity=3, purchase_price="4", created_by="a")
    assert e.product_id is None
    assert e.sale_price is None


# ---------------------------------------------------------------------------
# 消耗 / 补货 / 预留
# ---------------------------------------------------------------------------
async def test_consume_then_return(session, ledger):
    item, product = await _setup(session)
    e = await ledger.create_entry(session, catalog_item_id=item.id, quantity=10, purchase_price=2, created_by="a")

    e = await ledger.consume(session, e.id, 4, actor="cashier")
    assert (e.available, e.sold, e.version, e.updated_by) == (6, 4, 2, "cashier")
    p = await _product(session, product.id)
    assert (p.quantity_on_hand, p.quantity_sold) == (6, 4)

    e = await ledger.restock(session, e.id, 1, reason="return", actor="desk")
    assert (e.available, e.returned) == (7, 1)
    p = await _product(session, product.id)
    assert (p.quantity_on_hand, p.quantity_sold) == (7, 3)

    kinds = [m[0] for m in await _movements(session, e.id)]
    assert kinds == ["intake", "consume", "restock"]


async def test_loss_and_adjustment(session, ledger):
    item, product = await _setup(session)
    e = await ledger.create_entry(session, catalog_item_id=item.id, quantity=10, purchase_price=2, created_by="a")

    e = await ledger.consume(session, e.id, 3, reason="loss", actor="audit")
    assert (e.available, e.lost, e.sold) == (7, 3, 0)
    assert (await _product(session, product.id)).quantity_sold == 0

    e = await ledger.restock(session, e.id, 2, reason="adjustment", actor="audit")
    assert (e.available, e.lost) == (9, 1)
    assert (await _movements(session, e.id))[-1] == ("adjust", 2, "adjustment")


async def test_insufficient_stock_leaves_lot_untouched(session, ledger):
    item, _ = await _setup(session)
    e = await ledger.create_entry(session, catalog_item_id=item.id, quantity=10, purchase_price=2, created_by="a")

    with pytest.raises(InsufficientStockError) as ei:
        await ledger.consume(session, e.id, 11, actor="cashier")
    assert (ei.value.available, ei.value.requested) == (10, 11)

    fresh = await ledger.get_entry(session, e.id)
    assert (fresh.available, fresh.sold, fresh.version) == (10, 0, 1)


async def test_consume_to_zero_depletes_and_return_reactivates(session, ledger):
    item, _ = await _setup(session)
    e = await ledger.create_entry(session, catalog_item_id=item.id, quantity=2, purchase_price=2, created_by="a")

    e = await ledger.consume(session, e.id, 2, actor="c")
    assert e.state == LotState.DEPLETED.value
    e = await ledger.restock(session, e.id, 1, actor="c")
    assert e.state == LotState.ACTIVE.value


async def test_reserve_and_release(session, ledger):
    item, product = await _setup(session)
    e = await ledger.create_entry(session, catalog_item_id=item.id, quantity=3, purchase_price=2, created_by="a")

    e = await ledger.reserve(session, e.id, 3, actor="shop")
    assert (e.available, e.reserved, e.state) == (0, 3, "fully_reserved")
    assert (await _product(session, product.id)).quantity_on_hand == 0

    e = await ledger.release(session, e.id, 2, actor="shop")
    assert (e.available, e.reserved, e.state) == (2, 1, "active")
    assert (await _product(session, product.id)).quantity_on_hand == 2


async def test_lot_config_rules(session, ledger):
    item, _ = await _setup(session)
    locked = await ledger.create_entry(
        session,
        catalog_item_id=item.id,
        quantity=5,
        purchase_price=1,
        created_by="a",
        config=LotConfig(requires_authorization=True),
    )
    whole = await ledger.create_entry(
        session,
        catalog_item_id=item.id,
        quantity=5,
        purchase_price=1,
        created_by="a",
        config=LotConfig(allow_partial_sale=False),
    )

    with pytest.raises(InvalidStateError):
        await ledger.consume(session, locked.id, 1, actor="c")
    assert (await ledger.consume(session, locked.id, 1, actor="c", authorized=True)).available == 4

    with pytest.raises(InvalidStateError):
        await ledger.consume(session, whole.id, 3, actor="c")
    assert (await ledger.consume(session, whole.id, 5, actor="c")).state == "depleted"


async def test_missing_lot_is_not_found(session, ledger):
    with pytest.raises(NotFoundError):
        await ledger.consume(session, 424242, 1, actor="c")
    with pytest.raises(NotFoundError):
        await ledger.get_entry(session, 424242)


# ---------------------------------------------------------------------------
# FIFO
# ---------------------------------------------------------------------------
async def test_fifo_consumes_oldest_first_and_splits(session, ledger):
    item, _ = await _setup(session)
    old = await ledger.create_entry(
        session, catalog_item_id=item.id, quantity=3, purchase_price=1, created_by="a", intake_date=days_ago(3)
    )
    new = await ledger.create_entry(
        session, catalog_item_id=item.id, quantity=5, purchase_price=1, created_by="a", intake_date=days_ago(1)
    )

    out = await ledger.consume_from_item(session, item.id, 5, actor="c")

    assert [(r["lot_entry_id"], r["quantity"]) for r in out] == [(old.id, 3), (new.id, 2)]
    assert out[0]["state"] == "depleted"
    assert (await ledger.get_entry(session, new.id)).available == 3


async def test_fifo_all_or_nothing(session, ledger):
    item, _ = await _setup(session)
    e = await ledger.create_entry(session, catalog_item_id=item.id, quantity=4, purchase_price=1, created_by="a")

    with pytest.raises(InsufficientStockError) as ei:
        await ledger.consume_from_item(session, item.id, 5, actor="c")
    assert ei.value.available == 4
    assert (await ledger.get_entry(session, e.id)).available == 4


async def test_fifo_skips_lots_needing_authorization(session, ledger):
    item, _ = await _setup(session)
    await ledger.create_entry(
        session,
        catalog_item_id=item.id,
        quantity=5,
        purchase_price=1,
        created_by="a",
        intake_date=days_ago(2),
        config=LotConfig(requires_authorization=True),
    )
    open_lot = await ledger.create_entry(
        session, catalog_item_id=item.id, quantity=5, purchase_price=1, created_by="a", intake_date=days_ago(1)
    )

    out = await ledger.consume_from_item(session, item.id, 2, actor="c")
    assert [r["lot_entry_id"] for r in out] == [open_lot.id]


# ---------------------------------------------------------------------------
# 管理操作
# ---------------------------------------------------------------------------
async def test_set_state_blocks_and_unblocks_consumption(session, ledger):
    item, _ = await _setup(session)
    e = await ledger.create_entry(session, catalog_item_id=item.id, quantity=5, purchase_price=1, created_by="a")

    e = await ledger.set_state(session, e.id, "held", reason="quality check", updated_by="qa")
    assert (e.state, e.state_reason) == ("held", "quality check")
    with pytest.raises(InvalidStateError):
        await ledger.consume(session, e.id, 1, actor="c")

    e = await ledger.set_state(session, e.id, LotState.ACTIVE, updated_by="qa")
    assert (await ledger.consume(session, e.id, 1, actor="c")).available == 4
    assert ("state", 0, "held") in await _movements(session, e.id)

    with pytest.raises(InvalidInputError):
        await ledger.set_state(session, e.id, "depleted", updated_by="qa")


async def test_update_entry_recomputes_cost_and_alert_date(session, ledger):
    item, _ = await _setup(session)
    e = await ledger.create_entry(
        session,
        catalog_item_id=item.id,
        quantity=10,
        purchase_price=2,
        created_by="a",
        config=LotConfig(expiry_alert_days=5),
    )
    expiry = e.intake_date.date() + timedelta(days=60)

    e = await ledger.update_entry(
        session, e.id, updated_by="b", purchase_price="3", expiry_date=expiry, notes="re-priced"
    )
    assert e.total_cost == Decimal("30.00")
    assert e.next_alert_on == expiry - timedelta(days=5)
    assert (e.notes, e.updated_by, e.version) == ("re-priced", "b", 2)


async def test_update_entry_validation(session, ledger):
    item, _ = await _setup(session)
    e = await ledger.create_entry(session, catalog_item_id=item.id, quantity=10, purchase_price=2, created_by="a")

    with pytest.raises(InvalidInputError):
        await ledger.update_entry(session, e.id, updated_by="b", initial=99)
    with pytest.raises(InvalidInputError):
        await ledger.update_entry(session, e.id, updated_by="b", expiry_date=e.intake_date.date() - timedelta(days=1))
    with pytest.raises(InvalidInputError):
        await ledger.update_entry(session, e.id, updated_by="b", min_stock=-1)
    with pytest.raises(InvalidInputError):
        await ledger.update_entry(session, e.id, updated_by="b", expiry_alert_days="soon")
    with pytest.raises(InvalidInputError):
        await ledger.update_entry(session, e.id, updated_by="", notes="x")


@pytest.mark.parametrize("cfg", [LotConfig(min_stock="many"), LotConfig(expiry_alert_days=-1)])
async def test_create_entry_rejects_bad_config(session, ledger, cfg):
    item, _ = await _setup(session)
    with pytest.raises(InvalidInputError):
        await ledger.create_entry(
            session, catalog_item_id=item.id, quantity=1, purchase_price=1, created_by="a", config=cfg
        )


async def test_delete_untouched_lot_reverses_product_stock(session, ledger):
    item, product = await _setup(session)
    e = await ledger.create_entry(session, catalog_item_id=item.id, quantity=6, purchase_price=1, created_by="a")

    out = await ledger.delete_entry(session, e.id)

    assert out["deleted"] == e.id
    assert out["product_stock_reversed"] is True
    assert out["movements_purged"] == 1
    assert (await _product(session, product.id)).quantity_on_hand == 0
    with pytest.raises(NotFoundError):
        await ledger.get_entry(session, e.id)


async def test_delete_refuses_lot_with_movements(session, ledger):
    item, _ = await _setup(session)
    e = await ledger.create_entry(session, catalog_item_id=item.id, quantity=6, purchase_price=1, created_by="a")
    await ledger.reserve(session, e.id, 1, actor="c")

    with pytest.raises(InvalidStateError):
        await ledger.delete_entry(session, e.id)


# ---------------------------------------------------------------------------
# 乐观锁
# ---------------------------------------------------------------------------
def _bump_version_after_read(ledger, monkeypatch, *, times):
    original = ledger._read
    calls = {"n": 0}

    async def racing_read(session, entry_id):
        entry = await original(session, entry_id)
        if entry is not None and calls["n"] < times:
            calls["n"] += 1
            await session.execute(
                update(LotEntry)
                .where(LotEntry.id == entry_id)
                .values(version=LotEntry.version + 1)
                .execution_options(synchronize_session=False)
            )
        return entry

    monkeypatch.setattr(ledger, "_read", racing_read)
    return calls


async def test_version_conflict_is_retried(session, ledger, monkeypatch):
    item, _ = await _setup(session)
    e = await ledger.create_entry(session, catalog_item_id=item.id, quantity=5, purchase_price=1, created_by="a")

    calls = _bump_version_after_read(ledger, monkeypatch, times=1)
    e = await ledger.consume(session, e.id, 2, actor="c")

    assert calls["n"] == 1
    assert (e.available, e.version) == (3, 3)


async def test_persistent_conflict_raises_concurrent_operation(session, ledger, monkeypatch):
    item, _ = await _setup(session)
    e = await ledger.create_entry(session, catalog_item_id=item.id, quantity=5, purchase_price=1, created_by="a")

    _bump_version_after_read(ledger, monkeypatch, times=100)
    with pytest.raises(ConcurrentOperationError) as ei:
        await ledger.consume(session, e.id, 2, actor="c")
    assert ei.value.context["attempts"] == 4

    count = await session.execute(select(func.count(LotMovement.id)).where(LotMovement.kind == "consume"))
    assert count.scalar_one() == 0


# ---------------------------------------------------------------------------
# 查询 / 统计 / 对账
# ---------------------------------------------------------------------------
async def test_list_entries_filters_and_paginates(session, ledger):
    item, _ = await _setup(session)
    for n, supplier in enumerate(["Acme", "Globex", "Initech"], start=1):
        await ledger.create_entry(
            session,
            catalog_item_id=item.id,
            quantity=n,
            purchase_price="2",
            created_by="alice",
            supplier=supplier,
            intake_date=days_ago(10 - n),
        )
    held = await ledger.create_entry(session, catalog_item_id=item.id, quantity=9, purchase_price="2", created_by="bob")
    await ledger.set_state(session, held.id, "held", updated_by="qa")

    everything = await ledger.list_entries(session)
    assert everything["pagination"]["total"] == 4
    assert everything["summary"]["total_available"] == 6
    assert everything["summary"]["total_value"] == Decimal("12.00")

    acme = await ledger.list_entries(session, LotEntryFilter(search="acm"))
    assert [e.supplier for e in acme["entries"]] == ["Acme"]

    by_user = await ledger.list_entries(session, LotEntryFilter(created_by="BOB"))
    assert [e.id for e in by_user["entries"]] == [held.id]

    page = await ledger.list_entries(
        session, LotEntryFilter(state="active"), PageRequest(page=1, page_size=2, sort_by="rotation_priority")
    )
    assert page["pagination"] == {
        "page": 1,
        "page_size": 2,
        "total": 3,
        "pages": 2,
        "has_next": True,
        "has_prev": False,
    }
    assert [e.supplier for e in page["entries"]] == ["Acme", "Globex"]

    with pytest.raises(InvalidInputError):
        await ledger.list_entries(session, page=PageRequest(sort_by="price"))
    with pytest.raises(InvalidInputError):
        await ledger.list_entries(session, LotEntryFilter(state="lost"))


async def test_catalog_summary_collects_alerts(session, ledger):
    item, _ = await _setup(session)
    low = await ledger.create_entry(
        session,
        catalog_item_id=item.id,
        quantity=4,
        purchase_price="1.50",
        created_by="a",
        config=LotConfig(min_stock=5),
    )
    await ledger.create_entry(session, catalog_item_id=item.id, quantity=6, purchase_price="1.00", created_by="a")

    out = await ledger.summary_for_catalog_item(session, item.id)

    assert out["total_available"] == 10
    assert out["lot_count"] == 2
    assert out["total_value"] == Decimal("12.00")
    assert [(a["type"], a["lot_entry_id"]) for a in out["active_alerts"]] == [("low_stock", low.id)]


async def test_general_statistics(session, ledger):
    item, _ = await _setup(session)
    soon = await ledger.create_entry(
        session,
        catalog_item_id=item.id,
        quantity=2,
        purchase_price=1,
        created_by="a",
        intake_date=days_ago(5),
        expiry_date=(days_ago(-3)).date(),
    )
    gone = await ledger.create_entry(session, catalog_item_id=item.id, quantity=1, purchase_price=1, created_by="a")
    await ledger.consume(session, gone.id, 1, actor="c")

    stats = await ledger.general_statistics(session, window_days=7)

    assert stats["counts"]["total"] == 2
    assert stats["counts"]["active"] == 1
    assert stats["counts"]["depleted"] == 1
    assert stats["valuation"]["items_with_stock"] == 1
    assert [s["lot_entry_id"] for s in stats["alerts"]["expiring_soon"]] == [soon.id]

    with pytest.raises(InvalidInputError):
        await ledger.general_statistics(session, window_days=-1)


async def test_recompute_reports_and_repairs_drift(session, ledger):
    item, product = await _setup(session)
    await ledger.create_entry(session, catalog_item_id=item.id, quantity=10, purchase_price=1, created_by="a")
    await session.execute(
        update(Product).where(Product.id == product.id).values(quantity_on_hand=99, quantity_sold=5)
    )

    report = await ledger.recompute(session, item.id, dry_run=True)
    assert report["count"] == 1
    row = report["products"][0]
    assert (row["ledger_on_hand"], row["product_on_hand"], row["diff_on_hand"]) == (10, 99, -89)
    assert (await _product(session, product.id)).quantity_on_hand == 99

    report = await ledger.recompute(session, item.id)
    assert report["dry_run"] is False
    p = await _product(session, product.id)
    assert (p.quantity_on_hand, p.quantity_sold) == (10, 0)

    assert (await ledger.recompute(session, item.id, dry_run=True))["count"] == 0


async def test_refresh_alerts_picks_up_new_expiry(session, ledger):
    item, _ = await _setup(session)
    e = await ledger.create_entry(
        session,
        catalog_item_id=item.id,
        quantity=5,
        purchase_price=1,
        created_by="a",
        expiry_date=(days_ago(-30)).date(),
    )
    assert e.alerts == []

    changed = await ledger.refresh_alerts(session, now=days_ago(-28))
    assert changed == 1
    fresh = await ledger.get_entry(session, e.id)
    assert [a["type"] for a in fresh.alerts] == ["expiry"]
