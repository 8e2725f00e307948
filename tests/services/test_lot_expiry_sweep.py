from datetime import timedelta

import pytest

from lotledger.jobs.lot_expiry_sweep import SWEEP_ACTOR, LotExpirySweep
from lotledger.models.enums import LotState
from lotledger.services.errors import ConcurrentOperationError
from tests.factories import days_ago, make_catalog_item

pytestmark = pytest.mark.asyncio


async def _lot(session, ledger, item, *, expires_in_days, qty=5):
    return await ledger.create_entry(
        session,
        catalog_item_id=item.id,
        quantity=qty,
        purchase_price=1,
        created_by="a",
        intake_date=days_ago(30),
        expiry_date=(days_ago(-expires_in_days)).date(),
    )


async def test_marks_only_past_expiry_lots(session, ledger):
    item = await make_catalog_item(session)
    stale = await _lot(session, ledger, item, expires_in_days=-2)
    fresh = await _lot(session, ledger, item, expires_in_days=10)
    held = await _lot(session, ledger, item, expires_in_days=-5)
    await ledger.set_state(session, held.id, "held", updated_by="qa")

    out = await LotExpirySweep(ledger).run(session)

    assert [r["lot_entry_id"] for r in out["expired"]] == [stale.id]
    assert out["skipped"] == []
    e = await ledger.get_entry(session, stale.id)
    assert (e.state, e.updated_by) == (LotState.EXPIRED.value, SWEEP_ACTOR)
    assert e.state_reason.startswith("expired before ")
    assert (await ledger.get_entry(session, fresh.id)).state == "active"
    assert (await ledger.get_entry(session, held.id)).state == "held"

    again = await LotExpirySweep(ledger).run(session)
    assert again["expired"] == []


async def test_explicit_as_of_date(session, ledger):
    item = await make_catalog_item(session)
    lot = await _lot(session, ledger, item, expires_in_days=3)

    as_of = lot.expiry_date + timedelta(days=1)
    out = await LotExpirySweep(ledger).run(session, today=as_of)

    assert out["as_of"] == as_of.isoformat()
    assert [r["entry_number"] for r in out["expired"]] == [lot.entry_number]


async def test_fully_reserved_lots_expire_too(session, ledger):
    item = await make_catalog_item(session)
    lot = await _lot(session, ledger, item, expires_in_days=-1, qty=2)
    await ledger.reserve(session, lot.id, 2, actor="shop")

    out = await LotExpirySweep(ledger).run(session)
    assert [r["lot_entry_id"] for r in out["expired"]] == [lot.id]
    assert out["expired"][0]["available"] == 0


async def test_conflicting_lot_is_skipped(session, ledger, monkeypatch):
    item = await make_catalog_item(session)
    lot = await _lot(session, ledger, item, expires_in_days=-1)

    async def always_conflicts(*_a, **_kw):
        raise ConcurrentOperationError("busy", context={"lot_entry_id": lot.id})

    monkeypatch.setattr(ledger, "set_state", always_conflicts)

    out = await LotExpirySweep(ledger).run(session)
    assert out["expired"] == []
    assert out["skipped"] == [lot.id]
