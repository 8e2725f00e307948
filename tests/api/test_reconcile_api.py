from datetime import date

import pytest
from sqlalchemy import text

from tests.factories import days_ago, make_catalog_item, make_raw_lot

pytestmark = pytest.mark.asyncio


async def test_stats_before_any_cleanup(client):
    r = await client.get("/reconcile/stats")
    assert r.status_code == 200
    assert r.json() == {
        "is_running": False,
        "last_cleanup": None,
        "cleanup_count": 0,
        "last_result": None,
    }


async def test_sweep_then_check(client, session_factory):
    async with session_factory() as s:
        await s.execute(text("DROP INDEX uq_lot_entries_entry_number"))
        for age in (3, 2, 1):
            await make_raw_lot(s, entry_number="ENT-20240105-004", catalog_item_id=1, created_at=days_ago(age))
        await s.commit()

    r = await client.post("/reconcile/sweep")
    assert r.status_code == 200, r.text
    assert r.json()["skipped"] is False
    assert r.json()["total_eliminated"] == 2
    assert r.json()["by_spec"] == {"lot_entry_number": 2}

    r = await client.post("/reconcile/check")
    assert r.json()["duplicates_found"] == 0
    assert r.json()["cleaned"] is False

    stats = (await client.get("/reconcile/stats")).json()
    assert stats["cleanup_count"] == 2


async def test_realign_sequences(client, session_factory, sequence):
    async with session_factory() as s:
        await make_raw_lot(s, entry_number="ENT-20240105-009", catalog_item_id=1)
        await sequence.next_entry_number(s, on=date(2024, 1, 5))
        await s.commit()

    r = await client.post("/reconcile/sequences/realign")
    assert r.status_code == 200
    assert r.json()["counters"][sequence.counter_key(date(2024, 1, 5))] == 9


async def test_expiry_sweep_and_alert_refresh(client, session_factory, ledger):
    async with session_factory() as s:
        item = await make_catalog_item(s)
        lot = await ledger.create_entry(
            s,
            catalog_item_id=item.id,
            quantity=3,
            purchase_price=1,
            created_by="a",
            intake_date=days_ago(20),
            expiry_date=days_ago(1).date(),
        )
        await s.commit()
        lot_id = lot.id

    r = await client.post("/reconcile/alerts/refresh")
    assert r.status_code == 200
    assert r.json() == {"changed": 0}

    r = await client.post("/reconcile/expiry-sweep")
    assert r.status_code == 200
    assert [e["lot_entry_id"] for e in r.json()["expired"]] == [lot_id]

    lot = (await client.get(f"/lot-entries/{lot_id}")).json()
    assert lot["state"] == "expired"


async def test_metrics_endpoint(client):
    r = await client.get("/metrics")
    assert r.status_code == 200
    assert "ledger_guard_rejections_total" in r.text
