import asyncio
from datetime import date

import pytest

from tests.factories import make_raw_lot

pytestmark = pytest.mark.asyncio

DAY = date(2024, 3, 1)


async def test_numbers_increase_per_day(session, sequence):
    first = await sequence.next_entry_number(session, on=DAY)
    second = await sequence.next_entry_number(session, on=DAY)
    other_day = await sequence.next_entry_number(session, on=date(2024, 3, 2))
    await session.commit()

    assert (first, second) == ("ENT-20240301-001", "ENT-20240301-002")
    assert other_day == "ENT-20240302-001"
    assert await sequence.peek(session, day=DAY) == 2


async def test_rolled_back_numbers_are_not_kept(session, sequence):
    await sequence.next_entry_number(session, on=DAY)
    await session.rollback()
    assert await sequence.next_entry_number(session, on=DAY) == "ENT-20240301-001"


async def test_concurrent_sessions_get_distinct_numbers(session_factory, sequence):
    async def issue() -> str:
        async with session_factory() as s:
            number = await sequence.next_entry_number(s, on=DAY)
            await s.commit()
            return number

    numbers = await asyncio.gather(*[issue() for _ in range(6)])
    assert sorted(numbers) == [f"ENT-20240301-{i:03d}" for i in range(1, 7)]


async def test_realign_raises_counter_to_highest_stored_number(session, sequence):
    await make_raw_lot(session, entry_number="ENT-20240301-007", catalog_item_id=1)
    await make_raw_lot(session, entry_number="ENT-20240301-junk", catalog_item_id=1)

    assert await sequence.highest_issued(session, day=DAY) == 7
    assert await sequence.realign(session, day=DAY) == 7
    assert await sequence.next_entry_number(session, on=DAY) == "ENT-20240301-008"


async def test_realign_never_lowers_counter(session, sequence):
    for _ in range(3):
        await sequence.next_entry_number(session, on=DAY)
    await make_raw_lot(session, entry_number="ENT-20240301-001", catalog_item_id=1)

    assert await sequence.realign(session, day=DAY) == 3
    assert await sequence.peek(session, day=DAY) == 3


async def test_realign_all_covers_existing_counters_and_today(session, sequence):
    await sequence.next_entry_number(session, on=DAY)
    out = await sequence.realign_all(session)

    assert out[sequence.counter_key(DAY)] == 1
    today_key = sequence.counter_key(sequence.business_day())
    assert today_key in out
