import asyncio
from datetime import date, time, timedelta

import pytest
from sqlalchemy import func, select

from classbook.services.schemas import OfferingIn
from classbook.services.session_service import SessionService
from classbook.services.slot_service import SlotPattern, SlotService
from classbook.storage.models import TimeSlot
from classbook.storage.states import SessionStatus, SlotStatus
from classbook.utils.dates import now_local


def _next_monday() -> date:
    today = now_local().date()
    return today + timedelta(days=7 - today.weekday())


@pytest.mark.asyncio
async def test_generate_slots_is_idempotent(db):
    pattern = SlotPattern(weekdays=(0, 2), starts=(time(9, 0), time(18, 0)), weeks=2)
    week = _next_monday()

    first = await SlotService.generate_slots(db, week, pattern)
    second = await SlotService.generate_slots(db, week, pattern)

    assert len(first) == 8
    assert second == []
    total = await db.scalar(select(func.count(TimeSlot.id)))
    assert total == 8


@pytest.mark.asyncio
async def test_concurrent_generators_do_not_duplicate(sessionmaker, db):
    pattern = SlotPattern(weekdays=(1,), starts=(time(7, 0), time(12, 0)))
    week = _next_monday()

    async def generate():
        async with sessionmaker() as s:
            return await SlotService.generate_slots(s, week, pattern)

    results = await asyncio.gather(*(generate() for _ in range(4)))

    assert sum(len(r) for r in results) == 2
    assert len(await SlotService.available_slots(db)) == 2


@pytest.mark.asyncio
async def test_concurrent_claims_have_one_winner(sessionmaker, make_slot):
    slot = await make_slot()

    async def claim():
        async with sessionmaker() as s:
            result = await SlotService.try_claim(s, slot.id)
            await s.commit()
            return result

    results = await asyncio.gather(*(claim() for _ in range(8)))

    winners = [r for r in results if r.ok]
    assert len(winners) == 1
    losers = [r for r in results if not r.ok]
    assert all(r.slot is not None and r.slot.status == SlotStatus.claimed for r in losers)


@pytest.mark.asyncio
async def test_claim_of_missing_slot_is_a_conflict_result(db):
    result = await SlotService.try_claim(db, 4242)
    assert result.ok is False
    assert result.slot is None


@pytest.mark.asyncio
async def test_release_refused_while_a_class_holds_the_slot(db, instructor, make_slot):
    slot = await make_slot()
    cls = await SessionService.create_session(db, instructor.id, slot.id, OfferingIn(title="Yin"))

    assert await SlotService.release(db, slot.id) is False
    await db.commit()

    await SessionService.cancel_session(db, cls.id)
    refreshed = await SlotService.get(db, slot.id)
    assert refreshed.status == SlotStatus.available


@pytest.mark.asyncio
async def test_release_of_plain_claim(db, make_slot):
    slot = await make_slot()
    assert (await SlotService.try_claim(db, slot.id)).ok
    await db.commit()

    assert await SlotService.release(db, slot.id) is True
    await db.commit()
    assert (await SlotService.get(db, slot.id)).status == SlotStatus.available
    # available slots cannot be released again
    assert await SlotService.release(db, slot.id) is False


@pytest.mark.asyncio
async def test_complete_past_moves_slots_and_classes(db, instructor, make_slot):
    slot = await make_slot()
    cls = await SessionService.create_session(db, instructor.id, slot.id, OfferingIn(title="Core"))

    later = now_local() + timedelta(days=30)
    done = await SlotService.complete_past(db, now=later)

    assert done == 1
    assert (await SlotService.get(db, slot.id)).status == SlotStatus.completed
    assert (await SessionService.get(db, cls.id)).status == SessionStatus.completed


@pytest.mark.asyncio
async def test_overlap_detection(db, make_slot):
    start = (now_local() + timedelta(days=5)).replace(hour=10, minute=0, second=0)
    slot = await make_slot(start, minutes=90)
    assert (await SlotService.try_claim(db, slot.id)).ok
    await db.commit()

    day = start.date()
    assert await SlotService.has_claimed_overlap(db, day, time(11, 0), time(12, 0))
    assert not await SlotService.has_claimed_overlap(db, day, time(11, 30), time(12, 30))
    assert not await SlotService.has_claimed_overlap(db, day, time(11, 0), time(12, 0), exclude_slot_id=slot.id)
