from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import and_, exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from classbook.storage.models import Session, TimeSlot
from classbook.storage.states import SessionStatus, SlotStatus
from classbook.utils.dates import minutes_of, now_local, time_from_minutes

log = logging.getLogger(__name__)

WEEKDAYS = (0, 1, 2, 3, 4)
DAY_STARTS = (time(7, 0), time(9, 0), time(12, 0), time(17, 30), time(19, 0))
SLOT_MINUTES = 60
WINDOW_DAYS = 14


@dataclass(frozen=True)
class SlotPattern:
    """Weekly template of start times materialized by ``generate_slots``."""

    weekdays: Sequence[int] = WEEKDAYS
    starts: Sequence[time] = DAY_STARTS
    duration_minutes: int = SLOT_MINUTES
    weeks: int = 1

    def occurrences(self, week_start: date) -> List[tuple[date, time, time]]:
        out: List[tuple[date, time, time]] = []
        for i in range(self.weeks * 7):
            day = week_start + timedelta(days=i)
            if day.weekday() not in self.weekdays:
                continue
            for start in self.starts:
                end = time_from_minutes(minutes_of(start) + self.duration_minutes)
                out.append((day, start, end))
        return out


@dataclass
class ClaimResult:
    ok: bool
    slot: Optional[TimeSlot] = field(default=None)


def _overlaps(start: time, end: time, other_start: time, other_end: time) -> bool:
    return minutes_of(start) < minutes_of(other_end) and minutes_of(end) > minutes_of(other_start)


class SlotService:
    @staticmethod
    async def generate_slots(
        session: AsyncSession, week_start: date, pattern: SlotPattern | None = None
    ) -> List[TimeSlot]:
        pattern = pattern or SlotPattern()
        wanted = pattern.occurrences(week_start)
        if not wanted:
            return []

        for attempt in range(2):
            days = {d for d, _, _ in wanted}
            res = await session.execute(
                select(TimeSlot.date, TimeSlot.start_time).where(TimeSlot.date.in_(days))
            )
            present = {(d, t) for d, t in res.all()}

            created = [
                TimeSlot(date=d, start_time=s, end_time=e, status=SlotStatus.available)
                for d, s, e in wanted
                if (d, s) not in present
            ]
            if not created:
                return []
            session.add_all(created)
            try:
                await session.commit()
            except IntegrityError:
                # another generator inserted some of the same pairs first
                await session.rollback()
                if attempt:
                    raise
                log.info("slots.generate race week=%s -> re-reading", week_start)
                continue
            log.info("slots.generate week=%s weeks=%s created=%s", week_start, pattern.weeks, len(created))
            return created
        return []

    @staticmethod
    async def get(session: AsyncSession, slot_id: int) -> Optional[TimeSlot]:
        return await session.get(TimeSlot, slot_id, populate_existing=True)

    @staticmethod
    async def find(session: AsyncSession, on: date, start_time: time) -> Optional[TimeSlot]:
        return await session.scalar(
            select(TimeSlot).where(TimeSlot.date == on, TimeSlot.start_time == start_time)
        )

    @staticmethod
    async def try_claim(session: AsyncSession, slot_id: int) -> ClaimResult:
        """Flip an available slot to claimed. Does not commit.

        The guard lives in the UPDATE itself, so of several concurrent
        callers only one sees a matched row. The others get ``ok=False``
        and the slot as it is now.
        """
        res = await session.execute(
            update(TimeSlot)
            .where(TimeSlot.id == slot_id, TimeSlot.status == SlotStatus.available)
            .values(status=SlotStatus.claimed)
            .execution_options(synchronize_session=False)
        )
        slot = await SlotService.get(session, slot_id)
        if res.rowcount == 1:
            log.info("slots.claim slot=%s -> ok", slot_id)
            return ClaimResult(ok=True, slot=slot)
        log.info("slots.claim slot=%s -> conflict (status=%s)", slot_id, slot.status.value if slot else None)
        return ClaimResult(ok=False, slot=slot)

    @staticmethod
    async def release(session: AsyncSession, slot_id: int) -> bool:
        live_session = exists().where(
            Session.time_slot_id == slot_id,
            Session.status != SessionStatus.cancelled,
        )
        res = await session.execute(
            update(TimeSlot)
            .where(TimeSlot.id == slot_id, TimeSlot.status == SlotStatus.claimed, ~live_session)
            .values(status=SlotStatus.available)
            .execution_options(synchronize_session=False)
        )
        released = res.rowcount == 1
        log.info("slots.release slot=%s -> %s", slot_id, "ok" if released else "refused")
        return released

    @staticmethod
    async def complete_past(session: AsyncSession, *, now: datetime | None = None) -> int:
        today = (now or now_local()).date()
        res = await session.execute(
            update(TimeSlot)
            .where(TimeSlot.status == SlotStatus.claimed, TimeSlot.date < today)
            .values(status=SlotStatus.completed)
            .execution_options(synchronize_session=False)
        )
        past_slot_ids = select(TimeSlot.id).where(TimeSlot.date < today)
        await session.execute(
            update(Session)
            .where(Session.status == SessionStatus.upcoming, Session.time_slot_id.in_(past_slot_ids))
            .values(status=SessionStatus.completed)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if res.rowcount:
            log.info("slots.complete_past before=%s completed=%s", today, res.rowcount)
        return res.rowcount

    @staticmethod
    async def has_claimed_overlap(
        session: AsyncSession, on: date, start: time, end: time, *, exclude_slot_id: int | None = None
    ) -> bool:
        res = await session.execute(
            select(TimeSlot).where(TimeSlot.date == on, TimeSlot.status == SlotStatus.claimed)
        )
        for slot in res.scalars().all():
            if slot.id == exclude_slot_id:
                continue
            if _overlaps(start, end, slot.start_time, slot.end_time):
                return True
        return False

    @staticmethod
    async def available_slots(
        session: AsyncSession, *, now: datetime | None = None, days: int = WINDOW_DAYS
    ) -> List[TimeSlot]:
        now = now or now_local()
        res = await session.execute(
            select(TimeSlot)
            .where(
                TimeSlot.status == SlotStatus.available,
                and_(TimeSlot.date >= now.date(), TimeSlot.date < now.date() + timedelta(days=days)),
            )
            .order_by(TimeSlot.date, TimeSlot.start_time)
        )
        return [s for s in res.scalars().all() if datetime.combine(s.date, s.start_time) >= now]
