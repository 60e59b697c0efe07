from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from classbook.config import settings
from classbook.integrations.google_calendar import GoogleCalendar
from classbook.runtime import spawn
from classbook.services.booking_service import BookingService
from classbook.services.errors import (
    InvalidRequest,
    NotFound,
    NotOwner,
    SessionClosed,
    SlotTaken,
)
from classbook.services.schemas import OfferingIn
from classbook.services.slot_service import SlotService
from classbook.storage.db import get_session_ctx
from classbook.storage.models import Session, TimeSlot, User
from classbook.storage.states import SessionStatus, SlotStatus, check_transition
from classbook.utils.dates import minutes_of, now_local, slot_start, time_from_minutes

log = logging.getLogger(__name__)


async def _sync_calendar(cls: Session) -> None:
    event_id = await GoogleCalendar.upsert_event(cls)
    if not event_id or event_id == cls.gcal_event_id:
        return
    async with get_session_ctx() as s:
        await s.execute(
            update(Session)
            .where(Session.id == cls.id)
            .values(gcal_event_id=event_id)
            .execution_options(synchronize_session=False)
        )
        await s.commit()
    log.info("gcal.sync session=%s event=%s", cls.id, event_id)


async def _instructor(session: AsyncSession, instructor_id: int) -> User:
    user = await session.get(User, instructor_id)
    if user is None:
        raise NotFound("Instructor not found")
    if not user.is_instructor:
        raise InvalidRequest("User is not an instructor")
    return user


def _new_session(instructor_id: int, slot: TimeSlot, offering: OfferingIn) -> Session:
    return Session(
        instructor_id=instructor_id,
        time_slot=slot,
        title=offering.title,
        description=(offering.description or "").strip() or None,
        price_cents=offering.price_cents,
        is_donation=offering.donation,
        max_capacity=offering.max_capacity or settings.default_max_capacity,
        seats_taken=0,
        skill_level=offering.skill_level,
        status=SessionStatus.upcoming,
    )


class SessionService:
    @staticmethod
    async def create_session(
        session: AsyncSession, instructor_id: int, slot_id: int, offering: OfferingIn
    ) -> Session:
        """Claim ``slot_id`` and put a class on it in one transaction.

        Raises ``SlotTaken`` when another class already holds the slot.
        """
        await _instructor(session, instructor_id)
        slot = await SlotService.get(session, slot_id)
        if slot is None:
            raise NotFound("Time slot not found")
        if slot_start(slot.date, slot.start_time) < now_local():
            raise InvalidRequest("Cannot create a class in the past")

        claim = await SlotService.try_claim(session, slot_id)
        if not claim.ok:
            await session.rollback()
            raise SlotTaken()

        cls = _new_session(instructor_id, claim.slot, offering)
        session.add(cls)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            log.info("sessions.create slot=%s -> conflict (index)", slot_id)
            raise SlotTaken()
        log.info("sessions.create instructor=%s slot=%s session=%s", instructor_id, slot_id, cls.id)
        spawn(_sync_calendar(cls), name=f"gcal-create:{cls.id}")
        return cls

    @staticmethod
    async def create_recurring(
        session: AsyncSession,
        instructor_id: int,
        on: date,
        start_time: time,
        duration_minutes: int,
        weeks: int,
        offering: OfferingIn,
    ) -> List[Session]:
        if duration_minutes <= 0:
            raise InvalidRequest("Duration must be positive")
        if weeks < 1:
            raise InvalidRequest("At least one week is required")
        await _instructor(session, instructor_id)
        end_time = time_from_minutes(minutes_of(start_time) + duration_minutes + settings.class_buffer_minutes)
        now = now_local()

        created: List[Session] = []
        for week in range(weeks):
            day = on + timedelta(weeks=week)
            if slot_start(day, start_time) < now:
                continue

            slot = await SlotService.find(session, day, start_time)
            if slot is None:
                slot = TimeSlot(date=day, start_time=start_time, end_time=end_time, status=SlotStatus.available)
                session.add(slot)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    slot = await SlotService.find(session, day, start_time)
                    if slot is None:
                        continue
            if slot.status != SlotStatus.available:
                log.info("sessions.recurring day=%s start=%s -> slot %s", day, start_time, slot.status.value)
                continue
            if await SlotService.has_claimed_overlap(
                session, day, slot.start_time, slot.end_time, exclude_slot_id=slot.id
            ):
                log.info("sessions.recurring day=%s start=%s -> overlaps", day, start_time)
                continue

            claim = await SlotService.try_claim(session, slot.id)
            if not claim.ok:
                await session.rollback()
                continue
            cls = _new_session(instructor_id, claim.slot, offering)
            session.add(cls)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                continue
            created.append(cls)
            spawn(_sync_calendar(cls), name=f"gcal-create:{cls.id}")

        if not created:
            raise SlotTaken("All selected time slots are already taken")
        log.info("sessions.recurring instructor=%s created=%s of %s", instructor_id, len(created), weeks)
        return created

    @staticmethod
    async def cancel_session(
        session: AsyncSession, session_id: int, *, instructor_id: Optional[int] = None
    ) -> bool:
        """Cancel a class, its confirmed bookings, and free the slot.

        Calling it again on a cancelled class finishes a cascade that was
        interrupted. Returns False when there was nothing left to do.
        """
        cls = await session.get(Session, session_id, populate_existing=True)
        if cls is None:
            raise NotFound("Class not found")
        if instructor_id is not None and cls.instructor_id != instructor_id:
            raise NotOwner("Only the instructor can cancel this class")
        if cls.status == SessionStatus.completed:
            raise SessionClosed("This class already took place")

        slot_id, event_id = cls.time_slot_id, cls.gcal_event_id
        flipped = False
        if cls.status != SessionStatus.cancelled:
            check_transition(cls.status, SessionStatus.cancelled)
            res = await session.execute(
                update(Session)
                .where(Session.id == session_id, Session.status == SessionStatus.upcoming)
                .values(status=SessionStatus.cancelled)
                .execution_options(synchronize_session=False)
            )
            flipped = res.rowcount == 1
            await session.commit()

        # new reservations are refused from here on, so the list is final
        bookings = await BookingService.confirmed_for_session(session, session_id)
        booking_ids = [b.id for b in bookings]
        swept = 0
        for booking_id in booking_ids:
            if await BookingService.cancel(session, booking_id):
                swept += 1

        released = await SlotService.release(session, slot_id)
        await session.commit()
        if not (flipped or swept or released):
            return False
        log.info("sessions.cancel session=%s bookings=%s resumed=%s", session_id, swept, not flipped)
        if flipped:
            spawn(GoogleCalendar.delete_event(event_id), name=f"gcal-delete:{session_id}")
        return True

    @staticmethod
    async def update_session(
        session: AsyncSession,
        session_id: int,
        *,
        instructor_id: Optional[int] = None,
        title: Optional[str] = None,
        description: Optional[str] = None,
        max_capacity: Optional[int] = None,
        skill_level: Optional[str] = None,
    ) -> Session:
        cls = await session.get(Session, session_id, populate_existing=True)
        if cls is None:
            raise NotFound("Class not found")
        if instructor_id is not None and cls.instructor_id != instructor_id:
            raise NotOwner("Only the instructor can edit this class")
        if cls.status != SessionStatus.upcoming:
            raise SessionClosed()

        values = {}
        if title is not None:
            if not title.strip():
                raise InvalidRequest("Title is required")
            values["title"] = title.strip()
        if description is not None:
            values["description"] = description.strip() or None
        if skill_level is not None:
            values["skill_level"] = skill_level

        stmt = update(Session).where(Session.id == session_id, Session.status == SessionStatus.upcoming)
        if max_capacity is not None:
            if max_capacity < 1:
                raise InvalidRequest("Capacity must be at least 1")
            # guarded against seats taken concurrently
            stmt = stmt.where(Session.seats_taken <= max_capacity)
            values["max_capacity"] = max_capacity
        if not values:
            return cls

        res = await session.execute(stmt.values(**values).execution_options(synchronize_session=False))
        if res.rowcount != 1:
            await session.rollback()
            raise InvalidRequest("Capacity cannot be lower than the seats already taken")
        await session.commit()
        cls = await session.get(Session, session_id, populate_existing=True)
        log.info("sessions.update session=%s fields=%s", session_id, sorted(values))
        spawn(_sync_calendar(cls), name=f"gcal-update:{session_id}")
        return cls

    # reads

    @staticmethod
    async def get(session: AsyncSession, session_id: int) -> Optional[Session]:
        return await session.get(Session, session_id, populate_existing=True)

    @staticmethod
    async def list_upcoming(
        session: AsyncSession, *, instructor_id: Optional[int] = None, now: Optional[datetime] = None
    ) -> List[Session]:
        now = now or now_local()
        stmt = (
            select(Session)
            .join(TimeSlot, Session.time_slot_id == TimeSlot.id)
            .where(Session.status == SessionStatus.upcoming, TimeSlot.date >= now.date())
            .order_by(TimeSlot.date, TimeSlot.start_time)
        )
        if instructor_id is not None:
            stmt = stmt.where(Session.instructor_id == instructor_id)
        res = await session.execute(stmt)
        return [
            s for s in res.scalars().unique().all()
            if slot_start(s.time_slot.date, s.time_slot.start_time) >= now
        ]
