from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Tuple, Union

from sqlalchemy import exists, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from classbook.config import settings
from classbook.services import email_templates
from classbook.services.email_service import deliver
from classbook.services.engagement_service import EMAIL_SENT, EngagementService, email_event
from classbook.services.lead_service import LeadService
from classbook.storage.models import Booking, RebookNudge, Session, Subscriber, TimeSlot
from classbook.storage.states import BookingStatus, SessionStatus
from classbook.utils.dates import now_local, slot_start

log = logging.getLogger("notifier")

LEAD_FOLLOWUP = "lead_followup"
PRE_CLASS_REMINDER = "pre_class_reminder"
POST_CLASS_FOLLOWUP = "post_class_followup"
REBOOK_NUDGE = "rebook_nudge"
STAGES = (LEAD_FOLLOWUP, PRE_CLASS_REMINDER, POST_CLASS_FOLLOWUP, REBOOK_NUDGE)
# marketing stages share a per-address weekly allowance
THROTTLED_STAGES = frozenset({LEAD_FOLLOWUP, REBOOK_NUDGE})


@dataclass
class Outgoing:
    stage: str
    # subscriber id, booking id, or (session id, email) for nudges
    key: Union[int, Tuple[int, str]]
    email: str
    message: email_templates.Message


@dataclass
class NotifierReport:
    sent: Counter = field(default_factory=Counter)
    failed: Counter = field(default_factory=Counter)
    opted_out: Counter = field(default_factory=Counter)
    throttled: Counter = field(default_factory=Counter)

    @property
    def total_sent(self) -> int:
        return sum(self.sent.values())

    def as_dict(self) -> Dict[str, Dict[str, int]]:
        return {
            stage: {
                "sent": self.sent[stage],
                "failed": self.failed[stage],
                "opted_out": self.opted_out[stage],
                "throttled": self.throttled[stage],
            }
            for stage in STAGES
        }


def _instructor_name(cls: Session) -> str:
    return cls.instructor.full_name if cls.instructor else "your instructor"


async def _lead_followups(session: AsyncSession, now: datetime) -> List[Outgoing]:
    booked = exists().where(
        Booking.guest_email == Subscriber.email,
        Booking.status == BookingStatus.confirmed,
    )
    res = await session.execute(
        select(Subscriber).where(
            Subscriber.source == settings.lead_source,
            Subscriber.is_active.is_(True),
            Subscriber.created_at <= now - timedelta(hours=settings.lead_followup_delay_hours),
            Subscriber.lead_followup_sent_at.is_(None),
            ~booked,
        ).execution_options(populate_existing=True)
    )
    return [
        Outgoing(LEAD_FOLLOWUP, sub.id, sub.email, email_templates.lead_followup(sub.email, sub.first_name))
        for sub in res.scalars().all()
    ]


async def _bookings_with_email(session: AsyncSession, marker, first_day, last_day) -> List[Booking]:
    stmt = (
        select(Booking)
        .join(Session, Booking.session_id == Session.id)
        .join(TimeSlot, Session.time_slot_id == TimeSlot.id)
        .where(
            Booking.status == BookingStatus.confirmed,
            Booking.guest_email.is_not(None),
            marker.is_(None),
            Session.status != SessionStatus.cancelled,
            TimeSlot.date <= last_day,
        )
        .order_by(Booking.id)
        .execution_options(populate_existing=True)
    )
    if first_day is not None:
        stmt = stmt.where(TimeSlot.date >= first_day)
    res = await session.execute(stmt)
    return list(res.scalars().unique().all())


async def _pre_class_reminders(session: AsyncSession, now: datetime) -> List[Outgoing]:
    until = now + timedelta(hours=settings.pre_class_window_hours)
    out: List[Outgoing] = []
    for b in await _bookings_with_email(session, Booking.pre_class_reminder_sent_at, now.date(), until.date()):
        cls = b.session
        start_at = slot_start(cls.time_slot.date, cls.time_slot.start_time)
        if not (now <= start_at <= until) or cls.status != SessionStatus.upcoming:
            continue
        msg = email_templates.pre_class_reminder(
            b.guest_email, b.guest_first_name, cls.title, _instructor_name(cls), start_at
        )
        out.append(Outgoing(PRE_CLASS_REMINDER, b.id, b.guest_email, msg))
    return out


async def _post_class_followups(session: AsyncSession, now: datetime) -> List[Outgoing]:
    grace = timedelta(minutes=settings.post_class_grace_minutes)
    out: List[Outgoing] = []
    for b in await _bookings_with_email(session, Booking.post_class_followup_sent_at, None, now.date()):
        cls = b.session
        if slot_start(cls.time_slot.date, cls.time_slot.start_time) + grace > now:
            continue
        msg = email_templates.post_class_followup(
            b.guest_email, b.guest_first_name, cls.title, _instructor_name(cls)
        )
        out.append(Outgoing(POST_CLASS_FOLLOWUP, b.id, b.guest_email, msg))
    return out


async def _rebook_nudges(session: AsyncSession, now: datetime) -> List[Outgoing]:
    res = await session.execute(
        select(Session)
        .where(
            Session.status == SessionStatus.upcoming,
            Session.created_at >= now - timedelta(hours=settings.rebook_lookback_hours),
        )
        .order_by(Session.id)
        .execution_options(populate_existing=True)
    )
    out: List[Outgoing] = []
    for new in res.scalars().unique().all():
        new_start = slot_start(new.time_slot.date, new.time_slot.start_time)
        past = await session.execute(
            select(Booking)
            .join(Session, Booking.session_id == Session.id)
            .where(
                Session.id != new.id,
                Session.instructor_id == new.instructor_id,
                Session.title == new.title,
                Session.status != SessionStatus.cancelled,
                Booking.status == BookingStatus.confirmed,
                Booking.guest_email.is_not(None),
            )
            .order_by(Booking.id)
            .execution_options(populate_existing=True)
        )
        already = set(
            (await session.execute(select(RebookNudge.email).where(RebookNudge.session_id == new.id))).scalars()
        )
        already |= set(
            (await session.execute(
                select(Booking.guest_email).where(
                    Booking.session_id == new.id, Booking.status == BookingStatus.confirmed
                )
            )).scalars()
        )
        for b in past.scalars().unique().all():
            earlier = b.session
            if slot_start(earlier.time_slot.date, earlier.time_slot.start_time) >= new_start:
                continue
            if b.guest_email in already:
                continue
            already.add(b.guest_email)
            msg = email_templates.rebook_nudge(
                b.guest_email, b.guest_first_name, new.title, _instructor_name(new), new.id
            )
            out.append(Outgoing(REBOOK_NUDGE, (new.id, b.guest_email), b.guest_email, msg))
    return out


RULES = (
    (LEAD_FOLLOWUP, _lead_followups),
    (PRE_CLASS_REMINDER, _pre_class_reminders),
    (POST_CLASS_FOLLOWUP, _post_class_followups),
    (REBOOK_NUDGE, _rebook_nudges),
)


async def _mark(session: AsyncSession, item: Outgoing, now: datetime) -> bool:
    """Write the one-shot marker; False if something else already wrote it."""
    if item.stage == REBOOK_NUDGE:
        session_id, email = item.key
        try:
            await session.execute(insert(RebookNudge).values(session_id=session_id, email=email, sent_at=now))
            session.add(email_event(email, EMAIL_SENT, at=now, stage=item.stage))
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return False
        return True

    if item.stage == LEAD_FOLLOWUP:
        stmt = update(Subscriber).where(
            Subscriber.id == item.key, Subscriber.lead_followup_sent_at.is_(None)
        ).values(lead_followup_sent_at=now)
    else:
        column = Booking.pre_class_reminder_sent_at if item.stage == PRE_CLASS_REMINDER else Booking.post_class_followup_sent_at
        stmt = update(Booking).where(Booking.id == item.key, column.is_(None)).values({column.key: now})
    res = await session.execute(stmt.execution_options(synchronize_session=False))
    if res.rowcount == 1:
        session.add(email_event(item.email, EMAIL_SENT, at=now, stage=item.stage))
    await session.commit()
    return res.rowcount == 1


class NotifierService:
    @staticmethod
    async def run(session: AsyncSession, *, now: datetime | None = None) -> NotifierReport:
        """Evaluate every lifecycle rule once and send what is due.

        A marker is only written after the mail transport accepted the
        message, so a failed send is retried on the next run.
        """
        now = now or now_local()
        report = NotifierReport()
        for stage, collect in RULES:
            items = await collect(session, now)
            if items:
                log.info("notifier.%s due=%s", stage, len(items))
            await NotifierService._dispatch(session, items, report, now)
        log.info("notifier.run done sent=%s", dict(report.sent))
        return report

    @staticmethod
    async def _dispatch(
        session: AsyncSession, items: List[Outgoing], report: NotifierReport, now: datetime
    ) -> None:
        ready: List[Outgoing] = []
        queued: Counter = Counter()
        for item in items:
            if await LeadService.is_opted_out(session, item.email):
                report.opted_out[item.stage] += 1
                log.info("notifier.%s key=%s -> opted out", item.stage, item.key)
                continue
            if item.stage in THROTTLED_STAGES:
                allowance = await EngagementService.send_allowance(session, item.email, now=now)
                if queued[item.email] >= allowance:
                    # no marker, so it is offered again on a later run
                    report.throttled[item.stage] += 1
                    log.info("notifier.%s key=%s -> throttled", item.stage, item.key)
                    continue
                queued[item.email] += 1
            ready.append(item)

        size = settings.notifier_batch_size
        for start in range(0, len(ready), size):
            if start:
                await asyncio.sleep(settings.notifier_batch_delay_seconds)
            batch = ready[start:start + size]
            results = await asyncio.gather(
                *(deliver(item.email, item.message.subject, item.message.body) for item in batch),
                return_exceptions=True,
            )
            for item, result in zip(batch, results):
                if isinstance(result, Exception):
                    log.error("notifier.%s key=%s -> transport error: %s", item.stage, item.key, result)
                    report.failed[item.stage] += 1
                    continue
                if not result:
                    report.failed[item.stage] += 1
                    continue
                if not await _mark(session, item, now):
                    log.critical("notifier.%s key=%s -> marker was already set, sent twice", item.stage, item.key)
                report.sent[item.stage] += 1
