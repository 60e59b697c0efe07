from datetime import timedelta

import pytest
from sqlalchemy import update

from classbook.config import settings
from classbook.runtime import drain
from classbook.services.booking_service import BookingService
from classbook.services.engagement_service import EMAIL_SENT, EngagementService
from classbook.services.lead_service import LeadService
from classbook.services.notifier_service import (
    LEAD_FOLLOWUP,
    POST_CLASS_FOLLOWUP,
    PRE_CLASS_REMINDER,
    REBOOK_NUDGE,
    NotifierService,
)
from classbook.storage.models import Booking, User
from classbook.utils.dates import now_local

from conftest import guest


def _in(hours=0, days=0):
    return (now_local() + timedelta(hours=hours, days=days)).replace(second=0)


async def _quiet(mail):
    # drop booking confirmations so only lifecycle mail is left
    await drain()
    mail.sent.clear()


@pytest.mark.asyncio
async def test_pre_class_reminder_goes_out_once(sessionmaker, db, make_class, mail):
    class_id = await make_class(start_at=_in(hours=23), title="Sunrise Flow")
    booking = await BookingService.reserve(db, class_id, guest(1), "free")
    await _quiet(mail)

    async with sessionmaker() as s:
        first = await NotifierService.run(s)
    async with sessionmaker() as s:
        second = await NotifierService.run(s)

    assert first.sent[PRE_CLASS_REMINDER] == 1
    assert second.total_sent == 0
    [(to, subject, body)] = mail.sent
    assert to == "guest1@example.com"
    assert subject == "Reminder: Sunrise Flow tomorrow"
    assert "Maya Stone" in body
    assert "unsubscribe?email=guest1%40example.com" in body
    assert (await BookingService.get_booking(db, booking.id)).pre_class_reminder_sent_at is not None


@pytest.mark.asyncio
async def test_classes_beyond_the_window_wait(sessionmaker, db, make_class, mail):
    class_id = await make_class(start_at=_in(hours=30))
    await BookingService.reserve(db, class_id, guest(1), "free")
    await _quiet(mail)

    async with sessionmaker() as s:
        report = await NotifierService.run(s)

    assert report.total_sent == 0
    assert mail.sent == []


@pytest.mark.asyncio
async def test_rejected_send_leaves_the_gate_open(sessionmaker, db, make_class, mail):
    class_id = await make_class(start_at=_in(hours=20))
    booking = await BookingService.reserve(db, class_id, guest(2), "free")
    await _quiet(mail)
    mail.accept = False

    async with sessionmaker() as s:
        report = await NotifierService.run(s)
    assert report.failed[PRE_CLASS_REMINDER] == 1
    assert report.total_sent == 0
    assert (await BookingService.get_booking(db, booking.id)).pre_class_reminder_sent_at is None

    mail.accept = True
    async with sessionmaker() as s:
        retry = await NotifierService.run(s)
    async with sessionmaker() as s:
        after = await NotifierService.run(s)

    assert retry.sent[PRE_CLASS_REMINDER] == 1
    assert after.total_sent == 0
    assert len(mail.sent) == 1


@pytest.mark.asyncio
async def test_transport_exception_is_not_fatal(sessionmaker, db, make_class, mail, monkeypatch):
    from classbook.services.email_service import EmailService

    class_id = await make_class(start_at=_in(hours=20))
    await BookingService.reserve(db, class_id, guest(3), "free")
    await _quiet(mail)

    def explode(to_email, subject, body):
        raise RuntimeError("relay down")

    monkeypatch.setattr(EmailService, "send", staticmethod(explode))
    async with sessionmaker() as s:
        report = await NotifierService.run(s)

    assert report.failed[PRE_CLASS_REMINDER] == 1
    assert report.total_sent == 0


@pytest.mark.asyncio
async def test_opted_out_guests_are_skipped_without_marker(sessionmaker, db, make_class, mail):
    class_id = await make_class(start_at=_in(hours=20))
    booking = await BookingService.reserve(db, class_id, guest(4), "free")
    await _quiet(mail)
    await LeadService.unsubscribe(db, "Guest4@example.com")

    async with sessionmaker() as s:
        report = await NotifierService.run(s)

    assert report.opted_out[PRE_CLASS_REMINDER] == 1
    assert mail.sent == []
    assert (await BookingService.get_booking(db, booking.id)).pre_class_reminder_sent_at is None


@pytest.mark.asyncio
async def test_resubscribed_guest_gets_the_reminder_once(sessionmaker, db, make_class, mail):
    class_id = await make_class(start_at=_in(hours=20), title="Slow Flow")
    booking = await BookingService.reserve(db, class_id, guest(5), "free")
    await _quiet(mail)
    await LeadService.unsubscribe(db, "guest5@example.com")

    async with sessionmaker() as s:
        skipped = await NotifierService.run(s)
    assert skipped.opted_out[PRE_CLASS_REMINDER] == 1
    assert (await BookingService.get_booking(db, booking.id)).pre_class_reminder_sent_at is None

    assert await LeadService.resubscribe(db, "guest5@example.com") is True
    async with sessionmaker() as s:
        resumed = await NotifierService.run(s)
    async with sessionmaker() as s:
        after = await NotifierService.run(s)

    assert resumed.sent[PRE_CLASS_REMINDER] == 1
    assert resumed.opted_out[PRE_CLASS_REMINDER] == 0
    assert after.total_sent == 0
    assert [subject for _, subject, _ in mail.to("guest5@example.com")] == ["Reminder: Slow Flow tomorrow"]


@pytest.mark.asyncio
async def test_post_class_followup_after_grace(sessionmaker, db, make_class, mail):
    start = _in(days=2)
    class_id = await make_class(start_at=start, title="Power Hour")
    await BookingService.reserve(db, class_id, guest(5), "free")
    cancelled = await BookingService.reserve(db, class_id, guest(6), "free")
    await BookingService.cancel(db, cancelled.id)
    await _quiet(mail)

    async with sessionmaker() as s:
        early = await NotifierService.run(s, now=start + timedelta(minutes=30))
    async with sessionmaker() as s:
        due = await NotifierService.run(s, now=start + timedelta(minutes=61))
    async with sessionmaker() as s:
        again = await NotifierService.run(s, now=start + timedelta(hours=5))

    assert early.sent[POST_CLASS_FOLLOWUP] == 0
    assert due.sent[POST_CLASS_FOLLOWUP] == 1
    assert again.total_sent == 0
    [(to, subject, _)] = mail.sent
    assert (to, subject) == ("guest5@example.com", "How was Power Hour?")


@pytest.mark.asyncio
async def test_lead_followup_for_bio_leads_who_never_booked(sessionmaker, db, make_class, mail):
    await LeadService.capture(db, "Sam@Example.com", "bio", "Sam")
    await LeadService.capture(db, "guest7@example.com", "bio", "Kit")
    await LeadService.capture(db, "news@example.com", "newsletter", "Pat")
    class_id = await make_class(start_at=_in(days=5))
    await BookingService.reserve(db, class_id, guest(7), "free")
    await _quiet(mail)

    async with sessionmaker() as s:
        too_soon = await NotifierService.run(s)
    later = now_local() + timedelta(hours=25)
    async with sessionmaker() as s:
        due = await NotifierService.run(s, now=later)
    async with sessionmaker() as s:
        again = await NotifierService.run(s, now=later)

    assert too_soon.sent[LEAD_FOLLOWUP] == 0
    assert due.sent[LEAD_FOLLOWUP] == 1
    assert again.sent[LEAD_FOLLOWUP] == 0
    assert [m[0] for m in mail.sent] == ["sam@example.com"]
    assert mail.sent[0][2].startswith("Hi Sam,")


@pytest.mark.asyncio
async def test_rebook_nudge_for_earlier_attendees(sessionmaker, db, instructor, make_class, mail):
    earlier = await make_class(start_at=_in(days=2), title="Vinyasa Flow")
    await BookingService.reserve(db, earlier, guest(8), "free")
    await BookingService.reserve(db, earlier, guest(9), "free")
    newer = await make_class(start_at=_in(days=9), title="Vinyasa Flow")
    # already booked the new one, so no nudge
    await BookingService.reserve(db, newer, guest(9), "free")
    await make_class(start_at=_in(days=10), title="Something Else")
    await _quiet(mail)

    async with sessionmaker() as s:
        report = await NotifierService.run(s)
    async with sessionmaker() as s:
        again = await NotifierService.run(s)

    assert report.sent[REBOOK_NUDGE] == 1
    assert again.total_sent == 0
    [(to, subject, body)] = mail.sent
    assert to == "guest8@example.com"
    assert subject == "Maya Stone just posted Vinyasa Flow again"
    assert f"/book/{newer}" in body


@pytest.mark.asyncio
async def test_rebook_nudge_ignores_other_instructors(sessionmaker, db, make_class, make_slot, mail):
    from classbook.services.schemas import OfferingIn
    from classbook.services.session_service import SessionService

    earlier = await make_class(start_at=_in(days=2), title="Vinyasa Flow")
    await BookingService.reserve(db, earlier, guest(10), "free")
    other = User(email="ari@example.com", first_name="Ari", last_name="Cole", is_instructor=True)
    db.add(other)
    await db.commit()
    slot = await make_slot(_in(days=9))
    await SessionService.create_session(db, other.id, slot.id, OfferingIn(title="Vinyasa Flow"))
    await _quiet(mail)

    async with sessionmaker() as s:
        report = await NotifierService.run(s)

    assert report.sent[REBOOK_NUDGE] == 0


@pytest.mark.asyncio
async def test_sends_are_batched(sessionmaker, db, make_class, mail, monkeypatch):
    monkeypatch.setattr(settings, "notifier_batch_size", 2)
    class_id = await make_class(start_at=_in(hours=22), max_capacity=10)
    for n in range(5):
        await BookingService.reserve(db, class_id, guest(20 + n), "free")
    await _quiet(mail)

    async with sessionmaker() as s:
        report = await NotifierService.run(s)

    assert report.sent[PRE_CLASS_REMINDER] == 5
    assert report.as_dict()[PRE_CLASS_REMINDER] == {"sent": 5, "failed": 0, "opted_out": 0, "throttled": 0}
    assert sorted(m[0] for m in mail.sent) == [f"guest{20 + n}@example.com" for n in range(5)]


async def _two_repeat_classes(db, make_class, n):
    for i, title in enumerate(("Vinyasa Flow", "Power Hour")):
        earlier = await make_class(start_at=_in(days=2, hours=n + 2 * i), title=title)
        await BookingService.reserve(db, earlier, guest(n), "free")


async def _age_bookings(db, days):
    await db.execute(update(Booking).values(created_at=now_local() - timedelta(days=days)))
    await db.commit()


@pytest.mark.asyncio
async def test_quiet_address_gets_one_marketing_email_a_week(sessionmaker, db, make_class, mail):
    await _two_repeat_classes(db, make_class, 30)
    await _age_bookings(db, 60)
    await make_class(start_at=_in(days=9), title="Vinyasa Flow")
    await make_class(start_at=_in(days=9, hours=2), title="Power Hour")
    await _quiet(mail)

    async with sessionmaker() as s:
        first = await NotifierService.run(s)
    async with sessionmaker() as s:
        second = await NotifierService.run(s)

    assert first.sent[REBOOK_NUDGE] == 1
    assert first.throttled[REBOOK_NUDGE] == 1
    assert second.sent[REBOOK_NUDGE] == 0
    assert second.throttled[REBOOK_NUDGE] == 1
    assert len(mail.to("guest30@example.com")) == 1


@pytest.mark.asyncio
async def test_recent_booker_gets_every_nudge(sessionmaker, db, make_class, mail):
    await _two_repeat_classes(db, make_class, 31)
    await make_class(start_at=_in(days=9), title="Vinyasa Flow")
    await make_class(start_at=_in(days=9, hours=2), title="Power Hour")
    await _quiet(mail)

    async with sessionmaker() as s:
        report = await NotifierService.run(s)

    assert report.sent[REBOOK_NUDGE] == 2
    assert report.throttled[REBOOK_NUDGE] == 0


@pytest.mark.asyncio
async def test_a_recent_click_lifts_the_allowance(sessionmaker, db, make_class, mail):
    await _two_repeat_classes(db, make_class, 32)
    await _age_bookings(db, 60)
    await EngagementService.record_click(db, "guest32@example.com", REBOOK_NUDGE, "https://example.com/classes")
    await make_class(start_at=_in(days=9), title="Vinyasa Flow")
    await make_class(start_at=_in(days=9, hours=2), title="Power Hour")
    await _quiet(mail)

    async with sessionmaker() as s:
        report = await NotifierService.run(s)

    assert report.sent[REBOOK_NUDGE] == 2


@pytest.mark.asyncio
async def test_reminders_ignore_the_marketing_allowance(sessionmaker, db, make_class, mail):
    class_id = await make_class(start_at=_in(hours=20), title="Slow Flow")
    await BookingService.reserve(db, class_id, guest(33), "free")
    await _age_bookings(db, 60)
    for _ in range(3):
        await EngagementService.track(db, "guest33@example.com", EMAIL_SENT, stage=REBOOK_NUDGE)
    await _quiet(mail)

    async with sessionmaker() as s:
        report = await NotifierService.run(s)

    assert report.sent[PRE_CLASS_REMINDER] == 1
    assert report.throttled[PRE_CLASS_REMINDER] == 0
    async with sessionmaker() as s:
        assert await EngagementService.sent_recently(s, "guest33@example.com") == 4
