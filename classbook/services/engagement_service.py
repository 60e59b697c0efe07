from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from classbook.config import settings
from classbook.services.email_service import EmailService
from classbook.services.errors import InvalidRequest
from classbook.storage.models import Booking, EmailEvent
from classbook.storage.states import BookingStatus
from classbook.utils.dates import normalize_email, now_local

log = logging.getLogger(__name__)

EMAIL_SENT = "email_sent"
CLICKED = "clicked"
LEAD_CAPTURED = "lead_captured"
PASS_ISSUED = "pass_issued"


def email_event(email: str, event_type: str, *, at: Optional[datetime] = None, **details) -> EmailEvent:
    """Build an event row for the caller to add to its own transaction."""
    return EmailEvent(
        email=normalize_email(email),
        event_type=event_type,
        details=details or None,
        created_at=at or now_local(),
    )


class EngagementService:
    @staticmethod
    async def track(session: AsyncSession, email: Optional[str], event_type: str, **details) -> Optional[EmailEvent]:
        email = normalize_email(email)
        if not EmailService.is_email(email):
            return None
        event = email_event(email, event_type, **details)
        session.add(event)
        await session.commit()
        log.info("engagement.track email=%s event=%s", email, event_type)
        return event

    @staticmethod
    async def record_click(session: AsyncSession, email: Optional[str], campaign: str, url: Optional[str]) -> str:
        """Log a tracked link click and return where to send the reader."""
        if not url:
            raise InvalidRequest("Missing redirect url")
        if not url.startswith(("http://", "https://", "/")):
            raise InvalidRequest("Invalid redirect url")
        await EngagementService.track(session, email, CLICKED, campaign=campaign, url=url)
        return url

    @staticmethod
    async def is_engaged(session: AsyncSession, email: str, *, now: Optional[datetime] = None) -> bool:
        """A recent click or a recent confirmed booking."""
        now = now or now_local()
        email = normalize_email(email)
        clicked = await session.scalar(
            select(EmailEvent.id).where(
                EmailEvent.email == email,
                EmailEvent.event_type == CLICKED,
                EmailEvent.created_at >= now - timedelta(days=settings.throttle_window_days),
            ).limit(1)
        )
        if clicked is not None:
            return True
        booked = await session.scalar(
            select(Booking.id).where(
                Booking.guest_email == email,
                Booking.status == BookingStatus.confirmed,
                Booking.created_at >= now - timedelta(days=settings.engaged_booking_days),
            ).limit(1)
        )
        return booked is not None

    @staticmethod
    async def sent_recently(session: AsyncSession, email: str, *, now: Optional[datetime] = None) -> int:
        now = now or now_local()
        total = await session.scalar(
            select(func.count(EmailEvent.id)).where(
                EmailEvent.email == normalize_email(email),
                EmailEvent.event_type == EMAIL_SENT,
                EmailEvent.created_at >= now - timedelta(days=settings.throttle_window_days),
            )
        )
        return int(total or 0)

    @staticmethod
    async def send_allowance(session: AsyncSession, email: str, *, now: Optional[datetime] = None) -> int:
        """How many more marketing emails this address may get in the current window."""
        now = now or now_local()
        if await EngagementService.is_engaged(session, email, now=now):
            limit = settings.throttle_engaged_limit
        else:
            limit = settings.throttle_default_limit
        return max(0, limit - await EngagementService.sent_recently(session, email, now=now))
