from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from classbook.services.email_service import EmailService
from classbook.services.engagement_service import LEAD_CAPTURED, email_event
from classbook.services.errors import InvalidRequest
from classbook.storage.models import Subscriber
from classbook.utils.dates import normalize_email, now_local

log = logging.getLogger(__name__)


class LeadService:
    @staticmethod
    async def get(session: AsyncSession, email: str) -> Optional[Subscriber]:
        return await session.scalar(select(Subscriber).where(Subscriber.email == normalize_email(email)))

    @staticmethod
    async def capture(
        session: AsyncSession, email: str, source: str = "newsletter", first_name: Optional[str] = None
    ) -> Subscriber:
        """Record a lead. An existing row keeps its subscription state."""
        email = normalize_email(email)
        if not EmailService.is_email(email):
            raise InvalidRequest("A valid email is required")
        first_name = (first_name or "").strip() or None

        sub = await LeadService.get(session, email)
        if sub is None:
            sub = Subscriber(
                email=email,
                first_name=first_name,
                source=source,
                is_active=True,
                last_seen_at=now_local(),
            )
            session.add(sub)
            session.add(email_event(email, LEAD_CAPTURED, source=source))
            try:
                await session.commit()
                log.info("leads.capture email=%s source=%s -> new", email, source)
                return sub
            except IntegrityError:
                await session.rollback()
                sub = await LeadService.get(session, email)

        if first_name and not sub.first_name:
            sub.first_name = first_name
        sub.last_seen_at = now_local()
        session.add(email_event(email, LEAD_CAPTURED, source=source))
        await session.commit()
        log.info("leads.capture email=%s source=%s -> seen again (active=%s)", email, source, sub.is_active)
        return sub

    @staticmethod
    async def unsubscribe(session: AsyncSession, email: str) -> bool:
        sub = await LeadService.get(session, email)
        if sub is None:
            # remember the opt-out even for addresses we never captured
            email = normalize_email(email)
            if not EmailService.is_email(email):
                raise InvalidRequest("A valid email is required")
            sub = Subscriber(email=email, source="unsubscribe", is_active=False)
            session.add(sub)
        elif not sub.is_active:
            return False
        sub.is_active = False
        sub.unsubscribed_at = now_local()
        await session.commit()
        log.info("leads.unsubscribe email=%s", sub.email)
        return True

    @staticmethod
    async def resubscribe(session: AsyncSession, email: str) -> bool:
        sub = await LeadService.get(session, email)
        if sub is None or sub.is_active:
            return False
        sub.is_active = True
        sub.unsubscribed_at = None
        await session.commit()
        log.info("leads.resubscribe email=%s", sub.email)
        return True

    @staticmethod
    async def is_opted_out(session: AsyncSession, email: Optional[str]) -> bool:
        email = normalize_email(email)
        if not email:
            return False
        active = await session.scalar(select(Subscriber.is_active).where(Subscriber.email == email))
        return active is False
