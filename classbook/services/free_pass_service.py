from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from classbook.config import settings
from classbook.services.email_service import EmailService
from classbook.services.engagement_service import PASS_ISSUED, email_event
from classbook.services.errors import InvalidRequest, PassUnavailable
from classbook.services.lead_service import LeadService
from classbook.storage.models import FreePass
from classbook.utils.dates import normalize_email, now_local

log = logging.getLogger(__name__)


class FreePassService:
    @staticmethod
    async def claim(
        session: AsyncSession, email: str, *, source: str = "landing_gate", resubscribe: bool = False
    ) -> FreePass:
        """Capture the lead and hand out a short-lived first-class-free pass.

        An unexpired unused pass is returned again instead of issuing a
        second one. Each address gets one free class.
        """
        email = normalize_email(email)
        if not EmailService.is_email(email):
            raise InvalidRequest("A valid email is required")

        sub = await LeadService.get(session, email)
        if sub is not None and not sub.is_active:
            if not resubscribe:
                raise InvalidRequest("You previously unsubscribed, resubscribe to get offers")
            await LeadService.resubscribe(session, email)
        await LeadService.capture(session, email, source=source)

        now = now_local()
        passes = (
            await session.execute(
                select(FreePass)
                .where(FreePass.email == email)
                .order_by(FreePass.id.desc())
                .execution_options(populate_existing=True)
            )
        ).scalars().all()
        if any(p.used_at is not None for p in passes):
            log.info("passes.claim email=%s -> already used", email)
            raise PassUnavailable("The free first class was already used with this email")
        for p in passes:
            if p.expires_at > now:
                log.info("passes.claim email=%s -> reusing pass=%s", email, p.id)
                return p

        free_pass = FreePass(
            token=uuid.uuid4().hex,
            email=email,
            source=source,
            expires_at=now + timedelta(minutes=settings.free_pass_minutes),
        )
        session.add(free_pass)
        session.add(email_event(email, PASS_ISSUED, source=source))
        await session.commit()
        log.info("passes.claim email=%s pass=%s expires=%s", email, free_pass.id, free_pass.expires_at)
        return free_pass

    @staticmethod
    async def validate(session: AsyncSession, token: Optional[str], *, now: Optional[datetime] = None) -> Optional[str]:
        """The email the pass was issued to, or None when it cannot be used."""
        if not token:
            return None
        now = now or now_local()
        return await session.scalar(
            select(FreePass.email).where(
                FreePass.token == token,
                FreePass.used_at.is_(None),
                FreePass.expires_at > now,
            )
        )

    @staticmethod
    async def consume(session: AsyncSession, token: Optional[str], *, now: Optional[datetime] = None) -> int:
        """Spend the pass. Does not commit; the caller owns the transaction.

        The guarded UPDATE lets exactly one of two racing redemptions win.
        """
        if not token:
            raise PassUnavailable()
        now = now or now_local()
        res = await session.execute(
            update(FreePass)
            .where(
                FreePass.token == token,
                FreePass.used_at.is_(None),
                FreePass.expires_at > now,
            )
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            log.info("passes.consume token=%s... -> unavailable", token[:8])
            raise PassUnavailable()
        pass_id = await session.scalar(select(FreePass.id).where(FreePass.token == token))
        log.info("passes.consume pass=%s", pass_id)
        return pass_id
