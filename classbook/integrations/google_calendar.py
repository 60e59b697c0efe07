from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from classbook.config import settings
from classbook.services.google_calendar_service import GoogleCalendarService
from classbook.utils.dates import minutes_of

log = logging.getLogger(__name__)

def _bounds(cls_session) -> tuple[datetime, datetime]:
    slot = cls_session.time_slot
    start_at = datetime.combine(slot.date, slot.start_time)
    minutes = max(minutes_of(slot.end_time) - minutes_of(slot.start_time), 0)
    return start_at, start_at + timedelta(minutes=minutes)

class GoogleCalendar:
    """Async wrappers around the calendar API. They never raise."""

    @staticmethod
    def enabled() -> bool:
        return settings.google_calendar_enabled

    @staticmethod
    async def upsert_event(cls_session) -> str | None:
        if not GoogleCalendar.enabled():
            return None
        try:
            start_at, end_at = _bounds(cls_session)
            if cls_session.gcal_event_id:
                ok = await asyncio.to_thread(
                    GoogleCalendarService.update_event,
                    cls_session.gcal_event_id,
                    cls_session.id,
                    cls_session.title,
                    start_at,
                    end_at,
                    cls_session.description,
                )
                if ok:
                    return cls_session.gcal_event_id
            # an earlier create may have succeeded without its id being stored
            existing = await asyncio.to_thread(GoogleCalendarService.find_event_id, cls_session.id)
            if existing:
                return existing
            return await asyncio.to_thread(
                GoogleCalendarService.create_event,
                cls_session.id,
                cls_session.title,
                start_at,
                end_at,
                cls_session.description,
            )
        except Exception as e:
            log.error("calendar upsert failed for session %s: %s", getattr(cls_session, "id", None), e)
            return None

    @staticmethod
    async def delete_event(event_id: str | None) -> bool:
        if not GoogleCalendar.enabled() or not event_id:
            return False
        try:
            return await asyncio.to_thread(GoogleCalendarService.delete_event, event_id)
        except Exception as e:
            log.error("calendar delete failed for event %s: %s", event_id, e)
            return False
