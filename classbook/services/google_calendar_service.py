from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar
from zoneinfo import ZoneInfo

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials as UserCreds
from google.oauth2.service_account import Credentials as SvcCreds
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from classbook.config import settings

SCOPES = ["https://www.googleapis.com/auth/calendar"]
log = logging.getLogger("gcal")

T = TypeVar("T")


def _rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=ZoneInfo(settings.tz))
    return value.isoformat()


def _reason(e: HttpError) -> Any:
    try:
        return json.loads(e.content.decode())["error"]["message"]
    except (ValueError, KeyError, TypeError, AttributeError):
        return str(e)


def _user_credentials() -> Optional[UserCreds]:
    token_path = Path(settings.google_oauth_token_path.strip() or "token.json")
    if not token_path.exists():
        log.warning("gcal: no OAuth token at %s", token_path)
        return None
    info = json.loads(token_path.read_text(encoding="utf-8"))
    if not info.get("refresh_token"):
        log.error("gcal: token at %s cannot be refreshed, redo the consent flow", token_path)
        return None
    creds = UserCreds.from_authorized_user_info(info, scopes=SCOPES)
    if creds.expired:
        creds.refresh(Request())
        try:
            token_path.write_text(creds.to_json(), encoding="utf-8")
        except OSError as e:
            log.warning("gcal: refreshed token not saved: %s", e)
    return creds


def _service_account_credentials() -> Optional[SvcCreds]:
    path = Path(settings.google_credentials_json_path.strip())
    if not path.is_file():
        return None
    return SvcCreds.from_service_account_file(str(path), scopes=SCOPES)


class GoogleCalendarService:
    """Blocking calendar client. One event per class, tagged with the class id.

    Every call returns a neutral value on failure and logs the reason.
    """

    _service: Any = None

    @classmethod
    def _get_service(cls):
        if not settings.google_calendar_enabled:
            return None
        if cls._service is not None:
            return cls._service
        try:
            creds = _user_credentials()
            if creds is None and settings.google_calendar_allow_service_account:
                creds = _service_account_credentials()
        except Exception as e:
            log.error("gcal: loading credentials failed: %s", e)
            return None
        if creds is None:
            log.error("gcal: no usable credentials")
            return None
        cls._service = build("calendar", "v3", credentials=creds, cache_discovery=False)
        return cls._service

    @classmethod
    def _run(cls, action: str, call: Callable[[Any], T], fallback: T, *, gone_ok: bool = False) -> T:
        svc = cls._get_service()
        if svc is None:
            return fallback
        try:
            return call(svc.events())
        except HttpError as e:
            status = getattr(e.resp, "status", None)
            if gone_ok and status in (404, 410):
                log.warning("gcal.%s: event already gone", action)
                return True  # type: ignore[return-value]
            log.error("gcal.%s failed (%s): %s", action, status, _reason(e))
        except Exception as e:
            log.error("gcal.%s unexpected error: %s", action, e)
        return fallback

    @staticmethod
    def _event_body(session_id: int, title: str, start_at: datetime, end_at: datetime,
                    description: Optional[str]) -> Dict[str, Any]:
        return {
            "summary": title,
            "description": f"{description or title}\nClass #{session_id}",
            "start": {"dateTime": _rfc3339(start_at), "timeZone": settings.tz},
            "end": {"dateTime": _rfc3339(end_at), "timeZone": settings.tz},
            "extendedProperties": {"private": {"session_id": str(session_id)}},
        }

    @classmethod
    def create_event(cls, session_id: int, title: str, start_at: datetime, end_at: datetime,
                     description: Optional[str] = None) -> Optional[str]:
        body = cls._event_body(session_id, title, start_at, end_at, description)
        event = cls._run(
            "create",
            lambda events: events.insert(calendarId=settings.google_calendar_id, body=body).execute(),
            None,
        )
        if event:
            log.info("gcal.create session=%s event=%s", session_id, event.get("id"))
            return event.get("id")
        return None

    @classmethod
    def update_event(cls, event_id: str, session_id: int, title: str, start_at: datetime,
                     end_at: datetime, description: Optional[str] = None) -> bool:
        if not event_id:
            return False
        body = cls._event_body(session_id, title, start_at, end_at, description)
        done = cls._run(
            "update",
            lambda events: bool(
                events.patch(calendarId=settings.google_calendar_id, eventId=event_id, body=body).execute()
            ),
            False,
        )
        if done:
            log.info("gcal.update session=%s event=%s", session_id, event_id)
        return done

    @classmethod
    def delete_event(cls, event_id: str) -> bool:
        if not event_id:
            return False

        def _delete(events) -> bool:
            events.delete(calendarId=settings.google_calendar_id, eventId=event_id).execute()
            log.info("gcal.delete event=%s", event_id)
            return True

        return cls._run("delete", _delete, False, gone_ok=True)

    @classmethod
    def find_event_id(cls, session_id: int) -> Optional[str]:
        """Look an event up by the class id stored on it."""
        found = cls._run(
            "find",
            lambda events: events.list(
                calendarId=settings.google_calendar_id,
                privateExtendedProperty=f"session_id={session_id}",
                maxResults=1,
                singleEvents=True,
            ).execute(),
            None,
        )
        items = (found or {}).get("items") or []
        return items[0].get("id") if items else None
