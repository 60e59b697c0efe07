from __future__ import annotations
import asyncio
import logging
import re
import smtplib
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Optional
from urllib.parse import quote

from classbook.config import settings

log = logging.getLogger(__name__)

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
SMTP_TIMEOUT = 20

def unsubscribe_url(email: str) -> str:
    return f"{settings.site_url}/unsubscribe?email={quote(email)}"

def click_url(email: str, campaign: str, url: str) -> str:
    return (
        f"{settings.site_url}/email/click?email={quote(email)}"
        f"&campaign={quote(campaign)}&url={quote(url, safe='')}"
    )

def _compose(to_email: str, subject: str, body: str) -> EmailMessage:
    msg = EmailMessage()
    if settings.smtp_from:
        msg["From"] = formataddr(("classbook", settings.smtp_from))
    msg["To"] = to_email
    msg["Subject"] = subject
    msg["Message-ID"] = make_msgid(domain=settings.smtp_from.rpartition("@")[2] or None)
    msg["List-Unsubscribe"] = f"<{unsubscribe_url(to_email)}>"
    msg.set_content(body)
    return msg

def _connect() -> smtplib.SMTP:
    # implicit TLS on 465, STARTTLS everywhere else
    if settings.smtp_port == 465:
        conn: smtplib.SMTP = smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, timeout=SMTP_TIMEOUT)
    else:
        conn = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=SMTP_TIMEOUT)
        conn.starttls()
    if settings.smtp_user and settings.smtp_password:
        conn.login(settings.smtp_user, settings.smtp_password)
    return conn

class EmailService:
    @staticmethod
    def is_email(value: Optional[str]) -> bool:
        return bool(value) and _EMAIL.match(value.strip()) is not None

    @staticmethod
    def send(to_email: str, subject: str, body: str) -> bool:
        """Hand one message to the relay. True only if the relay accepted it."""
        if not settings.smtp_enabled:
            log.info("smtp disabled, not sending '%s' to %s", subject, to_email)
            return False
        try:
            with _connect() as conn:
                refused = conn.send_message(_compose(to_email, subject, body))
        except (smtplib.SMTPException, OSError) as e:
            log.error("Failed to send email to %s: %s", to_email, e)
            return False
        if refused:
            log.warning("smtp refused recipients %s", list(refused))
            return False
        return True

async def deliver(to_email: str, subject: str, body: str) -> bool:
    """Send off the event loop; the transport blocks."""
    ok = await asyncio.to_thread(EmailService.send, to_email, subject, body)
    if not ok:
        log.warning("email to %s was not accepted: %s", to_email, subject)
    return ok
