from __future__ import annotations

from datetime import datetime
from typing import NamedTuple

from classbook.config import settings
from classbook.services.email_service import click_url, unsubscribe_url
from classbook.utils.dates import format_clock, format_day, format_dt


class Message(NamedTuple):
    subject: str
    body: str


def _footer(email: str) -> str:
    return (
        "\n\n--\n"
        "You are receiving this because you signed up or booked a class.\n"
        f"Unsubscribe: {unsubscribe_url(email)}"
    )


def lead_followup(email: str, first_name: str | None) -> Message:
    body = (
        f"Hi {first_name or 'there'},\n\n"
        "You signed up to see our classes. Here is a quick reminder that your first "
        "class can be free when you book soon.\n\n"
        f"Browse classes and reserve your spot: {click_url(email, 'lead_followup', settings.site_url + '/classes')}"
    )
    return Message("Your first class free, don't miss it", body + _footer(email))


def pre_class_reminder(email: str, first_name: str | None, title: str,
                       instructor_name: str, start_at: datetime) -> Message:
    body = (
        f"Hi {first_name or 'there'},\n\n"
        f"Reminder: your class {title} with {instructor_name} is coming up.\n"
        f"When: {format_dt(start_at)}\n\n"
        f"See all classes: {settings.site_url}/classes"
    )
    return Message(f"Reminder: {title} tomorrow", body + _footer(email))


def post_class_followup(email: str, first_name: str | None, title: str, instructor_name: str) -> Message:
    body = (
        f"Hi {first_name or 'there'},\n\n"
        f"How was {title} with {instructor_name}? We hope you had a great practice.\n\n"
        f"See what's coming up and book your next class: {settings.site_url}/classes"
    )
    return Message(f"How was {title}?", body + _footer(email))


def rebook_nudge(email: str, first_name: str | None, title: str,
                 instructor_name: str, session_id: int) -> Message:
    body = (
        f"Hi {first_name or 'there'},\n\n"
        f"{instructor_name} just posted {title} again. Book your spot if you'd like to join.\n\n"
        f"Book this class: {settings.site_url}/book/{session_id}"
    )
    return Message(f"{instructor_name} just posted {title} again", body + _footer(email))


def booking_confirmation(email: str, guest_name: str, title: str, start_at: datetime,
                         booking_id: int, cost_cents: int, paid_with_credit: bool) -> Message:
    if paid_with_credit:
        cost = "Paid with package credit"
    elif cost_cents:
        cost = f"${cost_cents / 100:.2f}"
    else:
        cost = "Free"
    body = (
        f"Hi {guest_name},\n\n"
        "You're booked:\n"
        f"Class: {title}\n"
        f"Date: {format_day(start_at)}\n"
        f"Time: {format_clock(start_at)}\n"
        f"Cost: {cost}\n\n"
        f"Booking #{booking_id}"
    )
    return Message(f"Booking confirmed: {title}", body + _footer(email))


def package_confirmation(email: str, guest_name: str, package_name: str, class_count: int,
                         instructor_name: str) -> Message:
    body = (
        f"Hi {guest_name},\n\n"
        f"Thanks for purchasing {package_name}.\n"
        f"You now have {class_count} class credits with {instructor_name}.\n"
        "Use them when booking any of their classes."
    )
    return Message(f"Your {package_name} package is ready", body + _footer(email))
