from __future__ import annotations

import datetime as dt
from datetime import datetime, time

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from classbook.storage.db import Base
from classbook.storage.states import (
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    SessionStatus,
    SlotStatus,
)
from classbook.utils.dates import now_local


def _enum(cls) -> Enum:
    return Enum(
        cls,
        native_enum=False,
        length=16,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    first_name: Mapped[str] = mapped_column(String(128), default="")
    last_name: Mapped[str] = mapped_column(String(128), default="")
    phone: Mapped[str | None] = mapped_column(String(32), index=True, nullable=True)
    is_instructor: Mapped[bool] = mapped_column(Boolean, default=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class TimeSlot(Base):
    __tablename__ = "time_slots"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[dt.date] = mapped_column(Date, index=True)
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    status: Mapped[SlotStatus] = mapped_column(_enum(SlotStatus), default=SlotStatus.available)

    __table_args__ = (
        UniqueConstraint("date", "start_time", name="uq_time_slot_date_start"),
    )


class Session(Base):
    """A class offering bound to one time slot and one instructor."""

    __tablename__ = "sessions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instructor_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    time_slot_id: Mapped[int] = mapped_column(ForeignKey("time_slots.id"))
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price_cents: Mapped[int] = mapped_column(Integer, default=0)
    is_donation: Mapped[bool] = mapped_column(Boolean, default=False)
    max_capacity: Mapped[int] = mapped_column(Integer)
    seats_taken: Mapped[int] = mapped_column(Integer, default=0)
    skill_level: Mapped[str] = mapped_column(String(32), default="all")
    status: Mapped[SessionStatus] = mapped_column(_enum(SessionStatus), default=SessionStatus.upcoming)
    gcal_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=now_local, index=True)

    time_slot: Mapped["TimeSlot"] = relationship(lazy="joined")
    instructor: Mapped["User"] = relationship(lazy="joined")

    __table_args__ = (
        CheckConstraint("max_capacity > 0", name="ck_session_capacity_positive"),
        CheckConstraint(
            "seats_taken >= 0 AND seats_taken <= max_capacity",
            name="ck_session_seats_within_capacity",
        ),
        # the existence of a live session for a slot is the claim
        Index(
            "uq_session_live_slot",
            "time_slot_id",
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
    )


class Booking(Base):
    __tablename__ = "bookings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(ForeignKey("sessions.id"), index=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)

    guest_first_name: Mapped[str] = mapped_column(String(128))
    guest_last_name: Mapped[str] = mapped_column(String(128))
    guest_phone: Mapped[str] = mapped_column(String(32), index=True)
    guest_email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    status: Mapped[BookingStatus] = mapped_column(_enum(BookingStatus), default=BookingStatus.confirmed)
    payment_method: Mapped[PaymentMethod] = mapped_column(_enum(PaymentMethod))
    credit_redemption_id: Mapped[int | None] = mapped_column(
        ForeignKey("credit_redemptions.id"), nullable=True
    )
    free_pass_id: Mapped[int | None] = mapped_column(ForeignKey("free_passes.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=now_local)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # one-shot lifecycle markers, never cleared once set
    pre_class_reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    post_class_followup_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    session: Mapped["Session"] = relationship(lazy="joined")

    __table_args__ = (
        Index(
            "uq_booking_confirmed_phone",
            "session_id",
            "guest_phone",
            unique=True,
            sqlite_where=text("status = 'confirmed'"),
            postgresql_where=text("status = 'confirmed'"),
        ),
    )

    @property
    def guest_name(self) -> str:
        return f"{self.guest_first_name} {self.guest_last_name}".strip()


class Package(Base):
    __tablename__ = "packages"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instructor_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    class_count: Mapped[int] = mapped_column(Integer)
    price_cents: Mapped[int] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=now_local)

    __table_args__ = (
        CheckConstraint("class_count >= 1", name="ck_package_class_count"),
        CheckConstraint("price_cents >= 0", name="ck_package_price"),
    )


class CreditGrant(Base):
    __tablename__ = "credit_grants"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    package_id: Mapped[int] = mapped_column(ForeignKey("packages.id"))
    instructor_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    guest_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    guest_phone: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    classes_total: Mapped[int] = mapped_column(Integer)
    classes_remaining: Mapped[int] = mapped_column(Integer)
    checkout_session_id: Mapped[str] = mapped_column(String(255), unique=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    purchased_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=now_local)

    __table_args__ = (
        CheckConstraint(
            "classes_remaining >= 0 AND classes_remaining <= classes_total",
            name="ck_credit_grant_remaining",
        ),
    )


class CreditRedemption(Base):
    __tablename__ = "credit_redemptions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    grant_id: Mapped[int] = mapped_column(ForeignKey("credit_grants.id"), index=True)
    redeemed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=now_local)
    restored_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)


class Payment(Base):
    __tablename__ = "payments"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int | None] = mapped_column(ForeignKey("sessions.id"), nullable=True)
    booking_id: Mapped[int | None] = mapped_column(ForeignKey("bookings.id"), nullable=True)
    checkout_session_id: Mapped[str] = mapped_column(String(255), unique=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(8), default="usd")
    status: Mapped[PaymentStatus] = mapped_column(_enum(PaymentStatus))
    customer_name: Mapped[str] = mapped_column(String(256), default="")
    customer_email: Mapped[str] = mapped_column(String(255), default="")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=now_local)


class Subscriber(Base):
    __tablename__ = "subscribers"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    source: Mapped[str] = mapped_column(String(64), default="newsletter")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=now_local)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    unsubscribed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    lead_followup_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)


class RebookNudge(Base):
    __tablename__ = "rebook_nudges"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(ForeignKey("sessions.id"))
    email: Mapped[str] = mapped_column(String(255))
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=now_local)

    __table_args__ = (
        UniqueConstraint("session_id", "email", name="uq_rebook_nudge_session_email"),
    )


class FreePass(Base):
    """One-shot first-class-free token handed to a new lead."""

    __tablename__ = "free_passes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token: Mapped[str] = mapped_column(String(64), unique=True)
    email: Mapped[str] = mapped_column(String(255), index=True)
    source: Mapped[str] = mapped_column(String(64), default="welcome")
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False))
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=now_local)


class EmailEvent(Base):
    __tablename__ = "email_events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), index=True)
    event_type: Mapped[str] = mapped_column(String(32))
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=now_local)

    __table_args__ = (
        Index("ix_email_events_lookup", "email", "event_type", "created_at"),
    )
