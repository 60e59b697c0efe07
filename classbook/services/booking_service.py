from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from classbook.config import settings
from classbook.integrations.payments import Checkout, PaymentGateway
from classbook.runtime import spawn
from classbook.services import email_templates
from classbook.services.credit_service import CreditHandle, CreditService
from classbook.services.email_service import EmailService, deliver
from classbook.services.free_pass_service import FreePassService
from classbook.services.errors import (
    BookingError,
    DuplicateGuest,
    InsufficientCredit,
    InvalidRequest,
    InvariantViolation,
    NotFound,
    NotOwner,
    PassUnavailable,
    SessionClosed,
    SessionFull,
)
from classbook.services.schemas import GuestInfo
from classbook.storage.models import Booking, Payment, Session, User
from classbook.storage.states import (
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    SessionStatus,
    check_transition,
)
from classbook.utils.dates import normalize_phone, now_local, slot_start

log = logging.getLogger(__name__)


@dataclass
class _Offer:
    # plain copy of the session row, safe to read after a rollback
    id: int
    instructor_id: int
    title: str
    price_cents: int
    is_donation: bool
    start_at: datetime


async def _load_open_session(session: AsyncSession, session_id: int) -> _Offer:
    cls = await session.get(Session, session_id, populate_existing=True)
    if cls is None:
        raise NotFound("Class not found")
    if cls.status != SessionStatus.upcoming:
        raise SessionClosed()
    return _Offer(
        id=cls.id,
        instructor_id=cls.instructor_id,
        title=cls.title,
        price_cents=cls.price_cents,
        is_donation=cls.is_donation,
        start_at=slot_start(cls.time_slot.date, cls.time_slot.start_time),
    )


async def _recipient_email(session: AsyncSession, guest: GuestInfo) -> Optional[str]:
    if guest.email:
        return guest.email
    if guest.user_id is not None:
        return await session.scalar(select(User.email).where(User.id == guest.user_id))
    return None


async def _has_confirmed_phone(session: AsyncSession, session_id: int, phone: str) -> bool:
    found = await session.scalar(
        select(Booking.id)
        .where(
            Booking.session_id == session_id,
            Booking.guest_phone == phone,
            Booking.status == BookingStatus.confirmed,
        )
        .limit(1)
    )
    return found is not None


async def _payment_for(session: AsyncSession, checkout_session_id: str) -> Optional[Payment]:
    return await session.scalar(
        select(Payment)
        .where(Payment.checkout_session_id == checkout_session_id)
        .execution_options(populate_existing=True)
    )


async def _take_seat(session: AsyncSession, session_id: int) -> bool:
    res = await session.execute(
        update(Session)
        .where(
            Session.id == session_id,
            Session.status == SessionStatus.upcoming,
            Session.seats_taken < Session.max_capacity,
        )
        .values(seats_taken=Session.seats_taken + 1)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def _give_back_seat(session: AsyncSession, session_id: int) -> None:
    res = await session.execute(
        update(Session)
        .where(Session.id == session_id, Session.seats_taken > 0)
        .values(seats_taken=Session.seats_taken - 1)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        log.critical("bookings: seat counter of session %s would go negative", session_id)
        raise InvariantViolation(f"seat counter of session {session_id} is already zero")


class BookingService:
    @staticmethod
    async def _place(
        session: AsyncSession,
        offer: _Offer,
        guest: GuestInfo,
        method: PaymentMethod,
        email: Optional[str],
        pass_token: Optional[str] = None,
    ) -> Booking:
        """Seat the guest inside the current transaction and flush the row.

        On any failure the transaction is rolled back before raising, which
        also hands back a seat or credit taken on the way.
        """
        if not await _take_seat(session, offer.id):
            await session.rollback()
            log.info("bookings.reserve session=%s -> full", offer.id)
            cls = await session.get(Session, offer.id, populate_existing=True)
            if cls is None or cls.status != SessionStatus.upcoming:
                raise SessionClosed()
            raise SessionFull()

        if await _has_confirmed_phone(session, offer.id, guest.phone):
            await session.rollback()
            log.info("bookings.reserve session=%s -> duplicate guest", offer.id)
            raise DuplicateGuest()

        handle: Optional[CreditHandle] = None
        if method == PaymentMethod.credit:
            try:
                handle = await CreditService.redeem(session, offer.instructor_id, guest.identity())
            except InsufficientCredit:
                await session.rollback()
                raise

        pass_id: Optional[int] = None
        if method == PaymentMethod.free_pass:
            try:
                pass_id = await FreePassService.consume(session, pass_token)
            except PassUnavailable:
                await session.rollback()
                raise

        booking = Booking(
            session_id=offer.id,
            user_id=guest.user_id,
            guest_first_name=guest.first_name,
            guest_last_name=guest.last_name,
            guest_phone=guest.phone,
            guest_email=email,
            status=BookingStatus.confirmed,
            payment_method=method,
            credit_redemption_id=handle.redemption_id if handle else None,
            free_pass_id=pass_id,
        )
        session.add(booking)
        try:
            await session.flush()
        except IntegrityError:
            # a concurrent reservation with the same phone won the unique index
            await session.rollback()
            log.info("bookings.reserve session=%s -> duplicate guest (index)", offer.id)
            raise DuplicateGuest()
        return booking

    @staticmethod
    async def _commit(session: AsyncSession) -> None:
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise DuplicateGuest()

    @staticmethod
    async def _booking_of(session: AsyncSession, payment: Payment) -> Optional[Booking]:
        if payment.booking_id is None:
            return None
        return await BookingService.get_booking(session, payment.booking_id)

    @staticmethod
    async def _lost_to_replay(
        session: AsyncSession, checkout_session_id: str, error: IntegrityError
    ) -> Optional[Booking]:
        # a concurrent delivery of the same checkout recorded its payment first
        await session.rollback()
        winner = await _payment_for(session, checkout_session_id)
        if winner is None:
            raise error
        log.info("bookings.confirm checkout=%s settled by a concurrent delivery", checkout_session_id)
        return await BookingService._booking_of(session, winner)

    @staticmethod
    async def reserve(
        session: AsyncSession,
        session_id: int,
        guest: GuestInfo,
        payment_method: PaymentMethod | str,
        *,
        pass_token: Optional[str] = None,
    ) -> Booking:
        """Reserve a seat paid by credit, or a free / zero-value donation seat.

        Paid seats and positive donations go through ``start_paid_reservation``
        and are only written once the processor confirms the payment.
        A ``free_pass`` seat spends the welcome pass named by ``pass_token``
        on any class, priced or not.
        """
        method = PaymentMethod(payment_method)
        offer = await _load_open_session(session, session_id)

        if method == PaymentMethod.paid:
            raise InvalidRequest("Paid reservations must go through checkout")
        if method == PaymentMethod.free and offer.price_cents > 0 and not offer.is_donation:
            raise InvalidRequest("This class requires payment")
        if method == PaymentMethod.donation and not offer.is_donation:
            raise InvalidRequest("This class is not donation based")

        email = await _recipient_email(session, guest)
        if method == PaymentMethod.free_pass:
            pass_email = await FreePassService.validate(session, pass_token)
            if pass_email is None:
                raise PassUnavailable()
            email = email or pass_email
        booking = await BookingService._place(session, offer, guest, method, email, pass_token)
        await BookingService._commit(session)
        log.info(
            "bookings.reserve session=%s booking=%s method=%s", offer.id, booking.id, method.value
        )
        BookingService._confirm_later(booking, offer, cost_cents=0)
        return booking

    @staticmethod
    async def start_paid_reservation(
        session: AsyncSession,
        session_id: int,
        guest: GuestInfo,
        gateway: PaymentGateway,
        *,
        amount_cents: Optional[int] = None,
    ) -> Checkout:
        """Open a checkout for a paid seat or a positive donation. Writes nothing."""
        offer = await _load_open_session(session, session_id)
        if offer.is_donation:
            if not amount_cents or amount_cents <= 0:
                raise InvalidRequest("Invalid donation amount")
            method = PaymentMethod.donation
        else:
            if offer.price_cents <= 0:
                raise InvalidRequest("This class is free, reserve it directly")
            amount_cents = offer.price_cents
            method = PaymentMethod.paid

        cls = await session.get(Session, offer.id)
        if cls.seats_taken >= cls.max_capacity:
            # advisory only; the seat is taken for real when payment confirms
            raise SessionFull()
        if await _has_confirmed_phone(session, offer.id, guest.phone):
            raise DuplicateGuest()

        email = await _recipient_email(session, guest)
        product = f"Donation - {offer.title}" if offer.is_donation else offer.title
        return await gateway.create_checkout(
            amount_cents=amount_cents,
            currency=settings.currency,
            product_name=product,
            description=f"{offer.start_at:%A, %b %d} at {offer.start_at:%H:%M}",
            customer_email=email,
            success_url=f"{settings.site_url}/booking-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{settings.site_url}/book/{offer.id}?payment=cancelled",
            metadata={
                "type": "class",
                "session_id": str(offer.id),
                "payment_method": method.value,
                "first_name": guest.first_name,
                "last_name": guest.last_name,
                "phone": guest.phone,
                "email": email or "",
                "user_id": "" if guest.user_id is None else str(guest.user_id),
            },
        )

    @staticmethod
    async def confirm_paid_reservation(
        session: AsyncSession,
        metadata: Dict[str, str],
        *,
        checkout_session_id: str,
        payment_intent_id: Optional[str] = None,
        amount_cents: int = 0,
        currency: str = "usd",
    ) -> Optional[Booking]:
        """Turn a confirmed payment into a booking.

        Returns ``None`` when the seat could not be granted any more; the
        payment is then recorded as failed with the reason.
        """
        previous = await _payment_for(session, checkout_session_id)
        if previous is not None:
            log.info("bookings.confirm checkout=%s already processed", checkout_session_id)
            return await BookingService._booking_of(session, previous)

        try:
            session_id = int(metadata["session_id"])
            method = PaymentMethod(metadata.get("payment_method") or PaymentMethod.paid.value)
            if method not in (PaymentMethod.paid, PaymentMethod.donation):
                raise ValueError(f"checkout cannot settle a {method.value} seat")
            guest = GuestInfo(
                first_name=metadata.get("first_name", ""),
                last_name=metadata.get("last_name", ""),
                phone=metadata.get("phone", ""),
                email=metadata.get("email") or None,
                user_id=int(metadata["user_id"]) if metadata.get("user_id") else None,
            )
        except (KeyError, ValueError) as e:
            log.error("bookings.confirm checkout=%s bad metadata: %s", checkout_session_id, e)
            raise InvalidRequest("Missing metadata in checkout session") from e

        if guest.user_id is None and guest.email:
            guest.user_id = await session.scalar(select(User.id).where(User.email == guest.email))

        payment = Payment(
            session_id=session_id,
            checkout_session_id=checkout_session_id,
            payment_intent_id=payment_intent_id,
            amount_cents=amount_cents,
            currency=currency,
            customer_name=guest.full_name,
            customer_email=guest.email or "",
        )
        try:
            offer = await _load_open_session(session, session_id)
            booking = await BookingService._place(session, offer, guest, method, guest.email)
        except (SessionFull, SessionClosed, DuplicateGuest, NotFound) as e:
            log.warning("bookings.confirm checkout=%s paid but not seated: %s", checkout_session_id, e.message)
            payment.status = PaymentStatus.failed
            payment.error_message = e.message
            if isinstance(e, NotFound):
                payment.session_id = None
            session.add(payment)
            try:
                await session.commit()
            except IntegrityError as lost:
                return await BookingService._lost_to_replay(session, checkout_session_id, lost)
            return None

        payment.status = PaymentStatus.succeeded
        payment.booking_id = booking.id
        payment.paid_at = now_local()
        session.add(payment)
        try:
            await session.commit()
        except IntegrityError as lost:
            return await BookingService._lost_to_replay(session, checkout_session_id, lost)
        log.info("bookings.confirm checkout=%s booking=%s", checkout_session_id, booking.id)
        BookingService._confirm_later(booking, offer, cost_cents=amount_cents)
        return booking

    @staticmethod
    def _confirm_later(booking: Booking, offer: _Offer, *, cost_cents: int) -> None:
        if not EmailService.is_email(booking.guest_email):
            return
        msg = email_templates.booking_confirmation(
            booking.guest_email,
            booking.guest_name,
            offer.title,
            offer.start_at,
            booking.id,
            cost_cents,
            booking.payment_method == PaymentMethod.credit,
        )
        spawn(deliver(booking.guest_email, msg.subject, msg.body), name=f"booking-confirmation:{booking.id}")

    @staticmethod
    async def cancel(
        session: AsyncSession,
        booking_id: int,
        *,
        user_id: Optional[int] = None,
        phone: Optional[str] = None,
    ) -> bool:
        """Cancel a booking; True only for the call that actually cancelled it.

        When ``user_id`` or ``phone`` is given the caller must own the booking.
        """
        booking = await session.get(Booking, booking_id, populate_existing=True)
        if booking is None:
            raise NotFound("Booking not found")

        if user_id is not None or phone:
            normalized = normalize_phone(phone)
            owns = (user_id is not None and booking.user_id == user_id) or (
                normalized and booking.guest_phone == normalized
            )
            if not owns:
                raise NotOwner()

        if booking.status == BookingStatus.cancelled:
            return False
        check_transition(booking.status, BookingStatus.cancelled)

        session_id = booking.session_id
        redemption_id = booking.credit_redemption_id
        res = await session.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.status == BookingStatus.confirmed)
            .values(status=BookingStatus.cancelled, cancelled_at=now_local())
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            await session.rollback()
            log.info("bookings.cancel booking=%s -> already cancelled", booking_id)
            return False

        try:
            await _give_back_seat(session, session_id)
            if redemption_id is not None:
                handle = await CreditService.handle_for(session, redemption_id)
                await CreditService.restore(session, handle)
        except BookingError:
            await session.rollback()
            raise
        await session.commit()
        log.info("bookings.cancel booking=%s session=%s credit=%s", booking_id, session_id, redemption_id)
        return True

    # reads

    @staticmethod
    async def get_booking(session: AsyncSession, booking_id: int) -> Optional[Booking]:
        return await session.scalar(
            select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
        )

    @staticmethod
    async def confirmed_count(session: AsyncSession, session_id: int) -> int:
        count = await session.scalar(
            select(func.count(Booking.id)).where(
                Booking.session_id == session_id, Booking.status == BookingStatus.confirmed
            )
        )
        return int(count or 0)

    @staticmethod
    async def my_bookings(
        session: AsyncSession, *, user_id: Optional[int] = None, phone: Optional[str] = None
    ) -> List[Booking]:
        matches = []
        if user_id is not None:
            matches.append(Booking.user_id == user_id)
        if normalize_phone(phone):
            matches.append(Booking.guest_phone == normalize_phone(phone))
        if not matches:
            return []
        res = await session.execute(
            select(Booking).where(or_(*matches)).order_by(Booking.id.desc())
        )
        return list(res.scalars().unique().all())

    @staticmethod
    async def confirmed_for_session(session: AsyncSession, session_id: int) -> List[Booking]:
        res = await session.execute(
            select(Booking)
            .where(Booking.session_id == session_id, Booking.status == BookingStatus.confirmed)
            .order_by(Booking.id)
        )
        return list(res.scalars().unique().all())
