from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from classbook.integrations.payments import PaymentGateway
from classbook.services.booking_service import BookingService
from classbook.services.credit_service import CreditService
from classbook.services.errors import InvalidRequest
from classbook.services.schemas import Buyer
from classbook.storage.models import Booking, CreditGrant

log = logging.getLogger(__name__)

Outcome = Union[Booking, CreditGrant, None]


class PaymentService:
    @staticmethod
    async def handle_webhook(
        session: AsyncSession, payload: bytes, signature: str, gateway: PaymentGateway
    ) -> Outcome:
        event = gateway.parse_event(payload, signature)
        return await PaymentService.handle_event(session, event)

    @staticmethod
    async def handle_event(session: AsyncSession, event: Dict[str, Any]) -> Outcome:
        """Route a processor event. Only completed checkouts produce rows."""
        kind = event.get("type")
        if kind != "checkout.session.completed":
            log.info("payments.event type=%s ignored", kind)
            return None

        checkout = (event.get("data") or {}).get("object") or {}
        checkout_id = checkout.get("id")
        if not checkout_id:
            raise InvalidRequest("Checkout session id missing from event")
        if checkout.get("payment_status", "paid") != "paid":
            log.info("payments.event checkout=%s not paid (%s)", checkout_id, checkout.get("payment_status"))
            return None

        metadata: Dict[str, str] = checkout.get("metadata") or {}
        payment_intent = checkout.get("payment_intent")
        if metadata.get("type") == "package":
            return await PaymentService._package_paid(session, checkout_id, payment_intent, metadata)

        return await BookingService.confirm_paid_reservation(
            session,
            metadata,
            checkout_session_id=checkout_id,
            payment_intent_id=payment_intent,
            amount_cents=int(checkout.get("amount_total") or 0),
            currency=checkout.get("currency") or "usd",
        )

    @staticmethod
    async def _package_paid(
        session: AsyncSession, checkout_id: str, payment_intent: Optional[str], metadata: Dict[str, str]
    ) -> CreditGrant:
        try:
            package_id = int(metadata["package_id"])
            buyer = Buyer(
                first_name=metadata.get("first_name", ""),
                last_name=metadata.get("last_name", ""),
                email=metadata.get("email", ""),
                phone=metadata.get("phone") or None,
                user_id=int(metadata["user_id"]) if metadata.get("user_id") else None,
            )
        except (KeyError, ValueError) as e:
            log.error("payments.package checkout=%s bad metadata: %s", checkout_id, e)
            raise InvalidRequest("Missing package metadata in checkout session") from e
        return await CreditService.purchase(session, package_id, buyer, checkout_id, payment_intent)
