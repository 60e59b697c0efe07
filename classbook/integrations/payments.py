from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import stripe

from classbook.config import settings
from classbook.services.errors import InvalidRequest, UpstreamUnavailable

log = logging.getLogger(__name__)


@dataclass
class Checkout:
    id: str
    url: Optional[str]


class PaymentGateway(Protocol):
    async def create_checkout(
        self,
        *,
        amount_cents: int,
        currency: str,
        product_name: str,
        description: str,
        customer_email: Optional[str],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> Checkout: ...

    def parse_event(self, payload: bytes, signature: str) -> Dict[str, Any]: ...


class StripeGateway:
    """Stripe Checkout as the external payment processor."""

    def __init__(self, api_key: str | None = None, webhook_secret: str | None = None):
        self.api_key = api_key if api_key is not None else settings.stripe_secret_key
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret

    def _create_session(self, **params: Any) -> Any:
        return stripe.checkout.Session.create(api_key=self.api_key, **params)

    async def create_checkout(
        self,
        *,
        amount_cents: int,
        currency: str,
        product_name: str,
        description: str,
        customer_email: Optional[str],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> Checkout:
        if not self.api_key:
            raise UpstreamUnavailable("Payments are not configured")
        params: Dict[str, Any] = {
            "payment_method_types": ["card"],
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": product_name, "description": description},
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            "metadata": metadata,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "expires_at": int(time.time()) + settings.checkout_expiry_minutes * 60,
        }
        if customer_email:
            params["customer_email"] = customer_email
        try:
            session = await asyncio.to_thread(self._create_session, **params)
        except stripe.StripeError as e:
            log.error("stripe checkout creation failed: %s", e)
            raise UpstreamUnavailable("Failed to create checkout session") from e
        log.info("stripe checkout created id=%s amount=%s", session.id, amount_cents)
        return Checkout(id=session.id, url=session.url)

    def parse_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        if not self.webhook_secret:
            raise UpstreamUnavailable("Webhook secret not configured")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            log.warning("Invalid webhook signature: %s", e)
            raise InvalidRequest("Invalid webhook signature") from e
        except ValueError as e:
            raise InvalidRequest("Invalid webhook payload") from e
        return json.loads(payload)
