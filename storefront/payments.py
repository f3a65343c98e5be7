from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Mapping, Optional

import stripe
from fastapi import Depends

from .config import Settings, get_settings
from .errors import ConfigurationError, SignatureError

logger = logging.getLogger(__name__)

# Coupons created for a checkout are single-use and short-lived.
COUPON_TTL_SECONDS = 3600


@dataclass(frozen=True)
class LineItem:
    name: str
    unit_amount: Decimal
    quantity: int
    description: Optional[str] = None
    image: Optional[str] = None


@dataclass(frozen=True)
class PaymentSession:
    id: str
    url: str


def to_minor_units(amount: Decimal) -> int:
    # Convert decimal currency to integer minor units (e.g., cents)
    dec = Decimal(str(amount))
    minor = (dec * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(minor)


class StripeGateway:
    """Creates Stripe Checkout sessions and verifies webhook deliveries."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _stripe_required(self) -> None:
        if not self.settings.stripe_secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is not configured")
        stripe.api_key = self.settings.stripe_secret_key

    def _line_item_payload(self, item: LineItem) -> Dict[str, Any]:
        product_data: Dict[str, Any] = {"name": item.name}
        if item.description:
            product_data["description"] = item.description
        if item.image:
            product_data["images"] = [item.image]
        return {
            "price_data": {
                "currency": self.settings.stripe_currency,
                "product_data": product_data,
                "unit_amount": to_minor_units(item.unit_amount),
            },
            "quantity": item.quantity,
        }

    def create_checkout_session(
        self,
        *,
        line_items: List[LineItem],
        customer_email: Optional[str],
        metadata: Mapping[str, str],
        client_reference_id: Optional[str] = None,
        discount: Decimal = Decimal("0"),
        discount_label: Optional[str] = None,
    ) -> PaymentSession:
        self._stripe_required()

        params: Dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [self._line_item_payload(i) for i in line_items],
            "success_url": f"{self.settings.public_base_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.settings.public_base_url}/cancel",
            "metadata": dict(metadata),
        }
        if customer_email:
            params["customer_email"] = customer_email
        if client_reference_id:
            params["client_reference_id"] = client_reference_id

        if discount > 0:
            coupon = stripe.Coupon.create(
                amount_off=to_minor_units(discount),
                currency=self.settings.stripe_currency,
                name=discount_label or "Promo code",
                max_redemptions=1,
                redeem_by=int(time.time()) + COUPON_TTL_SECONDS,
            )
            params["discounts"] = [{"coupon": coupon.id}]
            logger.info("stripe coupon %s created (-%s)", coupon.id, discount)

        session = stripe.checkout.Session.create(**params)
        return PaymentSession(id=session.id, url=session.url)

    def construct_event(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """Verify the Stripe-Signature header, then return the event as a plain dict."""

        if not sig_header:
            raise SignatureError("Missing Stripe-Signature header")
        if not self.settings.stripe_webhook_secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")

        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=sig_header,
                secret=self.settings.stripe_webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureError(f"Webhook signature verification failed: {e}") from e
        except ValueError as e:
            raise SignatureError(f"Webhook payload is not valid JSON: {e}") from e

        return event.to_dict()


def get_payment_gateway(settings: Settings = Depends(get_settings)) -> StripeGateway:
    return StripeGateway(settings)
