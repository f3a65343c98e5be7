"""
Stripe webhook reconciliation.

Deliveries are at-least-once and may arrive out of order. Every handler is keyed
by the Checkout Session id (the order's external_payment_ref) and leans on
apply_status_transition being a no-op for repeats, so a redelivered event never
takes stock twice or redeems a promo code twice.

Outcomes that a retry cannot fix (stock gone, unknown session, an event object
with no id, an order whose state forbids the move) are acknowledged with a
warning. Anything else propagates so the provider re-delivers later.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from .errors import InsufficientStockError, InvalidStatusTransitionError, OrderNotFoundError, ValidationError
from .models import Order, OrderStatus
from .orders import apply_status_transition
from .promo import redeem_promo_code

logger = logging.getLogger(__name__)

OrderCallback = Callable[[Order], None]

NON_RETRYABLE_ERRORS = (InsufficientStockError, OrderNotFoundError, InvalidStatusTransitionError, ValidationError)


def _session_ref(data_object: Mapping[str, Any]) -> str:
    ref = data_object.get("id")
    if not ref:
        raise ValidationError("event object has no session id")
    return ref


def _redeem_promo(db: Session, order: Order, data_object: Mapping[str, Any]) -> None:
    metadata = data_object.get("metadata") or {}
    code = metadata.get("promo_code") or order.promo_code
    if not code:
        return
    try:
        redeem_promo_code(db, code)
    except Exception:
        # Redemption errors never fail the event.
        logger.exception("could not redeem promo code %s for order %s", code, order.id)


def _handle_paid(db: Session, data_object: Mapping[str, Any], on_paid: Optional[OrderCallback]) -> None:
    ref = _session_ref(data_object)
    if data_object.get("payment_status") == "unpaid":
        logger.info("session %s completed but unpaid, waiting for async payment", ref)
        return

    transition = apply_status_transition(db, ref, OrderStatus.PAID)
    if not transition.changed:
        return

    _redeem_promo(db, transition.order, data_object)
    if on_paid is not None:
        on_paid(transition.order)


def _handle_expired(db: Session, data_object: Mapping[str, Any], on_paid: Optional[OrderCallback]) -> None:
    apply_status_transition(db, _session_ref(data_object), OrderStatus.CANCELLED)


def _handle_async_failed(db: Session, data_object: Mapping[str, Any], on_paid: Optional[OrderCallback]) -> None:
    apply_status_transition(db, _session_ref(data_object), OrderStatus.FAILED)


def _handle_payment_intent_failed(db: Session, data_object: Mapping[str, Any], on_paid: Optional[OrderCallback]) -> None:
    # The payment intent carries no session id, so there is no order to move.
    last_error = data_object.get("last_payment_error") or {}
    logger.warning("payment intent %s failed: %s", data_object.get("id"), last_error.get("message"))


_HANDLERS = {
    "checkout.session.completed": _handle_paid,
    "checkout.session.async_payment_succeeded": _handle_paid,
    "checkout.session.expired": _handle_expired,
    "checkout.session.async_payment_failed": _handle_async_failed,
    "payment_intent.payment_failed": _handle_payment_intent_failed,
}


def handle_event(
    db: Session,
    event: Mapping[str, Any],
    on_paid: Optional[OrderCallback] = None,
) -> Dict[str, Any]:
    """Apply one verified event. Returns the acknowledgement body."""

    event_type = event.get("type")
    data_object = (event.get("data") or {}).get("object") or {}

    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.info("unhandled webhook event type %s", event_type)
        return {"received": True}

    try:
        handler(db, data_object, on_paid)
    except NON_RETRYABLE_ERRORS as e:
        logger.warning("webhook %s (%s) acknowledged with warning: %s", event_type, event.get("id"), e)
        return {"received": True, "warning": e.public_message}

    return {"received": True}


__all__ = ["NON_RETRYABLE_ERRORS", "handle_event"]
