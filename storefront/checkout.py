"""
Checkout orchestration: cart -> payment session -> pending order.

Only product ids and quantities are taken from the client. Names, prices and the
discount are recomputed from the database, so the amount charged is always the
server's number. Nothing is reserved here; stock is taken when the payment
provider confirms the session (see orders.apply_status_transition).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from .errors import CartStockError
from .models import Order, Product
from .orders import check_stock_availability, create_order
from .payments import LineItem, StripeGateway
from .promo import to_money, validate_promo_code
from .schemas import CheckoutRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    url: str
    order: Order
    subtotal: Decimal
    discount: Decimal
    promo_code: Optional[str] = None

    @property
    def order_id(self) -> str:
        return self.order.id


def _load_products(db: Session, product_ids: List[int]) -> Dict[int, Product]:
    return {p.id: p for p in db.query(Product).filter(Product.id.in_(product_ids)).all()}


def start_checkout(
    db: Session,
    gateway: StripeGateway,
    request: CheckoutRequest,
    user: Mapping[str, Optional[str]],
) -> CheckoutResult:
    """
    Turn a validated cart into a Stripe Checkout session plus a PENDING order.

    Raises CartStockError (nothing created) when any line is short. The promo code,
    if any, is re-validated against the server subtotal; a code that no longer
    applies is dropped and the cart is charged at full price.
    """

    requested = [{"product_id": item.id, "quantity": item.quantity} for item in request.items]
    availability = check_stock_availability(db, requested)
    if not availability.available:
        logger.info(
            "checkout rejected for user %s: %d item(s) short",
            user.get("id"),
            len(availability.insufficient_items),
        )
        raise CartStockError([i.to_dict() for i in availability.insufficient_items])

    products = _load_products(db, [item.id for item in request.items])

    subtotal = Decimal("0.00")
    line_items: List[LineItem] = []
    order_items = []
    for item in request.items:
        product = products[item.id]
        unit_price = to_money(product.price)
        subtotal += unit_price * item.quantity
        line_items.append(
            LineItem(
                name=product.name,
                unit_amount=unit_price,
                quantity=item.quantity,
                description=product.description,
                image=product.image,
            )
        )
        order_items.append(
            {
                "product_id": product.id,
                "product_name": product.name,
                "quantity": item.quantity,
                "price": unit_price,
            }
        )
    subtotal = to_money(subtotal)

    discount = Decimal("0.00")
    promo_code = None
    if request.promo_code:
        validation = validate_promo_code(db, request.promo_code, subtotal)
        if validation.valid:
            discount = validation.discount
            promo_code = validation.code
        else:
            logger.info("promo code %r dropped at checkout: %s", request.promo_code, validation.reason)

    total = to_money(subtotal - discount)
    order_id = str(uuid.uuid4())

    session = gateway.create_checkout_session(
        line_items=line_items,
        customer_email=user.get("email"),
        metadata={
            "order_id": order_id,
            "user_id": str(user.get("id") or ""),
            "promo_code": promo_code or "",
            "discount_amount": str(discount),
            "item_count": str(len(order_items)),
        },
        client_reference_id=order_id,
        discount=discount,
        discount_label=f"Promo {promo_code}" if promo_code else None,
    )

    order = create_order(
        db,
        session.id,
        order_items,
        total,
        customer_email=user.get("email"),
        customer_id=user.get("id"),
        promo_code=promo_code,
        discount_amount=discount,
        order_id=order_id,
    )
    logger.info(
        "checkout started order=%s session=%s subtotal=%s discount=%s total=%s",
        order.id,
        session.id,
        subtotal,
        discount,
        total,
    )
    return CheckoutResult(url=session.url, order=order, subtotal=subtotal, discount=discount, promo_code=promo_code)


__all__ = ["CheckoutResult", "start_checkout"]
