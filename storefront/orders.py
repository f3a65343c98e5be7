"""
Order lifecycle: availability check, provisional order creation and status
transitions.

Availability is checked twice. The check at checkout time is advisory: it reads
stock without locking or reserving anything, so an abandoned checkout never holds
inventory. The check that counts runs inside the transition to PAID, with the
order and product rows locked, and books the sale in the same transaction.
"""

from __future__ import annotations

import datetime as dt
import functools
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import (
    DuplicateOrderError,
    InsufficientStockError,
    InvalidStatusTransitionError,
    OrderNotFoundError,
    ProductNotFoundError,
    ValidationError,
)
from .models import Order, OrderItem, OrderStatus, Product, StockMovementType
from .stock_ledger import apply_movement

logger = logging.getLogger(__name__)

QUANTITY_MIN = 1
QUANTITY_MAX = 100

ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED, OrderStatus.FAILED}),
    OrderStatus.PAID: frozenset({OrderStatus.SHIPPED, OrderStatus.REFUNDED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.REFUNDED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.FAILED, OrderStatus.REFUNDED}
)

# States in which the stock for the order has already been taken.
PAID_OR_LATER = frozenset({OrderStatus.PAID, OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.REFUNDED})

_TIMESTAMP_FIELDS = {
    OrderStatus.PAID: "paid_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
    OrderStatus.FAILED: "failed_at",
    OrderStatus.REFUNDED: "refunded_at",
}


@dataclass(frozen=True)
class InsufficientItem:
    product_id: int
    name: str
    requested: int
    available: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "productId": self.product_id,
            "name": self.name,
            "requested": self.requested,
            "available": self.available,
        }


@dataclass(frozen=True)
class StockAvailability:
    available: bool
    insufficient_items: List[InsufficientItem] = field(default_factory=list)


@dataclass(frozen=True)
class StatusTransition:
    order: Order
    previous_status: OrderStatus
    changed: bool


def _merge_quantities(items: Iterable[Mapping[str, Any]]) -> Dict[int, int]:
    merged: Dict[int, int] = {}
    for item in items:
        pid = int(item["product_id"])
        qty = int(item["quantity"])
        if qty <= 0:
            raise ValidationError("quantity must be > 0")
        merged[pid] = merged.get(pid, 0) + qty
    return merged


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return OrderStatus(new) in ALLOWED_TRANSITIONS[OrderStatus(current)]


def check_stock_availability(db: Session, items: Iterable[Mapping[str, Any]]) -> StockAvailability:
    """
    Advisory pre-check: compare requested quantities with current stock.

    items: [{"product_id": int, "quantity": int}, ...]
    Reads every referenced product in one query and takes no locks.
    """

    requested = _merge_quantities(items)
    if not requested:
        return StockAvailability(available=True)

    products = {
        p.id: p for p in db.query(Product).filter(Product.id.in_(list(requested.keys()))).all()
    }

    insufficient: List[InsufficientItem] = []
    for pid, qty in requested.items():
        product = products.get(pid)
        if product is None or int(product.stock) < qty:
            insufficient.append(
                InsufficientItem(
                    product_id=pid,
                    name=product.name if product is not None else "Unknown product",
                    requested=qty,
                    available=int(product.stock) if product is not None else 0,
                )
            )

    return StockAvailability(available=not insufficient, insufficient_items=insufficient)


def _validate_order_input(external_payment_ref: str, items: List[Mapping[str, Any]], total_amount: Decimal) -> None:
    if not external_payment_ref or not str(external_payment_ref).strip():
        raise ValidationError("external_payment_ref is required")
    if not items:
        raise ValidationError("an order needs at least one item")
    for item in items:
        qty = int(item["quantity"])
        if qty < QUANTITY_MIN or qty > QUANTITY_MAX:
            raise ValidationError(f"quantity must be between {QUANTITY_MIN} and {QUANTITY_MAX}")
        if Decimal(str(item["price"])) <= 0:
            raise ValidationError("unit price must be > 0")
    if Decimal(str(total_amount)) < 0:
        raise ValidationError("total_amount cannot be negative")


def create_order(
    db: Session,
    external_payment_ref: str,
    items: List[Mapping[str, Any]],
    total_amount: Decimal,
    customer_email: Optional[str],
    customer_id: Optional[str],
    promo_code: Optional[str] = None,
    discount_amount: Optional[Decimal] = None,
    order_id: Optional[str] = None,
) -> Order:
    """
    Insert a PENDING order and its items in one transaction.

    items: [{"product_id", "product_name", "quantity", "price"}, ...] where price is
    the server-side unit price. total_amount must already be computed by the
    caller; it is stored as given and never derived here.
    """

    _validate_order_input(external_payment_ref, items, total_amount)

    if get_order_by_payment_ref(db, external_payment_ref) is not None:
        raise DuplicateOrderError(external_payment_ref)

    db_order = Order(
        external_payment_ref=external_payment_ref,
        status=OrderStatus.PENDING.value,
        total_amount=Decimal(str(total_amount)),
        promo_code=promo_code or None,
        discount_amount=Decimal(str(discount_amount or 0)),
        customer_email=customer_email,
        customer_id=customer_id,
    )
    if order_id:
        db_order.id = order_id

    try:
        db.add(db_order)
        db.flush()

        for item in items:
            db.add(
                OrderItem(
                    order_id=db_order.id,
                    product_id=int(item["product_id"]),
                    product_name=item.get("product_name") or "",
                    quantity=int(item["quantity"]),
                    price=Decimal(str(item["price"])),
                )
            )

        db.commit()
    except IntegrityError:
        # unique external_payment_ref lost a race with a concurrent insert
        db.rollback()
        raise DuplicateOrderError(external_payment_ref)
    except Exception:
        db.rollback()
        raise

    db.refresh(db_order)
    logger.info("order %s created (pending) ref=%s total=%s", db_order.id, external_payment_ref, db_order.total_amount)
    return db_order


def get_order(db: Session, order_id: str) -> Optional[Order]:
    return db.query(Order).filter(Order.id == order_id).first()


def get_order_by_payment_ref(db: Session, external_payment_ref: str) -> Optional[Order]:
    return db.query(Order).filter(Order.external_payment_ref == external_payment_ref).first()


def list_orders(
    db: Session,
    *,
    status: Optional[OrderStatus] = None,
    customer_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[Order]:
    query = db.query(Order)
    if status is not None:
        query = query.filter(Order.status == OrderStatus(status).value)
    if customer_id is not None:
        query = query.filter(Order.customer_id == customer_id)
    return query.order_by(Order.created_at.desc()).offset(skip).limit(limit).all()


def _take_stock_for_order(db: Session, db_order: Order) -> None:
    """Re-verify every line, then book the sales. Runs inside the caller's transaction."""

    requested = _merge_quantities(
        {"product_id": i.product_id, "quantity": i.quantity} for i in db_order.items
    )

    # Lock rows in a stable order to avoid deadlocks
    locked: Dict[int, Product] = {}
    for pid in sorted(requested.keys()):
        product = (
            db.query(Product)
            .filter(Product.id == pid)
            .with_for_update()
            .first()
        )
        if product is None:
            raise InsufficientStockError(pid, "Unknown product", requested[pid], 0)
        locked[pid] = product

    # Check everything before touching anything.
    for pid, qty in requested.items():
        product = locked[pid]
        if int(product.stock) < qty:
            logger.error(
                "insufficient stock at payment time: order=%s product=%s requested=%d available=%d",
                db_order.id,
                pid,
                qty,
                product.stock,
            )
            raise InsufficientStockError(pid, product.name, qty, int(product.stock))

    for pid in sorted(requested.keys()):
        apply_movement(
            db,
            locked[pid],
            -requested[pid],
            StockMovementType.SALE,
            order_id=db_order.id,
        )


def _return_stock_for_order(
    db: Session,
    db_order: Order,
    reason: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> None:
    """Book every line back as a RETURN. Runs inside the caller's transaction."""

    returned = _merge_quantities(
        {"product_id": i.product_id, "quantity": i.quantity} for i in db_order.items
    )
    for pid in sorted(returned.keys()):
        product = (
            db.query(Product)
            .filter(Product.id == pid)
            .with_for_update()
            .first()
        )
        if product is None:
            raise ProductNotFoundError(pid)
        apply_movement(
            db,
            product,
            returned[pid],
            StockMovementType.RETURN,
            reason=reason,
            order_id=db_order.id,
            actor_id=actor_id,
        )


def apply_status_transition(
    db: Session,
    external_payment_ref: str,
    new_status: OrderStatus,
    *,
    fields: Optional[Mapping[str, Any]] = None,
    on_change: Optional[Callable[[Session, Order], None]] = None,
) -> StatusTransition:
    """
    Move the order identified by its payment reference to ``new_status``.

    Same-status requests and ``paid`` requests on orders already past PAID are
    no-ops (changed=False). Moving into PAID re-checks and takes the stock in the
    same transaction as the status flip. ``on_change`` runs before the commit, and
    only when the status actually changes.
    """

    new_status = OrderStatus(new_status)
    if not external_payment_ref:
        raise ValidationError("external_payment_ref is required")

    try:
        db_order = (
            db.query(Order)
            .filter(Order.external_payment_ref == external_payment_ref)
            .with_for_update()
            .first()
        )
        if db_order is None:
            logger.warning("no order for payment reference %s", external_payment_ref)
            raise OrderNotFoundError(external_payment_ref)

        current = OrderStatus(db_order.status)

        if current == new_status or (new_status == OrderStatus.PAID and current in PAID_OR_LATER):
            db.rollback()
            logger.info("order %s already %s, %s ignored", db_order.id, current.value, new_status.value)
            return StatusTransition(order=db_order, previous_status=current, changed=False)

        if not can_transition(current, new_status):
            raise InvalidStatusTransitionError(db_order.id, current.value, new_status.value)

        if new_status == OrderStatus.PAID:
            _take_stock_for_order(db, db_order)
        if on_change is not None:
            on_change(db, db_order)

        db_order.status = new_status.value
        setattr(db_order, _TIMESTAMP_FIELDS[new_status], dt.datetime.now(dt.timezone.utc))
        for key, value in (fields or {}).items():
            setattr(db_order, key, value)

        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(db_order)
    logger.info("order %s: %s -> %s", db_order.id, current.value, new_status.value)
    return StatusTransition(order=db_order, previous_status=current, changed=True)


def update_order_status(db: Session, external_payment_ref: str, new_status: OrderStatus) -> Order:
    return apply_status_transition(db, external_payment_ref, new_status).order


def _transition_by_id(
    db: Session,
    order_id: str,
    new_status: OrderStatus,
    fields: Optional[Mapping[str, Any]] = None,
    on_change: Optional[Callable[[Session, Order], None]] = None,
) -> StatusTransition:
    db_order = get_order(db, order_id)
    if db_order is None:
        raise OrderNotFoundError(order_id)
    return apply_status_transition(
        db, db_order.external_payment_ref, new_status, fields=fields, on_change=on_change
    )


def mark_order_shipped(db: Session, order_id: str, tracking_number: str, carrier: str) -> Order:
    return _transition_by_id(
        db,
        order_id,
        OrderStatus.SHIPPED,
        fields={"tracking_number": tracking_number, "carrier": carrier},
    ).order


def mark_order_delivered(db: Session, order_id: str) -> Order:
    return _transition_by_id(db, order_id, OrderStatus.DELIVERED).order


def refund_order(
    db: Session,
    order_id: str,
    *,
    restock: bool = False,
    reason: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> StatusTransition:
    """
    Move a paid, shipped or delivered order to REFUNDED.

    With ``restock`` every line is booked back as a RETURN in the same transaction
    as the status flip. Refunding an already refunded order changes nothing, so the
    goods are never returned twice.
    """

    on_change = None
    if restock:
        on_change = functools.partial(_return_stock_for_order, reason=reason or "Refund", actor_id=actor_id)

    return _transition_by_id(db, order_id, OrderStatus.REFUNDED, on_change=on_change)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "InsufficientItem",
    "StockAvailability",
    "StatusTransition",
    "can_transition",
    "check_stock_availability",
    "create_order",
    "get_order",
    "get_order_by_payment_ref",
    "list_orders",
    "apply_status_transition",
    "update_order_status",
    "mark_order_shipped",
    "mark_order_delivered",
    "refund_order",
]
