"""
Stock ledger: the only code path that changes ``Product.stock``.

Every change is booked as a ``StockMovement`` row in the same transaction that
writes the new stock value, with the product row locked (``FOR UPDATE``) between
the read and the write. For any product, the sum of its movement deltas equals
its current stock; ``reconcile_ledger`` checks exactly that.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterator, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from .errors import InsufficientStockError, ProductNotFoundError, ValidationError
from .models import Product, StockMovement, StockMovementType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockThresholds:
    out_of_stock: int = 0
    critical: int = 3
    low: int = 10


DEFAULT_THRESHOLDS = StockThresholds()


@dataclass(frozen=True)
class StockAlert:
    level: str  # out_of_stock, critical, low, ok
    message: str


@dataclass(frozen=True)
class StockStats:
    total_products: int
    total_units: int
    total_value: Decimal
    out_of_stock: int
    critical: int
    low: int
    healthy: int


@dataclass(frozen=True)
class LedgerReconciliation:
    product_id: int
    stock: int
    ledger_total: int

    @property
    def consistent(self) -> bool:
        return self.stock == self.ledger_total


def _lock_product(db: Session, product_id: int) -> Optional[Product]:
    return (
        db.query(Product)
        .filter(Product.id == product_id)
        .with_for_update()
        .first()
    )


def apply_movement(
    db: Session,
    product: Product,
    quantity: int,
    movement_type: StockMovementType,
    *,
    reason: Optional[str] = None,
    order_id: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> StockMovement:
    """Book a movement against an already locked product. Flushes, never commits."""

    stock_before = int(product.stock)
    stock_after = stock_before + int(quantity)
    if stock_after < 0:
        raise InsufficientStockError(product.id, product.name, -int(quantity), stock_before)

    movement = StockMovement(
        product_id=product.id,
        quantity=int(quantity),
        type=StockMovementType(movement_type).value,
        reason=reason,
        stock_before=stock_before,
        stock_after=stock_after,
        order_id=order_id,
        actor_id=actor_id,
    )
    product.stock = stock_after
    db.add(movement)
    db.flush()
    return movement


def record_movement(
    db: Session,
    product_id: int,
    quantity: int,
    movement_type: StockMovementType,
    reason: Optional[str] = None,
    order_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    *,
    commit: bool = True,
) -> Tuple[StockMovement, Product]:
    """
    Record a signed stock change for one product.

    The caller decides the sign. A change that would take stock below zero is
    rejected with InsufficientStockError and nothing is written; the ledger never
    clamps. With ``commit=False`` the movement joins the caller's transaction and
    the caller owns commit/rollback.
    """

    try:
        product = _lock_product(db, product_id)
        if product is None:
            raise ProductNotFoundError(product_id)

        movement = apply_movement(
            db,
            product,
            quantity,
            movement_type,
            reason=reason,
            order_id=order_id,
            actor_id=actor_id,
        )
        if commit:
            db.commit()
            db.refresh(product)
            db.refresh(movement)
    except Exception:
        if commit:
            db.rollback()
        raise

    logger.info(
        "stock movement product=%s type=%s delta=%+d stock=%d->%d",
        product_id,
        movement.type,
        movement.quantity,
        movement.stock_before,
        movement.stock_after,
    )
    return movement, product


def _require_positive(quantity: int) -> int:
    if int(quantity) <= 0:
        raise ValidationError("quantity must be > 0")
    return int(quantity)


def record_sale(
    db: Session,
    product_id: int,
    quantity: int,
    order_id: str,
    *,
    commit: bool = True,
) -> Tuple[StockMovement, Product]:
    if not order_id:
        raise ValidationError("order_id is required for a sale")
    qty = _require_positive(quantity)
    return record_movement(
        db, product_id, -qty, StockMovementType.SALE, order_id=order_id, commit=commit
    )


def record_return(
    db: Session,
    product_id: int,
    quantity: int,
    order_id: Optional[str] = None,
    reason: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> Tuple[StockMovement, Product]:
    qty = _require_positive(quantity)
    return record_movement(
        db, product_id, qty, StockMovementType.RETURN, reason=reason, order_id=order_id, actor_id=actor_id
    )


def record_restock(
    db: Session,
    product_id: int,
    quantity: int,
    reason: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> Tuple[StockMovement, Product]:
    qty = _require_positive(quantity)
    return record_movement(
        db, product_id, qty, StockMovementType.RESTOCK, reason=reason, actor_id=actor_id
    )


def record_damage(
    db: Session,
    product_id: int,
    quantity: int,
    reason: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> Tuple[StockMovement, Product]:
    qty = _require_positive(quantity)
    return record_movement(
        db, product_id, -qty, StockMovementType.DAMAGE, reason=reason, actor_id=actor_id
    )


def adjust_stock(
    db: Session,
    product_id: int,
    new_stock: int,
    reason: str,
    actor_id: Optional[str] = None,
) -> Tuple[StockMovement, Product]:
    """Set stock to an absolute value (manual inventory count)."""

    if int(new_stock) < 0:
        raise ValidationError("stock cannot be negative")

    try:
        product = _lock_product(db, product_id)
        if product is None:
            raise ProductNotFoundError(product_id)

        movement = apply_movement(
            db,
            product,
            int(new_stock) - int(product.stock),
            StockMovementType.ADJUSTMENT,
            reason=reason,
            actor_id=actor_id,
        )
        db.commit()
        db.refresh(product)
        db.refresh(movement)
    except Exception:
        db.rollback()
        raise

    logger.info("stock adjusted product=%s stock=%d->%d", product_id, movement.stock_before, movement.stock_after)
    return movement, product


def create_product(
    db: Session,
    *,
    name: str,
    price: Decimal,
    initial_stock: int = 0,
    description: Optional[str] = None,
    image: Optional[str] = None,
    category: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> Product:
    """Insert a product; its opening stock is booked as a RESTOCK movement."""

    name = (name or "").strip()
    if not name:
        raise ValidationError("name_required")
    if Decimal(str(price)) <= 0:
        raise ValidationError("price must be > 0")
    if int(initial_stock) < 0:
        raise ValidationError("stock cannot be negative")

    product = Product(
        name=name,
        price=Decimal(str(price)),
        stock=0,
        description=description,
        image=image,
        category=category,
    )
    try:
        db.add(product)
        db.flush()
        if int(initial_stock) > 0:
            apply_movement(
                db,
                product,
                int(initial_stock),
                StockMovementType.RESTOCK,
                reason="Initial stock",
                actor_id=actor_id,
            )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(product)
    return product


def get_product(db: Session, product_id: int) -> Optional[Product]:
    return db.query(Product).filter(Product.id == product_id).first()


# -----------------------------
# Read side
# -----------------------------


def get_stock_history(
    db: Session,
    product_id: int,
    *,
    movement_type: Optional[StockMovementType] = None,
    start: Optional[dt.datetime] = None,
    end: Optional[dt.datetime] = None,
    limit: Optional[int] = 50,
    batch_size: int = 100,
) -> Iterator[StockMovement]:
    """Yield a product's movements, newest first. Rows are fetched in batches."""

    query = db.query(StockMovement).filter(StockMovement.product_id == product_id)
    if movement_type is not None:
        query = query.filter(StockMovement.type == StockMovementType(movement_type).value)
    if start is not None:
        query = query.filter(StockMovement.created_at >= start)
    if end is not None:
        query = query.filter(StockMovement.created_at <= end)

    query = query.order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
    if limit is not None:
        query = query.limit(limit)

    yield from query.yield_per(batch_size)


def get_recent_stock_movements(db: Session, limit: int = 20) -> List[StockMovement]:
    return (
        db.query(StockMovement)
        .order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .limit(limit)
        .all()
    )


def get_low_stock_products(db: Session, threshold: Optional[int] = None) -> List[Product]:
    limit = DEFAULT_THRESHOLDS.low if threshold is None else threshold
    return (
        db.query(Product)
        .filter(Product.stock <= limit)
        .order_by(Product.stock.asc(), Product.id.asc())
        .all()
    )


def get_stock_alert(stock: int, thresholds: StockThresholds = DEFAULT_THRESHOLDS) -> StockAlert:
    if stock <= thresholds.out_of_stock:
        return StockAlert(level="out_of_stock", message="Out of stock")
    if stock <= thresholds.critical:
        return StockAlert(level="critical", message="Critical stock")
    if stock <= thresholds.low:
        return StockAlert(level="low", message="Low stock")
    return StockAlert(level="ok", message="Stock OK")


def get_stock_stats(db: Session, thresholds: StockThresholds = DEFAULT_THRESHOLDS) -> StockStats:
    rows = db.query(Product.stock, Product.price).all()

    total_units = 0
    total_value = Decimal("0.00")
    buckets = {"out_of_stock": 0, "critical": 0, "low": 0, "ok": 0}

    for stock, price in rows:
        total_units += int(stock)
        total_value += int(stock) * Decimal(str(price))
        buckets[get_stock_alert(int(stock), thresholds).level] += 1

    return StockStats(
        total_products=len(rows),
        total_units=total_units,
        total_value=total_value.quantize(Decimal("0.01")),
        out_of_stock=buckets["out_of_stock"],
        critical=buckets["critical"],
        low=buckets["low"],
        healthy=buckets["ok"],
    )


def reconcile_ledger(db: Session, product_id: int) -> LedgerReconciliation:
    product = get_product(db, product_id)
    if product is None:
        raise ProductNotFoundError(product_id)

    ledger_total = (
        db.query(func.coalesce(func.sum(StockMovement.quantity), 0))
        .filter(StockMovement.product_id == product_id)
        .scalar()
    )
    return LedgerReconciliation(
        product_id=product_id,
        stock=int(product.stock),
        ledger_total=int(ledger_total or 0),
    )


__all__ = [
    "StockThresholds",
    "StockAlert",
    "StockStats",
    "LedgerReconciliation",
    "apply_movement",
    "record_movement",
    "record_sale",
    "record_return",
    "record_restock",
    "record_damage",
    "adjust_stock",
    "create_product",
    "get_product",
    "get_stock_history",
    "get_recent_stock_movements",
    "get_low_stock_products",
    "get_stock_alert",
    "get_stock_stats",
    "reconcile_ledger",
]
