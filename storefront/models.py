import datetime as dt
import uuid
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship, validates
from sqlalchemy.sql import func

Base = declarative_base()


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"
    REFUNDED = "refunded"


class StockMovementType(str, Enum):
    SALE = "SALE"
    RETURN = "RETURN"
    RESTOCK = "RESTOCK"
    ADJUSTMENT = "ADJUSTMENT"
    DAMAGE = "DAMAGE"
    TRANSFER = "TRANSFER"


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),)

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False, index=True)
    description = Column(Text)
    image = Column(String(500))
    category = Column(String(50), index=True)
    price = Column(Numeric(10, 2), nullable=False)
    # Only the stock ledger writes this column.
    stock = Column(Integer, nullable=False, default=0)


class StockMovement(Base):
    """Append-only ledger row. stock_after is the product stock right after commit."""

    __tablename__ = "stock_movements"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    type = Column(String(20), nullable=False, index=True)
    reason = Column(String(255))
    stock_before = Column(Integer, nullable=False)
    stock_after = Column(Integer, nullable=False)
    order_id = Column(String(36), index=True)
    actor_id = Column(String(64))
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

    product = relationship("Product")


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    external_payment_ref = Column(String(255), nullable=False, unique=True, index=True)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value, index=True)
    total_amount = Column(Numeric(12, 2), nullable=False)
    promo_code = Column(String(50))
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    customer_email = Column(String(255))
    customer_id = Column(String(64), index=True)

    tracking_number = Column(String(50))
    carrier = Column(String(50))

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    paid_at = Column(DateTime(timezone=True))
    shipped_at = Column(DateTime(timezone=True))
    delivered_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    failed_at = Column(DateTime(timezone=True))
    refunded_at = Column(DateTime(timezone=True))

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )

    @validates("total_amount")
    def _total_is_write_once(self, key, value):
        if self.total_amount is not None:
            raise ValueError("total_amount is immutable once the order exists")
        return value


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    product_name = Column(String(200), nullable=False)
    quantity = Column(Integer, nullable=False)
    # Unit price snapshot at order time.
    price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")


class PromoCode(Base):
    __tablename__ = "promo_codes"
    __table_args__ = (
        CheckConstraint("max_uses IS NULL OR used_count <= max_uses", name="ck_promo_codes_usage_cap"),
    )

    id = Column(Integer, primary_key=True, index=True)
    # Always stored upper-case.
    code = Column(String(50), nullable=False, unique=True, index=True)
    discount_percent = Column(Numeric(5, 2))
    discount_amount = Column(Numeric(10, 2))
    min_purchase = Column(Numeric(10, 2))
    max_uses = Column(Integer)
    used_count = Column(Integer, nullable=False, default=0)
    valid_from = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    valid_until = Column(DateTime(timezone=True))
    is_active = Column(Boolean, nullable=False, default=True)
