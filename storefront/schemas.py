from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import OrderStatus

MAX_CART_ITEMS = 50


# -----------------------------
# Checkout
# -----------------------------


class CheckoutItem(BaseModel):
    """A cart line as sent by the client. Only id and quantity are trusted."""

    id: int = Field(..., gt=0, description="Product ID")
    quantity: int = Field(..., ge=1, le=100, description="Product quantity")
    price: Optional[Decimal] = Field(None, ge=Decimal("0.01"), le=Decimal("100000"))
    name: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    image: Optional[str] = Field(None, max_length=500)


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[CheckoutItem] = Field(..., min_length=1, max_length=MAX_CART_ITEMS)
    promo_code: Optional[str] = Field(None, alias="promoCode", max_length=50)

    @field_validator("items")
    @classmethod
    def _no_duplicate_products(cls, items: List[CheckoutItem]) -> List[CheckoutItem]:
        ids = [item.id for item in items]
        if len(set(ids)) != len(ids):
            raise ValueError("duplicate products in cart")
        return items


class CheckoutResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    order_id: str = Field(..., alias="orderId")


# -----------------------------
# Orders
# -----------------------------


class OrderItemOut(BaseModel):
    product_id: int
    product_name: str
    quantity: int
    price: Decimal

    model_config = ConfigDict(from_attributes=True)


class OrderOut(BaseModel):
    id: str
    external_payment_ref: str
    status: OrderStatus
    total_amount: Decimal
    discount_amount: Decimal
    promo_code: Optional[str] = None
    customer_email: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    created_at: datetime
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    items: List[OrderItemOut] = []

    model_config = ConfigDict(from_attributes=True)


class ShipOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tracking_number: str = Field(..., alias="trackingNumber", min_length=5, max_length=50)
    carrier: str = Field(..., min_length=2, max_length=50)


# -----------------------------
# Stock
# -----------------------------


class StockAdjustRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: int = Field(..., alias="productId", gt=0)
    action: Literal["set", "add", "adjust"]
    quantity: int
    reason: Optional[str] = Field(None, max_length=255)


class StockMovementOut(BaseModel):
    id: int
    product_id: int
    quantity: int
    type: str
    reason: Optional[str] = None
    stock_before: int
    stock_after: int
    order_id: Optional[str] = None
    actor_id: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ProductStockOut(BaseModel):
    id: int
    name: str
    previous_stock: int
    new_stock: int
    change: int


class StockAdjustResponse(BaseModel):
    product: ProductStockOut
    history: StockMovementOut


class LowStockProductOut(BaseModel):
    id: int
    name: str
    stock: int
    category: Optional[str] = None
    image: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class StockStatsOut(BaseModel):
    total_products: int
    total_units: int
    stock_value: Decimal
    out_of_stock_count: int
    critical_count: int
    low_stock_count: int
    healthy_count: int


class StockAlertsOut(BaseModel):
    out_of_stock: List[LowStockProductOut]
    low_stock: List[LowStockProductOut]


class StockThresholdsOut(BaseModel):
    out_of_stock: int
    critical: int
    low: int


class StockOverviewResponse(BaseModel):
    stats: StockStatsOut
    alerts: StockAlertsOut
    movements: List[StockMovementOut]
    thresholds: StockThresholdsOut


# -----------------------------
# Promo codes
# -----------------------------


class PromoValidateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(..., min_length=1, max_length=50)
    cart_total: Decimal = Field(..., alias="cartTotal", gt=0)


class PromoValidateResponse(BaseModel):
    valid: bool
    code: Optional[str] = None
    reason: Optional[str] = None
    discount_type: Optional[str] = None
    discount_amount: Decimal = Decimal("0.00")
    new_total: Optional[Decimal] = None
    min_purchase: Optional[Decimal] = None


def _normalize_promo_code(value):
    if isinstance(value, str):
        return value.strip().upper()
    return value


class PromoCodeCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(..., min_length=3, max_length=50)
    discount_percent: Optional[Decimal] = Field(None, alias="discountPercent", ge=0, le=100)
    discount_amount: Optional[Decimal] = Field(None, alias="discountAmount", ge=0)
    min_purchase: Optional[Decimal] = Field(None, alias="minPurchase", ge=0)
    max_uses: Optional[int] = Field(None, alias="maxUses", ge=1)
    valid_from: Optional[datetime] = Field(None, alias="validFrom")
    valid_until: Optional[datetime] = Field(None, alias="validUntil")
    is_active: bool = Field(True, alias="isActive")

    @field_validator("code", mode="before")
    @classmethod
    def _upper_case_code(cls, value):
        return _normalize_promo_code(value)

    @model_validator(mode="after")
    def _needs_a_discount(self):
        if not self.discount_percent and not self.discount_amount:
            raise ValueError("specify a percentage or a fixed discount")
        return self


class PromoCodeUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: Optional[str] = Field(None, min_length=3, max_length=50)
    discount_percent: Optional[Decimal] = Field(None, alias="discountPercent", ge=0, le=100)
    discount_amount: Optional[Decimal] = Field(None, alias="discountAmount", ge=0)
    min_purchase: Optional[Decimal] = Field(None, alias="minPurchase", ge=0)
    max_uses: Optional[int] = Field(None, alias="maxUses", ge=1)
    valid_from: Optional[datetime] = Field(None, alias="validFrom")
    valid_until: Optional[datetime] = Field(None, alias="validUntil")
    is_active: Optional[bool] = Field(None, alias="isActive")

    @field_validator("code", mode="before")
    @classmethod
    def _upper_case_code(cls, value):
        return _normalize_promo_code(value)


class PromoCodeOut(BaseModel):
    id: int
    code: str
    discount_percent: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
    min_purchase: Optional[Decimal] = None
    max_uses: Optional[int] = None
    used_count: int
    valid_from: datetime
    valid_until: Optional[datetime] = None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class PromoCodeDeleteResponse(BaseModel):
    success: bool = True
    deleted: str


# -----------------------------
# Webhook
# -----------------------------


class WebhookResponse(BaseModel):
    received: bool = True
    warning: Optional[str] = None


# -----------------------------
# Admin
# -----------------------------


class RefundOrderRequest(BaseModel):
    # Book the items back into stock as RETURN movements.
    restock: bool = False
    reason: Optional[str] = Field(None, max_length=255)


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    price: Decimal = Field(..., gt=0, le=Decimal("100000"))
    stock: int = Field(0, ge=0)
    description: Optional[str] = Field(None, max_length=5000)
    image: Optional[str] = Field(None, max_length=500)
    category: Optional[str] = Field(None, max_length=50)


class ProductOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    image: Optional[str] = None
    category: Optional[str] = None
    price: Decimal
    stock: int

    model_config = ConfigDict(from_attributes=True)


class LedgerReconciliationOut(BaseModel):
    product_id: int
    stock: int
    ledger_total: int
    consistent: bool
