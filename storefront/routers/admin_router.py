import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import schemas
from ..auth import get_current_admin
from ..database import get_db
from ..dependencies import http_error, rate_limited
from ..errors import InsufficientStockError, PromoCodeNotFoundError, StorefrontError, ValidationError
from ..models import OrderStatus, StockMovementType
from ..orders import list_orders, mark_order_delivered, mark_order_shipped, refund_order
from ..promo import (
    create_promo_code,
    delete_promo_code,
    get_promo_code_by_id,
    list_promo_codes,
    update_promo_code,
)
from ..stock_ledger import (
    DEFAULT_THRESHOLDS,
    adjust_stock,
    create_product,
    get_low_stock_products,
    get_product,
    get_recent_stock_movements,
    get_stock_history,
    get_stock_stats,
    reconcile_ledger,
    record_movement,
    record_restock,
)

logger = logging.getLogger(__name__)

# Admin check runs before the rate limit; anonymous callers never consume a bucket.
router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(get_current_admin), Depends(rate_limited("admin"))],
)


# -----------------------------
# Stock
# -----------------------------


@router.get("/stock", response_model=schemas.StockOverviewResponse)
def stock_overview(
    movements_limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
):
    """
    Inventory dashboard: totals, alert lists, latest movements and the thresholds used.
    """
    stats = get_stock_stats(db)
    low = get_low_stock_products(db)
    out_of_stock = [p for p in low if p.stock <= DEFAULT_THRESHOLDS.out_of_stock]

    return {
        "stats": {
            "total_products": stats.total_products,
            "total_units": stats.total_units,
            "stock_value": stats.total_value,
            "out_of_stock_count": stats.out_of_stock,
            "critical_count": stats.critical,
            "low_stock_count": stats.low,
            "healthy_count": stats.healthy,
        },
        "alerts": {
            "out_of_stock": out_of_stock,
            "low_stock": [p for p in low if p.stock > DEFAULT_THRESHOLDS.out_of_stock],
        },
        "movements": get_recent_stock_movements(db, limit=movements_limit),
        "thresholds": {
            "out_of_stock": DEFAULT_THRESHOLDS.out_of_stock,
            "critical": DEFAULT_THRESHOLDS.critical,
            "low": DEFAULT_THRESHOLDS.low,
        },
    }


@router.patch("/stock", response_model=schemas.StockAdjustResponse)
def update_stock(
    body: schemas.StockAdjustRequest,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    """
    Change a product's stock (Admin only).

    - set: absolute value after a manual count
    - add: goods received (quantity > 0)
    - adjust: signed correction; may not take stock below zero
    """
    actor_id = current_admin["id"]
    try:
        if body.action == "set":
            movement, product = adjust_stock(
                db, body.product_id, body.quantity, body.reason or "Manual stock count", actor_id=actor_id
            )
        elif body.action == "add":
            movement, product = record_restock(
                db, body.product_id, body.quantity, reason=body.reason or "Restock", actor_id=actor_id
            )
        else:
            if body.quantity == 0:
                raise ValidationError("quantity must not be 0")
            try:
                movement, product = record_movement(
                    db,
                    body.product_id,
                    body.quantity,
                    StockMovementType.ADJUSTMENT,
                    reason=body.reason or "Manual adjustment",
                    actor_id=actor_id,
                )
            except InsufficientStockError as e:
                raise ValidationError("stock cannot go below zero", details={"available": e.available})
    except StorefrontError as e:
        raise http_error(e)

    logger.info("admin %s changed stock of product %s (%s)", actor_id, product.id, body.action)
    return {
        "product": {
            "id": product.id,
            "name": product.name,
            "previous_stock": movement.stock_before,
            "new_stock": movement.stock_after,
            "change": movement.quantity,
        },
        "history": movement,
    }


@router.get("/stock/history", response_model=List[schemas.StockMovementOut])
def stock_history(
    product_id: int = Query(..., gt=0),
    movement_type: Optional[StockMovementType] = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    if get_product(db, product_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "product_not_found", "message": "Product not found", "productId": product_id},
        )
    return list(get_stock_history(db, product_id, movement_type=movement_type, limit=limit))


@router.get("/stock/{product_id}/reconcile", response_model=schemas.LedgerReconciliationOut)
def stock_reconcile(product_id: int, db: Session = Depends(get_db)):
    try:
        result = reconcile_ledger(db, product_id)
    except StorefrontError as e:
        raise http_error(e)
    if not result.consistent:
        logger.error(
            "ledger mismatch for product %s: stock=%d ledger=%d", product_id, result.stock, result.ledger_total
        )
    return {
        "product_id": result.product_id,
        "stock": result.stock,
        "ledger_total": result.ledger_total,
        "consistent": result.consistent,
    }


@router.post("/products", response_model=schemas.ProductOut, status_code=status.HTTP_201_CREATED)
def create_product_admin(
    body: schemas.ProductCreate,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    try:
        return create_product(
            db,
            name=body.name,
            price=body.price,
            initial_stock=body.stock,
            description=body.description,
            image=body.image,
            category=body.category,
            actor_id=current_admin["id"],
        )
    except StorefrontError as e:
        raise http_error(e)


# -----------------------------
# Orders
# -----------------------------


@router.get("/orders", response_model=List[schemas.OrderOut])
def list_all_orders(
    order_status: Optional[OrderStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return list_orders(db, status=order_status, skip=skip, limit=limit)


@router.post("/orders/{order_id}/ship", response_model=schemas.OrderOut)
def ship_order(order_id: str, body: schemas.ShipOrderRequest, db: Session = Depends(get_db)):
    try:
        return mark_order_shipped(db, order_id, body.tracking_number, body.carrier)
    except StorefrontError as e:
        raise http_error(e)


@router.post("/orders/{order_id}/deliver", response_model=schemas.OrderOut)
def deliver_order(order_id: str, db: Session = Depends(get_db)):
    try:
        return mark_order_delivered(db, order_id)
    except StorefrontError as e:
        raise http_error(e)


@router.post("/orders/{order_id}/refund", response_model=schemas.OrderOut)
def refund_order_admin(
    order_id: str,
    body: Optional[schemas.RefundOrderRequest] = Body(None),
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    """
    Mark an order refunded. With restock=true every line is booked back as a RETURN,
    once; repeating the call leaves stock alone.
    """
    body = body or schemas.RefundOrderRequest()
    try:
        transition = refund_order(
            db, order_id, restock=body.restock, reason=body.reason, actor_id=current_admin["id"]
        )
    except StorefrontError as e:
        raise http_error(e)

    if not transition.changed:
        logger.info("order %s already refunded, nothing restocked", order_id)
    return transition.order


# -----------------------------
# Promo codes
# -----------------------------


@router.get("/promo", response_model=List[schemas.PromoCodeOut])
def list_promo_codes_admin(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return list_promo_codes(db, skip=skip, limit=limit)


@router.post("/promo", response_model=schemas.PromoCodeOut, status_code=status.HTTP_201_CREATED)
def create_promo_code_admin(body: schemas.PromoCodeCreate, db: Session = Depends(get_db)):
    try:
        return create_promo_code(db, body.model_dump())
    except StorefrontError as e:
        raise http_error(e)


@router.get("/promo/{promo_id}", response_model=schemas.PromoCodeOut)
def get_promo_code_admin(promo_id: int, db: Session = Depends(get_db)):
    db_promo = get_promo_code_by_id(db, promo_id)
    if db_promo is None:
        raise http_error(PromoCodeNotFoundError(promo_id))
    return db_promo


@router.patch("/promo/{promo_id}", response_model=schemas.PromoCodeOut)
def update_promo_code_admin(promo_id: int, body: schemas.PromoCodeUpdate, db: Session = Depends(get_db)):
    """
    Partial update. Only the fields sent are written; send null to clear an
    expiry, a minimum or a usage cap.
    """
    try:
        return update_promo_code(db, promo_id, body.model_dump(exclude_unset=True))
    except StorefrontError as e:
        raise http_error(e)


@router.delete("/promo/{promo_id}", response_model=schemas.PromoCodeDeleteResponse)
def delete_promo_code_admin(promo_id: int, db: Session = Depends(get_db)):
    try:
        code = delete_promo_code(db, promo_id)
    except StorefrontError as e:
        raise http_error(e)
    return {"success": True, "deleted": code}
