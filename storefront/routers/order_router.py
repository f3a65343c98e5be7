from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import schemas
from ..auth import get_current_user
from ..database import get_db
from ..dependencies import rate_limited
from ..orders import get_order_by_payment_ref

router = APIRouter(
    prefix="/orders",
    tags=["Orders"],
)


@router.get("/{external_payment_ref}", response_model=schemas.OrderOut)
def get_order_by_session(
    external_payment_ref: str,
    current_user: Dict = Depends(get_current_user),
    _rate: object = Depends(rate_limited("api")),
    db: Session = Depends(get_db),
):
    """Look an order up by its payment session id (the success page has nothing else).

    Customers only see their own orders; admins see all of them.
    """

    db_order = get_order_by_payment_ref(db, external_payment_ref)
    if db_order is None or (
        not current_user.get("is_admin") and db_order.customer_id != current_user["id"]
    ):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "order_not_found", "message": "Order not found"},
        )
    return db_order
