from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..dependencies import rate_limited
from ..promo import validate_promo_code

router = APIRouter(prefix="/promo", tags=["Promo codes"])

_REASON_MESSAGES = {
    "not_found": "Invalid promo code",
    "inactive": "This promo code is no longer active",
    "not_yet_valid": "This promo code is not valid yet",
    "expired": "This promo code has expired",
    "usage_limit_reached": "This promo code has reached its usage limit",
    "min_purchase_not_met": "Minimum purchase not reached for this promo code",
}


@router.post("/validate", response_model=schemas.PromoValidateResponse)
def validate_promo(
    body: schemas.PromoValidateRequest,
    _rate: object = Depends(rate_limited("api")),
    db: Session = Depends(get_db),
):
    """Preview the discount a code would give on a cart total. Nothing is redeemed."""

    result = validate_promo_code(db, body.code, body.cart_total)
    if not result.valid:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND if result.reason == "not_found" else status.HTTP_400_BAD_REQUEST,
            detail={
                "valid": False,
                "reason": result.reason,
                "message": _REASON_MESSAGES.get(result.reason, "Invalid promo code"),
                "min_purchase": str(result.min_purchase) if result.min_purchase is not None else None,
            },
        )

    return schemas.PromoValidateResponse(
        valid=True,
        code=result.code,
        discount_type=result.discount_type,
        discount_amount=result.discount,
        new_total=result.total,
        min_purchase=result.min_purchase,
    )
