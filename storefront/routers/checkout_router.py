import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from .. import schemas
from ..auth import get_current_user
from ..checkout import start_checkout
from ..database import get_db
from ..dependencies import http_error, internal_error, rate_limited
from ..errors import ConfigurationError, StorefrontError
from ..payments import StripeGateway, get_payment_gateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Checkout"])


@router.post("/checkout", response_model=schemas.CheckoutResponse)
def create_checkout(
    body: schemas.CheckoutRequest,
    current_user: Dict = Depends(get_current_user),
    _rate: object = Depends(rate_limited("checkout")),
    gateway: StripeGateway = Depends(get_payment_gateway),
    db: Session = Depends(get_db),
):
    """Create a Stripe Checkout session for the cart and a pending order behind it.

    Prices come from the product table; the client's prices are ignored.
    """

    try:
        result = start_checkout(db, gateway, body, current_user)
        return schemas.CheckoutResponse(url=result.url, order_id=result.order_id)
    except ConfigurationError:
        logger.exception("checkout failed: payment provider not configured")
        raise internal_error()
    except StorefrontError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception:
        logger.exception("checkout failed for user %s", current_user.get("id"))
        raise internal_error()
