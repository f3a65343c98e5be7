import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..dependencies import http_error, internal_error
from ..errors import ConfigurationError, SignatureError
from ..messaging import order_paid_payload, publish_event_safely
from ..models import Order
from ..payments import StripeGateway, get_payment_gateway
from ..webhook import handle_event

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Webhook"])


@router.post("/webhook", response_model=schemas.WebhookResponse, response_model_exclude_none=True, include_in_schema=False)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    gateway: StripeGateway = Depends(get_payment_gateway),
    db: Session = Depends(get_db),
):
    """Stripe webhook endpoint.

    Configure this URL in Stripe (or via stripe-cli) and set STRIPE_WEBHOOK_SECRET.
    """

    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        event = await run_in_threadpool(gateway.construct_event, payload, sig_header)
    except SignatureError as e:
        logger.warning("webhook rejected: %s", e)
        raise http_error(e)
    except ConfigurationError:
        logger.error("webhook rejected: STRIPE_WEBHOOK_SECRET is not configured")
        raise http_error(ConfigurationError("webhook secret missing"))

    def _notify(order: Order) -> None:
        # Built now, while the session is open; published after the response.
        background_tasks.add_task(publish_event_safely, "order.paid", order_paid_payload(order))

    try:
        # Row locks and the session are blocking; keep them off the event loop.
        return await run_in_threadpool(handle_event, db, event, on_paid=_notify)
    except HTTPException:
        raise
    except Exception:
        # 500 makes Stripe re-deliver the event later.
        logger.exception("webhook %s (%s) failed", event.get("type"), event.get("id"))
        raise internal_error()
