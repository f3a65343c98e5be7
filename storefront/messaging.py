from __future__ import annotations

import datetime as dt
import json
import logging
from typing import Any, Dict

import pika

from .config import Settings, get_settings
from .models import Order

logger = logging.getLogger(__name__)


def _connect(settings: Settings) -> pika.BlockingConnection:
    params = pika.URLParameters(settings.rabbitmq_url)
    params.heartbeat = 30
    params.blocked_connection_timeout = 30
    return pika.BlockingConnection(params)


def publish_event(routing_key: str, payload: dict, settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    connection = _connect(settings)
    try:
        ch = connection.channel()
        ch.exchange_declare(exchange=settings.events_exchange, exchange_type="topic", durable=True)
        body = json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")
        ch.basic_publish(
            exchange=settings.events_exchange,
            routing_key=routing_key,
            body=body,
            properties=pika.BasicProperties(
                content_type="application/json",
                delivery_mode=2,  # persistent
            ),
        )
    finally:
        connection.close()


def publish_event_safely(routing_key: str, payload: dict) -> None:
    """Fire-and-forget publish: failures are logged and never reach the caller."""

    settings = get_settings()
    if not settings.notifications_enabled:
        logger.info("notifications disabled, %s not published", routing_key)
        return
    try:
        publish_event(routing_key, payload, settings)
    except Exception:
        logger.exception("failed to publish %s event", routing_key)


def order_paid_payload(order: Order) -> Dict[str, Any]:
    return {
        "event": "order.paid",
        "occurred_at": dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z"),
        "order_id": order.id,
        "payment_ref": order.external_payment_ref,
        "customer_id": order.customer_id,
        "customer_email": order.customer_email,
        "total_amount": str(order.total_amount),
        "discount_amount": str(order.discount_amount),
        "promo_code": order.promo_code,
        "items": [
            {
                "product_id": i.product_id,
                "name": i.product_name,
                "quantity": i.quantity,
                "price": str(i.price),
            }
            for i in order.items
        ],
    }
