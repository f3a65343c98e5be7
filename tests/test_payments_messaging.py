"""Tests for the Stripe gateway wrapper and order.paid publishing."""

import dataclasses
import hashlib
import hmac
import json
import time
from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

from storefront import messaging
from storefront.errors import ConfigurationError, SignatureError
from storefront.orders import create_order
from storefront.payments import LineItem, StripeGateway, to_minor_units


@pytest.mark.parametrize(
    "amount,minor",
    [(Decimal("12.50"), 1250), (Decimal("0.005"), 1), (Decimal("19.994"), 1999), (Decimal("0"), 0)],
)
def test_to_minor_units(amount, minor):
    assert to_minor_units(amount) == minor


@pytest.fixture
def stripe_calls(monkeypatch):
    calls = {"sessions": [], "coupons": []}

    def _create_session(**params):
        calls["sessions"].append(params)
        return SimpleNamespace(id="cs_test_abc", url="https://checkout.stripe.com/c/pay/cs_test_abc")

    def _create_coupon(**params):
        calls["coupons"].append(params)
        return SimpleNamespace(id="coupon_1")

    monkeypatch.setattr(stripe.checkout.Session, "create", _create_session)
    monkeypatch.setattr(stripe.Coupon, "create", _create_coupon)
    return calls


def test_checkout_session_params(settings, stripe_calls):
    gateway = StripeGateway(settings)

    session = gateway.create_checkout_session(
        line_items=[LineItem(name="Coffee Mug", unit_amount=Decimal("12.50"), quantity=2, image="https://img/mug.png")],
        customer_email="buyer@example.com",
        metadata={"order_id": "o-1"},
        client_reference_id="o-1",
    )

    assert session.id == "cs_test_abc"
    params = stripe_calls["sessions"][0]
    assert params["mode"] == "payment"
    assert params["line_items"] == [
        {
            "price_data": {
                "currency": settings.stripe_currency,
                "product_data": {"name": "Coffee Mug", "images": ["https://img/mug.png"]},
                "unit_amount": 1250,
            },
            "quantity": 2,
        }
    ]
    assert params["metadata"] == {"order_id": "o-1"}
    assert params["client_reference_id"] == "o-1"
    assert "discounts" not in params
    assert stripe_calls["coupons"] == []


def test_discount_becomes_single_use_coupon(settings, stripe_calls):
    StripeGateway(settings).create_checkout_session(
        line_items=[LineItem(name="Lamp", unit_amount=Decimal("40.00"), quantity=1)],
        customer_email=None,
        metadata={},
        discount=Decimal("4.00"),
        discount_label="Promo SAVE10",
    )

    coupon = stripe_calls["coupons"][0]
    assert coupon["amount_off"] == 400
    assert coupon["max_redemptions"] == 1
    assert coupon["name"] == "Promo SAVE10"
    assert stripe_calls["sessions"][0]["discounts"] == [{"coupon": "coupon_1"}]
    assert "customer_email" not in stripe_calls["sessions"][0]


def test_missing_secret_key_is_a_configuration_error(settings, stripe_calls):
    gateway = StripeGateway(dataclasses.replace(settings, stripe_secret_key=""))

    with pytest.raises(ConfigurationError):
        gateway.create_checkout_session(line_items=[], customer_email=None, metadata={})
    assert stripe_calls["sessions"] == []


def test_construct_event_requires_header(settings):
    with pytest.raises(SignatureError):
        StripeGateway(settings).construct_event(b"{}", None)


def test_order_paid_payload(db, products):
    mug = products["mug"]
    order = create_order(
        db,
        "cs_msg",
        [{"product_id": mug.id, "product_name": mug.name, "quantity": 2, "price": mug.price}],
        Decimal("25.00"),
        customer_email="buyer@example.com",
        customer_id="42",
    )

    payload = messaging.order_paid_payload(order)

    assert payload["event"] == "order.paid"
    assert payload["order_id"] == order.id
    assert payload["payment_ref"] == "cs_msg"
    assert payload["total_amount"] == "25.00"
    assert payload["items"] == [{"product_id": mug.id, "name": "Coffee Mug", "quantity": 2, "price": "12.50"}]
    assert payload["occurred_at"].endswith("Z")


class _FakeChannel:
    def __init__(self):
        self.declared = []
        self.published = []

    def exchange_declare(self, **kwargs):
        self.declared.append(kwargs)

    def basic_publish(self, **kwargs):
        self.published.append(kwargs)


class _FakeConnection:
    def __init__(self):
        self.ch = _FakeChannel()
        self.closed = False

    def channel(self):
        return self.ch

    def close(self):
        self.closed = True


def test_publish_event_uses_topic_exchange(settings, monkeypatch):
    connection = _FakeConnection()
    monkeypatch.setattr(messaging, "_connect", lambda s: connection)

    messaging.publish_event("order.paid", {"order_id": "o-1", "total": Decimal("9.90")}, settings)

    assert connection.ch.declared == [{"exchange": settings.events_exchange, "exchange_type": "topic", "durable": True}]
    published = connection.ch.published[0]
    assert published["routing_key"] == "order.paid"
    assert json.loads(published["body"]) == {"order_id": "o-1", "total": "9.90"}
    assert published["properties"].delivery_mode == 2
    assert connection.closed


def test_publish_safely_swallows_broker_errors(settings, monkeypatch):
    def _unreachable(s):
        raise OSError("broker unreachable")

    monkeypatch.setattr(messaging, "get_settings", lambda: dataclasses.replace(settings, notifications_enabled=True))
    monkeypatch.setattr(messaging, "_connect", _unreachable)

    messaging.publish_event_safely("order.paid", {"order_id": "o-1"})


def test_publish_safely_respects_disabled_notifications(settings, monkeypatch):
    def _must_not_connect(s):
        raise AssertionError("should not connect")

    monkeypatch.setattr(messaging, "get_settings", lambda: settings)
    monkeypatch.setattr(messaging, "_connect", _must_not_connect)

    messaging.publish_event_safely("order.paid", {"order_id": "o-1"})


def test_construct_event_returns_the_verified_event_as_plain_dicts(settings):
    body = {
        "id": "evt_1",
        "object": "event",
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_test_abc", "object": "checkout.session", "metadata": {"order_id": "o-1"}}},
    }
    payload = json.dumps(body).encode("utf-8")
    timestamp = int(time.time())
    signature = hmac.new(
        settings.stripe_webhook_secret.encode("utf-8"), f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8"), hashlib.sha256
    ).hexdigest()

    event = StripeGateway(settings).construct_event(payload, f"t={timestamp},v1={signature}")

    assert type(event) is dict
    assert type(event["data"]["object"]) is dict
    assert event["type"] == "checkout.session.completed"
    assert event["data"]["object"]["metadata"] == {"order_id": "o-1"}
