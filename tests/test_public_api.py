"""Tests for the promo preview, order lookup and service endpoints."""

from datetime import timedelta
from decimal import Decimal

from storefront.auth import create_access_token
from storefront.orders import create_order


def test_root_and_health(client):
    assert client.get("/").json()["status"] == "running"
    assert client.get("/health").json() == {"status": "healthy", "service": "storefront"}


def test_promo_preview(client, promo_codes):
    response = client.post("/promo/validate", json={"code": "save10", "cartTotal": 200})

    assert response.status_code == 200
    data = response.json()
    assert data["valid"] is True
    assert data["code"] == "SAVE10"
    assert data["discount_type"] == "percent"
    assert Decimal(data["discount_amount"]) == Decimal("20.00")
    assert Decimal(data["new_total"]) == Decimal("180.00")


def test_promo_preview_fixed_amount_is_clamped(client, promo_codes):
    data = client.post("/promo/validate", json={"code": "BIG200", "cartTotal": "100.00"}).json()

    assert Decimal(data["discount_amount"]) == Decimal("100.00")
    assert Decimal(data["new_total"]) == Decimal("0.00")


def test_promo_preview_unknown_code_is_404(client, promo_codes):
    response = client.post("/promo/validate", json={"code": "NOPE", "cartTotal": 10})

    assert response.status_code == 404
    assert response.json()["detail"]["valid"] is False


def test_promo_preview_rejections(client, promo_codes):
    below = client.post("/promo/validate", json={"code": "MIN50", "cartTotal": 20})
    inactive = client.post("/promo/validate", json={"code": "OFF", "cartTotal": 20})
    bad = client.post("/promo/validate", json={"code": "SAVE10", "cartTotal": 0})

    assert below.status_code == 400
    assert below.json()["detail"]["reason"] == "min_purchase_not_met"
    assert below.json()["detail"]["min_purchase"] == "50.00"
    assert inactive.json()["detail"]["reason"] == "inactive"
    assert bad.status_code == 400


def _order(db, products, customer_id):
    mug = products["mug"]
    return create_order(
        db,
        f"cs_lookup_{customer_id}",
        [{"product_id": mug.id, "product_name": mug.name, "quantity": 1, "price": mug.price}],
        Decimal("12.50"),
        customer_email="buyer@example.com",
        customer_id=customer_id,
    )


def test_owner_can_read_order_by_session(client, db, products, user_headers):
    order = _order(db, products, "42")

    response = client.get("/orders/cs_lookup_42", headers=user_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["id"] == order.id
    assert data["status"] == "pending"
    assert data["items"][0]["product_name"] == "Coffee Mug"


def test_other_customers_get_404(client, db, products, make_token):
    _order(db, products, "42")
    stranger = {"Authorization": f"Bearer {make_token(user_id='99')}"}

    assert client.get("/orders/cs_lookup_42", headers=stranger).status_code == 404


def test_admin_can_read_any_order(client, db, products, admin_headers):
    _order(db, products, "42")

    assert client.get("/orders/cs_lookup_42", headers=admin_headers).status_code == 200


def test_unknown_session_is_404(client, user_headers):
    response = client.get("/orders/cs_unknown", headers=user_headers)

    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "order_not_found"


def test_expired_token_is_401(client, settings):
    token = create_access_token({"sub": "42"}, settings=settings, expires_delta=timedelta(minutes=-1))

    assert client.get("/orders/cs_any", headers={"Authorization": f"Bearer {token}"}).status_code == 401
