"""Pytest fixtures: in-memory SQLite, FastAPI dependency overrides, fake payment gateway."""

import dataclasses
import datetime as dt
import os
from decimal import Decimal

# Must be in place before storefront reads its settings.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["NOTIFICATIONS_ENABLED"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storefront.auth import create_access_token
from storefront.config import Settings, get_settings
from storefront.database import get_db
from storefront.main import app
from storefront.models import Base, PromoCode
from storefront.payments import PaymentSession, get_payment_gateway
from storefront.rate_limit import RateLimiter, get_rate_limiter
from storefront.stock_ledger import create_product

WEBHOOK_SECRET = "whsec_test_secret"
PROMO_START = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)


@pytest.fixture
def settings() -> Settings:
    return dataclasses.replace(
        Settings.from_env(),
        secret_key="test-secret-key",
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret=WEBHOOK_SECRET,
        notifications_enabled=False,
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


class FakeClock:
    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock) -> RateLimiter:
    return RateLimiter(clock=clock)


class FakeGateway:
    """Records checkout sessions instead of calling Stripe."""

    def __init__(self) -> None:
        self.sessions = []

    def create_checkout_session(self, **kwargs) -> PaymentSession:
        self.sessions.append(kwargs)
        session_id = f"cs_test_{len(self.sessions)}"
        return PaymentSession(id=session_id, url=f"https://checkout.stripe.test/pay/{session_id}")

    def construct_event(self, payload, sig_header):
        raise AssertionError("webhook tests use the real gateway")


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def client(session_factory, settings, limiter, gateway):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    # No context manager: the startup hook would create tables on the real DATABASE_URL.
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_token(settings):
    def _make(user_id: str = "42", email: str = "buyer@example.com", is_admin: bool = False) -> str:
        return create_access_token({"sub": user_id, "email": email, "is_admin": is_admin}, settings=settings)

    return _make


@pytest.fixture
def user_headers(make_token):
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
def admin_headers(make_token):
    return {"Authorization": f"Bearer {make_token(user_id='1', email='admin@example.com', is_admin=True)}"}


@pytest.fixture
def products(db):
    """Three products: plenty, scarce, sold out."""

    return {
        "mug": create_product(db, name="Coffee Mug", price=Decimal("12.50"), initial_stock=20, category="kitchen"),
        "lamp": create_product(db, name="Desk Lamp", price=Decimal("40.00"), initial_stock=2, category="office"),
        "poster": create_product(db, name="Poster", price=Decimal("8.00"), initial_stock=0, category="decor"),
    }


@pytest.fixture
def promo_codes(db):
    codes = {
        "SAVE10": PromoCode(code="SAVE10", discount_percent=Decimal("10")),
        "FIVER": PromoCode(code="FIVER", discount_amount=Decimal("5.00")),
        "BIG200": PromoCode(code="BIG200", discount_amount=Decimal("200.00")),
        "ONCE": PromoCode(code="ONCE", discount_percent=Decimal("15"), max_uses=1),
        "MIN50": PromoCode(code="MIN50", discount_amount=Decimal("10.00"), min_purchase=Decimal("50.00")),
        "OFF": PromoCode(code="OFF", discount_percent=Decimal("20"), is_active=False),
    }
    for promo in codes.values():
        promo.valid_from = PROMO_START
    db.add_all(codes.values())
    db.commit()
    return codes
