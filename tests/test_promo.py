"""Tests for promo code validation, discount math and redemption."""

import datetime as dt
from decimal import Decimal

import pytest

from storefront.models import PromoCode
from storefront.promo import compute_discount, redeem_promo_code, validate_promo, validate_promo_code

NOW = dt.datetime(2025, 6, 1, 12, 0, tzinfo=dt.timezone.utc)


@pytest.mark.parametrize(
    "subtotal,discount,total",
    [
        (Decimal("100.00"), Decimal("10.00"), Decimal("90.00")),
        (Decimal("200.00"), Decimal("20.00"), Decimal("180.00")),
        (Decimal("19.99"), Decimal("2.00"), Decimal("17.99")),
    ],
)
def test_percentage_discount(db, promo_codes, subtotal, discount, total):
    result = validate_promo_code(db, "SAVE10", subtotal, now=NOW)

    assert result.valid
    assert result.discount_type == "percent"
    assert result.discount == discount
    assert result.total == total


def test_fifteen_percent_of_two_hundred(db, promo_codes):
    result = validate_promo_code(db, "ONCE", Decimal("200.00"), now=NOW)

    assert result.valid
    assert result.discount == Decimal("30.00")
    assert result.total == Decimal("170.00")


def test_percent_rounds_half_up_to_cents():
    promo = PromoCode(code="P15", discount_percent=Decimal("15"))

    # 15% of 0.30 is 0.045
    assert compute_discount(promo, Decimal("0.30")) == Decimal("0.05")


def test_fixed_discount_is_clamped_to_subtotal(db, promo_codes):
    result = validate_promo_code(db, "BIG200", Decimal("100.00"), now=NOW)

    assert result.valid
    assert result.discount_type == "fixed"
    assert result.discount == Decimal("100.00")
    assert result.total == Decimal("0.00")


def test_percentage_wins_over_fixed_amount():
    promo = PromoCode(code="BOTH", discount_percent=Decimal("30"), discount_amount=Decimal("5.00"))

    assert compute_discount(promo, Decimal("200.00")) == Decimal("60.00")


def test_codes_are_case_insensitive(db, promo_codes):
    result = validate_promo_code(db, "  save10 ", Decimal("50.00"), now=NOW)

    assert result.valid
    assert result.code == "SAVE10"


def test_unknown_code(db, promo_codes):
    result = validate_promo_code(db, "NOPE", Decimal("50.00"), now=NOW)

    assert result.valid is False
    assert result.reason == "not_found"


def test_inactive_code(db, promo_codes):
    assert validate_promo_code(db, "OFF", Decimal("50.00"), now=NOW).reason == "inactive"


def test_validity_window():
    promo = PromoCode(
        code="SUMMER",
        discount_percent=Decimal("10"),
        used_count=0,
        is_active=True,
        valid_from=dt.datetime(2025, 6, 10, tzinfo=dt.timezone.utc),
        valid_until=dt.datetime(2025, 8, 31, tzinfo=dt.timezone.utc),
    )

    assert validate_promo(promo, Decimal("10"), now=NOW).reason == "not_yet_valid"
    assert validate_promo(promo, Decimal("10"), now=dt.datetime(2025, 9, 1, tzinfo=dt.timezone.utc)).reason == "expired"
    assert validate_promo(promo, Decimal("10"), now=dt.datetime(2025, 7, 1, tzinfo=dt.timezone.utc)).valid


def test_naive_timestamps_are_treated_as_utc():
    promo = PromoCode(
        code="NAIVE",
        discount_amount=Decimal("1.00"),
        used_count=0,
        is_active=True,
        valid_from=dt.datetime(2025, 1, 1),
        valid_until=dt.datetime(2025, 6, 1, 11, 0),
    )

    assert validate_promo(promo, Decimal("10"), now=NOW).reason == "expired"


def test_minimum_purchase(db, promo_codes):
    below = validate_promo_code(db, "MIN50", Decimal("49.99"), now=NOW)
    at = validate_promo_code(db, "MIN50", Decimal("50.00"), now=NOW)

    assert below.reason == "min_purchase_not_met"
    assert below.min_purchase == Decimal("50.00")
    assert at.valid
    assert at.discount == Decimal("10.00")


def test_redeem_increments_until_cap(db, promo_codes):
    assert redeem_promo_code(db, "once") is True
    assert redeem_promo_code(db, "ONCE") is False

    db.expire_all()
    promo = db.query(PromoCode).filter(PromoCode.code == "ONCE").one()
    assert promo.used_count == 1
    assert validate_promo(promo, Decimal("100.00"), now=NOW).reason == "usage_limit_reached"


def test_redeem_without_cap_keeps_counting(db, promo_codes):
    for _ in range(3):
        assert redeem_promo_code(db, "SAVE10")

    db.expire_all()
    assert db.query(PromoCode).filter(PromoCode.code == "SAVE10").one().used_count == 3


def test_redeem_unknown_or_empty_code(db, promo_codes):
    assert redeem_promo_code(db, "NOPE") is False
    assert redeem_promo_code(db, None) is False
