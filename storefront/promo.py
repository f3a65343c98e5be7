"""
Promo code re-validation and redemption.

Codes are case-insensitive: they are stored upper-case and every lookup
normalises its input the same way. Validation is pure (promo row + subtotal +
clock); redemption is a single conditional UPDATE so the usage cap holds even
when several orders complete at the same time. Staff manage codes through the
create/update/delete helpers at the bottom, which normalise the code on write.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, List, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import DuplicatePromoCodeError, PromoCodeNotFoundError, ValidationError
from .models import PromoCode

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class PromoValidation:
    valid: bool
    code: Optional[str] = None
    reason: Optional[str] = None  # not_found, inactive, not_yet_valid, expired, usage_limit_reached, min_purchase_not_met
    discount_type: Optional[str] = None  # percent, fixed
    discount: Decimal = Decimal("0.00")
    subtotal: Decimal = Decimal("0.00")
    min_purchase: Optional[Decimal] = None

    @property
    def total(self) -> Decimal:
        return (self.subtotal - self.discount).quantize(CENT, rounding=ROUND_HALF_UP)


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _as_utc(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    # Some backends (SQLite) hand timestamps back naive.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def get_promo_code(db: Session, code: Optional[str]) -> Optional[PromoCode]:
    normalized = normalize_code(code)
    if not normalized:
        return None
    return db.query(PromoCode).filter(PromoCode.code == normalized).first()


def compute_discount(promo: PromoCode, subtotal: Decimal) -> Decimal:
    """Percentage wins over a fixed amount; never more than the subtotal."""

    subtotal = Decimal(str(subtotal))
    if promo.discount_percent:
        discount = subtotal * Decimal(str(promo.discount_percent)) / Decimal("100")
    elif promo.discount_amount:
        discount = Decimal(str(promo.discount_amount))
    else:
        discount = Decimal("0")

    discount = min(discount, subtotal)
    return discount.quantize(CENT, rounding=ROUND_HALF_UP)


def validate_promo(
    promo: Optional[PromoCode],
    subtotal: Decimal,
    now: Optional[dt.datetime] = None,
) -> PromoValidation:
    subtotal = to_money(subtotal)
    if promo is None:
        return PromoValidation(valid=False, reason="not_found", subtotal=subtotal)

    now = now or dt.datetime.now(dt.timezone.utc)

    def _reject(reason: str) -> PromoValidation:
        return PromoValidation(
            valid=False,
            code=promo.code,
            reason=reason,
            subtotal=subtotal,
            min_purchase=Decimal(str(promo.min_purchase)) if promo.min_purchase is not None else None,
        )

    if not promo.is_active:
        return _reject("inactive")

    valid_from = _as_utc(promo.valid_from)
    valid_until = _as_utc(promo.valid_until)
    if valid_from is not None and valid_from > now:
        return _reject("not_yet_valid")
    if valid_until is not None and valid_until < now:
        return _reject("expired")

    if promo.max_uses is not None and promo.used_count >= promo.max_uses:
        return _reject("usage_limit_reached")

    if promo.min_purchase is not None and subtotal < Decimal(str(promo.min_purchase)):
        return _reject("min_purchase_not_met")

    return PromoValidation(
        valid=True,
        code=promo.code,
        discount_type="percent" if promo.discount_percent else "fixed",
        discount=compute_discount(promo, subtotal),
        subtotal=subtotal,
        min_purchase=Decimal(str(promo.min_purchase)) if promo.min_purchase is not None else None,
    )


def validate_promo_code(
    db: Session,
    code: Optional[str],
    subtotal: Decimal,
    now: Optional[dt.datetime] = None,
) -> PromoValidation:
    return validate_promo(get_promo_code(db, code), subtotal, now=now)


def redeem_promo_code(db: Session, code: Optional[str]) -> bool:
    """
    Increment used_count by one if the cap allows it.

    Returns False when the code is unknown or already exhausted. The check and the
    increment are a single UPDATE statement.
    """

    normalized = normalize_code(code)
    if not normalized:
        return False

    try:
        updated = (
            db.query(PromoCode)
            .filter(
                PromoCode.code == normalized,
                (PromoCode.max_uses.is_(None)) | (PromoCode.used_count < PromoCode.max_uses),
            )
            .update({PromoCode.used_count: PromoCode.used_count + 1}, synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    if not updated:
        logger.warning("promo code %s not redeemed (unknown or usage cap reached)", normalized)
        return False

    logger.info("promo code %s redeemed", normalized)
    return True


# Columns an update may not null out.
_REQUIRED_COLUMNS = ("code", "valid_from", "is_active")


def get_promo_code_by_id(db: Session, promo_id: int) -> Optional[PromoCode]:
    return db.query(PromoCode).filter(PromoCode.id == promo_id).first()


def list_promo_codes(db: Session, skip: int = 0, limit: int = 100) -> List[PromoCode]:
    return db.query(PromoCode).order_by(PromoCode.id.desc()).offset(skip).limit(limit).all()


def _check_promo_row(promo: PromoCode) -> None:
    if not promo.discount_percent and not promo.discount_amount:
        raise ValidationError("a promo code needs a percentage or a fixed discount")
    if promo.max_uses is not None and promo.used_count > promo.max_uses:
        raise ValidationError(
            "max_uses cannot be lower than the number of redemptions",
            details={"used_count": promo.used_count},
        )


def _ensure_code_free(db: Session, code: str, exclude_id: Optional[int] = None) -> None:
    query = db.query(PromoCode).filter(PromoCode.code == code)
    if exclude_id is not None:
        query = query.filter(PromoCode.id != exclude_id)
    if query.first() is not None:
        raise DuplicatePromoCodeError(code)


def create_promo_code(db: Session, promo_data: Mapping[str, Any]) -> PromoCode:
    """Insert a promo code. The code is stored upper-case whatever the caller sends."""

    data = dict(promo_data)
    code = normalize_code(data.pop("code", None))
    if not code:
        raise ValidationError("code is required")
    _ensure_code_free(db, code)

    for key in _REQUIRED_COLUMNS:
        if key in data and data[key] is None:
            del data[key]
    db_promo = PromoCode(code=code, used_count=0, **data)
    _check_promo_row(db_promo)

    try:
        db.add(db_promo)
        db.commit()
    except IntegrityError:
        # concurrent insert of the same code
        db.rollback()
        raise DuplicatePromoCodeError(code)

    db.refresh(db_promo)
    logger.info("promo code %s created", db_promo.code)
    return db_promo


def update_promo_code(db: Session, promo_id: int, update_data: Mapping[str, Any]) -> PromoCode:
    """
    Apply the given fields. Keys that are present are written, ``None`` included,
    so an expiry or a usage cap can be cleared. ``None`` for code, valid_from or
    is_active is ignored.
    """

    db_promo = get_promo_code_by_id(db, promo_id)
    if db_promo is None:
        raise PromoCodeNotFoundError(promo_id)

    data = dict(update_data)
    for key in _REQUIRED_COLUMNS:
        if key in data and data[key] is None:
            del data[key]
    if "code" in data:
        code = normalize_code(data["code"])
        if not code:
            raise ValidationError("code is required")
        _ensure_code_free(db, code, exclude_id=promo_id)
        data["code"] = code

    try:
        for key, value in data.items():
            setattr(db_promo, key, value)
        _check_promo_row(db_promo)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicatePromoCodeError(data.get("code", db_promo.code))
    except Exception:
        db.rollback()
        raise

    db.refresh(db_promo)
    logger.info("promo code %s updated (%s)", db_promo.code, ", ".join(sorted(data)))
    return db_promo


def delete_promo_code(db: Session, promo_id: int) -> str:
    db_promo = get_promo_code_by_id(db, promo_id)
    if db_promo is None:
        raise PromoCodeNotFoundError(promo_id)

    code = db_promo.code
    db.delete(db_promo)
    db.commit()
    logger.info("promo code %s deleted", code)
    return code


__all__ = [
    "PromoValidation",
    "normalize_code",
    "to_money",
    "get_promo_code",
    "compute_discount",
    "validate_promo",
    "validate_promo_code",
    "redeem_promo_code",
    "get_promo_code_by_id",
    "list_promo_codes",
    "create_promo_code",
    "update_promo_code",
    "delete_promo_code",
]
