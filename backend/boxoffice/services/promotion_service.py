# Overview: Service-layer operations for promotion codes; encapsulates business logic and database work.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from ..extensions import db
from ..errors import (
    ForbiddenError,
    NotFoundError,
    PromotionExhaustedError,
    PromotionExpiredError,
    PromotionInvalidError,
    ValidationError,
)
from ..models import Event, Order, Promotion, User
from ..models.promotions import DISCOUNT_FIXED, DISCOUNT_PERCENTAGE, VALID_DISCOUNT_TYPES
from boxoffice.time_utils import utcnow
from .concurrency import compare_and_set, run_with_retry


BASIS_POINTS = 10000


@dataclass(frozen=True)
class Redemption:
    promotion_id: int
    discount_cents: int


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def compute_discount(discount_type: str, discount_value: int, subtotal_cents: int) -> int:
    """
    Discount in cents for a subtotal.

    PERCENTAGE values are basis points (1000 = 10%), rounded half-up to the
    cent. FIXED values are cents. The result is always within [0, subtotal].
    """
    if subtotal_cents <= 0 or discount_value <= 0:
        return 0

    if discount_type == DISCOUNT_PERCENTAGE:
        discount = (subtotal_cents * discount_value + BASIS_POINTS // 2) // BASIS_POINTS
    elif discount_type == DISCOUNT_FIXED:
        discount = discount_value
    else:
        raise ValidationError(f"Unknown discount type: {discount_type}")

    return max(0, min(discount, subtotal_cents))


# =============================================================================
# REDEEM / RELEASE
# =============================================================================

def _validate_promotion(code: str, event_id: int, now: datetime | None = None) -> Promotion:
    """
    Look up an active promotion for an event and check its window and usage.

    Order of checks: exists+active -> window -> usage.
    """
    now = now or utcnow()
    normalized = normalize_code(code)

    promo = db.session.query(Promotion).filter_by(code=normalized, event_id=event_id).first()
    if promo is None or not promo.is_active:
        raise PromotionInvalidError(
            "Invalid promotion code",
            details={"code": normalized},
        )

    if (promo.starts_at is not None and now < promo.starts_at) or (
        promo.ends_at is not None and now > promo.ends_at
    ):
        raise PromotionExpiredError(
            "Promotion code is not valid at this time",
            details={"code": normalized},
        )

    if promo.max_uses is not None and promo.used >= promo.max_uses:
        raise PromotionExhaustedError(
            "Promotion code has reached its usage limit",
            details={"code": normalized, "max_uses": promo.max_uses},
        )

    return promo


def redeem(code: str, event_id: int, subtotal_cents: int, *, now: datetime | None = None) -> Redemption:
    """
    Validate a promotion code and consume one use of it.

    Runs inside the caller's transaction; a rollback gives the use back.
    The increment is a guarded UPDATE, so `used` never passes `max_uses`
    even when two orders redeem the last use at the same time.
    """
    promo = _validate_promotion(code, event_id, now)

    consumed = compare_and_set(
        Promotion,
        promo.id,
        db.or_(Promotion.max_uses.is_(None), Promotion.used < Promotion.max_uses),
        used=Promotion.used + 1,
    )
    if not consumed:
        raise PromotionExhaustedError(
            "Promotion code has reached its usage limit",
            details={"code": promo.code, "max_uses": promo.max_uses},
        )

    return Redemption(
        promotion_id=promo.id,
        discount_cents=compute_discount(promo.discount_type, promo.discount_value, subtotal_cents),
    )


def release(code: str, *, order_id: int) -> bool:
    """
    Give back the promotion use consumed by an order, at most once.

    Runs inside the caller's transaction. Returns False when the order has no
    promotion or its use was already given back.
    """
    promo = db.session.query(Promotion).filter_by(code=normalize_code(code)).first()
    if promo is None:
        return False

    claimed = compare_and_set(
        Order,
        order_id,
        Order.promotion_id == promo.id,
        Order.promotion_released.is_(False),
        promotion_released=True,
    )
    if not claimed:
        return False

    compare_and_set(
        Promotion,
        promo.id,
        Promotion.used > 0,
        used=Promotion.used - 1,
    )
    return True


def preview_discount(code: str, event_id: int, subtotal_cents: int, *, now: datetime | None = None) -> dict:
    """Validate a code and compute its discount without consuming a use."""
    if subtotal_cents is None or subtotal_cents < 0:
        raise ValidationError("subtotal_cents must be >= 0")

    promo = _validate_promotion(code, event_id, now)
    discount = compute_discount(promo.discount_type, promo.discount_value, subtotal_cents)
    return {
        "code": promo.code,
        "discount_type": promo.discount_type,
        "discount_value": promo.discount_value,
        "subtotal_cents": subtotal_cents,
        "discount_amount_cents": discount,
        "total_amount_cents": subtotal_cents - discount,
    }


# =============================================================================
# PROMOTION MAINTENANCE (organizer)
# =============================================================================

PROMOTION_WRITABLE_FIELDS = (
    "code",
    "description",
    "discount_type",
    "discount_value",
    "max_uses",
    "starts_at",
    "ends_at",
    "is_active",
)


def _ensure_can_manage(event: Event, actor: User) -> None:
    if actor.is_admin:
        return
    if event.organizer_id != actor.id:
        raise ForbiddenError("Only the event organizer can manage its promotions")


def _validate_promotion_fields(promo: Promotion) -> None:
    if not promo.code:
        raise ValidationError("code is required")
    if promo.discount_type not in VALID_DISCOUNT_TYPES:
        raise ValidationError(
            f"discount_type must be one of: {', '.join(VALID_DISCOUNT_TYPES)}"
        )
    if promo.discount_value is None or promo.discount_value < 0:
        raise ValidationError("discount_value must be >= 0")
    if promo.discount_type == DISCOUNT_PERCENTAGE and promo.discount_value > BASIS_POINTS:
        raise ValidationError("percentage discount_value is in basis points and cannot exceed 10000")
    if promo.max_uses is not None and promo.max_uses < (promo.used or 0):
        raise ValidationError(
            "max_uses cannot be lower than uses already redeemed",
            details={"used": promo.used},
        )
    if promo.starts_at is not None and promo.ends_at is not None and promo.ends_at <= promo.starts_at:
        raise ValidationError("ends_at must be after starts_at")


def _ensure_code_available(code: str, promotion_id: int | None = None) -> None:
    with db.session.no_autoflush:
        q = db.session.query(Promotion.id).filter(Promotion.code == code)
        if promotion_id is not None:
            q = q.filter(Promotion.id != promotion_id)
        existing = q.first()
    if existing is not None:
        raise ValidationError(f"Promotion code {code} already exists")


def create_promotion(event_id: int, data: dict, actor: User) -> Promotion:
    def _op():
        event = db.session.get(Event, event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")
        _ensure_can_manage(event, actor)

        promo = Promotion(event_id=event_id, used=0, is_active=True)
        for key in PROMOTION_WRITABLE_FIELDS:
            if key in data:
                setattr(promo, key, data[key])
        promo.code = normalize_code(promo.code)

        _validate_promotion_fields(promo)
        _ensure_code_available(promo.code)

        db.session.add(promo)
        db.session.commit()
        return promo

    return run_with_retry(_op)


def update_promotion(promotion_id: int, data: dict, actor: User) -> Promotion:
    """
    Patch a promotion.

    A bounded `max_uses` is applied with a guarded UPDATE so a concurrent
    redemption can never leave used above max_uses.
    """
    def _op():
        promo = db.session.get(Promotion, promotion_id)
        if promo is None:
            raise NotFoundError(f"Promotion {promotion_id} not found")
        _ensure_can_manage(promo.event, actor)

        new_max_uses = data.get("max_uses")
        for key in PROMOTION_WRITABLE_FIELDS:
            if key in data and not (key == "max_uses" and new_max_uses is not None):
                setattr(promo, key, data[key])
        promo.code = normalize_code(promo.code)

        _validate_promotion_fields(promo)
        _ensure_code_available(promo.code, promotion_id=promo.id)

        if new_max_uses is not None:
            if new_max_uses < 1:
                raise ValidationError("max_uses must be >= 1 or null")
            applied = compare_and_set(
                Promotion,
                promo.id,
                Promotion.used <= new_max_uses,
                max_uses=new_max_uses,
            )
            if not applied:
                raise ValidationError(
                    "max_uses cannot be lower than uses already redeemed",
                    details={"used": promo.used},
                )

        db.session.commit()
        return promo

    return run_with_retry(_op)


def list_promotions(event_id: int, actor: User, active_only: bool = False) -> list[Promotion]:
    event = db.session.get(Event, event_id)
    if event is None:
        raise NotFoundError(f"Event {event_id} not found")
    _ensure_can_manage(event, actor)

    q = db.session.query(Promotion).filter_by(event_id=event_id)
    if active_only:
        q = q.filter_by(is_active=True)
    return q.order_by(Promotion.created_at.desc(), Promotion.id.desc()).all()
