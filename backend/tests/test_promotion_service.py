"""
Promotion engine tests.

Verifies:
- discount math (basis points, half-up rounding, clamped to the subtotal)
- validation order: invalid -> expired -> exhausted
- redeem never pushes `used` past max_uses
- release gives a use back at most once per order
"""

from datetime import timedelta

import pytest
from sqlalchemy import text

from boxoffice.errors import (
    ForbiddenError,
    PromotionExhaustedError,
    PromotionExpiredError,
    PromotionInvalidError,
    ValidationError,
)
from boxoffice.extensions import db
from boxoffice.models.promotions import DISCOUNT_FIXED, DISCOUNT_PERCENTAGE
from boxoffice.services import order_service, promotion_service
from boxoffice.time_utils import utcnow


# =============================================================================
# DISCOUNT MATH
# =============================================================================


class TestComputeDiscount:
    def test_ten_percent(self):
        assert promotion_service.compute_discount(DISCOUNT_PERCENTAGE, 1000, 50000) == 5000

    @pytest.mark.parametrize(
        "bps,subtotal,expected",
        [
            (1250, 333, 42),    # 41.625 -> 42
            (5000, 333, 167),   # 166.5 rounds half-up
            (1000, 4, 0),       # 0.4 -> 0
            (10000, 999, 999),
        ],
    )
    def test_percentage_rounds_half_up(self, bps, subtotal, expected):
        assert promotion_service.compute_discount(DISCOUNT_PERCENTAGE, bps, subtotal) == expected

    def test_fixed_discount_clamped_to_subtotal(self):
        assert promotion_service.compute_discount(DISCOUNT_FIXED, 10000, 4000) == 4000

    def test_fixed_discount_below_subtotal(self):
        assert promotion_service.compute_discount(DISCOUNT_FIXED, 1500, 4000) == 1500

    def test_zero_subtotal(self):
        assert promotion_service.compute_discount(DISCOUNT_FIXED, 1500, 0) == 0

    def test_unknown_type(self):
        with pytest.raises(ValidationError):
            promotion_service.compute_discount("bogo", 1, 100)


# =============================================================================
# VALIDATION / PREVIEW
# =============================================================================


class TestPreview:
    def test_preview_does_not_consume(self, make_promotion, event):
        promo = make_promotion(event)

        preview = promotion_service.preview_discount("save10", event.id, 50000)

        assert preview["code"] == "SAVE10"
        assert preview["discount_amount_cents"] == 5000
        assert preview["total_amount_cents"] == 45000
        assert promo.used == 0

    def test_unknown_code(self, event):
        with pytest.raises(PromotionInvalidError):
            promotion_service.preview_discount("NOPE", event.id, 100)

    def test_inactive_code_is_invalid(self, make_promotion, event):
        make_promotion(event, is_active=False)

        with pytest.raises(PromotionInvalidError):
            promotion_service.preview_discount("SAVE10", event.id, 100)

    def test_code_of_other_event_is_invalid(self, make_promotion, make_event, event, organizer):
        make_promotion(event)
        other = make_event(organizer, title="Other")

        with pytest.raises(PromotionInvalidError):
            promotion_service.preview_discount("SAVE10", other.id, 100)

    def test_expired_window(self, make_promotion, event):
        make_promotion(event, ends_at=utcnow() - timedelta(days=1))

        with pytest.raises(PromotionExpiredError):
            promotion_service.preview_discount("SAVE10", event.id, 100)

    def test_not_started_window(self, make_promotion, event):
        make_promotion(event, starts_at=utcnow() + timedelta(days=1))

        with pytest.raises(PromotionExpiredError):
            promotion_service.preview_discount("SAVE10", event.id, 100)

    def test_expired_reported_before_exhausted(self, make_promotion, event):
        make_promotion(event, ends_at=utcnow() - timedelta(days=1), max_uses=1, used=1)

        with pytest.raises(PromotionExpiredError):
            promotion_service.preview_discount("SAVE10", event.id, 100)

    def test_negative_subtotal(self, make_promotion, event):
        make_promotion(event)

        with pytest.raises(ValidationError):
            promotion_service.preview_discount("SAVE10", event.id, -1)


# =============================================================================
# REDEEM / RELEASE
# =============================================================================


class TestRedeem:
    def test_redeem_consumes_one_use(self, make_promotion, event):
        promo = make_promotion(event, max_uses=2)

        redemption = promotion_service.redeem("SAVE10", event.id, 50000)
        db.session.commit()

        assert redemption.promotion_id == promo.id
        assert redemption.discount_cents == 5000
        assert promo.used == 1

    def test_redeem_last_use_then_exhausted(self, make_promotion, event):
        promo = make_promotion(event, max_uses=1)

        promotion_service.redeem("SAVE10", event.id, 100)
        db.session.commit()

        with pytest.raises(PromotionExhaustedError):
            promotion_service.redeem("SAVE10", event.id, 100)
        db.session.rollback()

        assert promo.used == 1

    def test_unlimited_uses(self, make_promotion, event):
        promo = make_promotion(event, max_uses=None, used=500)

        promotion_service.redeem("SAVE10", event.id, 100)
        db.session.commit()

        assert promo.used == 501

    def test_rollback_gives_use_back(self, make_promotion, event):
        promo = make_promotion(event, max_uses=1)

        promotion_service.redeem("SAVE10", event.id, 100)
        db.session.rollback()

        assert promo.used == 0


class TestRelease:
    def test_cancel_releases_use_once(self, make_promotion, ticket_type, event, attendee, billing):
        promo = make_promotion(event, max_uses=5)
        order = order_service.create_order(
            attendee.id,
            event.id,
            [{"ticket_type_id": ticket_type.id, "quantity": 1}],
            promotion_code="save10",
            billing=billing,
        )
        assert promo.used == 1

        order_service.cancel_order(order.id, attendee)
        assert promo.used == 0

        assert promotion_service.release("SAVE10", order_id=order.id) is False
        db.session.commit()
        assert promo.used == 0

    def test_release_without_promotion_is_noop(self, ticket_type, event, attendee, billing, make_promotion):
        make_promotion(event)
        order = order_service.create_order(
            attendee.id, event.id, [{"ticket_type_id": ticket_type.id, "quantity": 1}], billing=billing
        )

        assert promotion_service.release("SAVE10", order_id=order.id) is False


# =============================================================================
# MAINTENANCE
# =============================================================================


class TestPromotionMaintenance:
    def test_create_normalizes_code(self, event, organizer):
        promo = promotion_service.create_promotion(
            event.id,
            {"code": " early-bird ", "discount_type": DISCOUNT_FIXED, "discount_value": 2500},
            organizer,
        )

        assert promo.code == "EARLY-BIRD"
        assert promo.used == 0
        assert promo.is_active is True

    def test_duplicate_code_rejected(self, make_promotion, event, organizer):
        make_promotion(event)

        with pytest.raises(ValidationError):
            promotion_service.create_promotion(
                event.id,
                {"code": "save10", "discount_type": DISCOUNT_FIXED, "discount_value": 100},
                organizer,
            )

    def test_percentage_above_100_rejected(self, event, organizer):
        with pytest.raises(ValidationError):
            promotion_service.create_promotion(
                event.id,
                {"code": "FREE", "discount_type": DISCOUNT_PERCENTAGE, "discount_value": 10001},
                organizer,
            )

    def test_max_uses_below_used_rejected(self, make_promotion, event, organizer):
        promo = make_promotion(event, max_uses=10, used=4)

        with pytest.raises(ValidationError):
            promotion_service.update_promotion(promo.id, {"max_uses": 3}, organizer)

    def test_max_uses_checked_against_committed_redemptions(self, make_promotion, event, organizer):
        promo = make_promotion(event, max_uses=10, used=2)
        assert promo.used == 2
        # Redemptions land behind the loaded instance, which still says used=2.
        db.session.execute(text("UPDATE promotions SET used = 5 WHERE id = :id"), {"id": promo.id})

        with pytest.raises(ValidationError):
            promotion_service.update_promotion(promo.id, {"max_uses": 3}, organizer)

        db.session.refresh(promo)
        assert promo.max_uses == 10

    def test_max_uses_raised_and_cleared(self, make_promotion, event, organizer):
        promo = make_promotion(event, max_uses=2, used=2)

        assert promotion_service.update_promotion(promo.id, {"max_uses": 5}, organizer).max_uses == 5
        assert promotion_service.update_promotion(promo.id, {"max_uses": None}, organizer).max_uses is None

    def test_update_deactivates(self, make_promotion, event, organizer):
        promo = make_promotion(event)

        updated = promotion_service.update_promotion(promo.id, {"is_active": False}, organizer)

        assert updated.is_active is False

    def test_other_organizer_forbidden(self, make_promotion, event, make_user):
        promo = make_promotion(event)
        stranger = make_user("organizer")

        with pytest.raises(ForbiddenError):
            promotion_service.update_promotion(promo.id, {"is_active": False}, stranger)

    def test_list_active_only(self, make_promotion, event, organizer):
        make_promotion(event, code="A")
        make_promotion(event, code="B", is_active=False)

        codes = [p.code for p in promotion_service.list_promotions(event.id, organizer, active_only=True)]

        assert codes == ["A"]
