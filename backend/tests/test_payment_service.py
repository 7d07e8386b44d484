"""
Payment reconciliation tests.

Verifies:
- a provider outage leaves the order pending and inventory reserved
- each provider outcome is applied exactly once per transaction
- failed payments release holds; late successes are flagged for refund
- webhook authentication (HMAC-SHA256 over the raw body)
- refunds release holds and record the provider reference
- a refund claim admits one caller; flagged late payments can be returned
"""

import json
from datetime import timedelta

import httpx
import pytest

from boxoffice.errors import (
    DuplicateWebhookError,
    ForbiddenError,
    NotFoundError,
    OrderNotPendingError,
    PaymentProviderError,
    ValidationError,
    WebhookRejectedError,
)
from boxoffice.extensions import db
from boxoffice.models import Order, PaymentTransaction
from boxoffice.models.orders import (
    CHECK_IN_CANCELLED,
    ORDER_CANCELLED,
    ORDER_COMPLETED,
    ORDER_FAILED,
    ORDER_PENDING,
    ORDER_REFUNDED,
)
from boxoffice.models.payments import (
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    PAYMENT_REFUNDING,
    PROVIDER_CHAPA,
    PROVIDER_MANUAL,
)
from boxoffice.services import order_service, payment_gateways, payment_service
from boxoffice.services.payment_gateways import ChapaGateway, compute_signature
from boxoffice.time_utils import utcnow

from conftest import WEBHOOK_SECRET


CHECKOUT_URL = "https://checkout.chapa.test/pay/abc123"


def _webhook_body(tx_ref, event=payment_gateways.CHAPA_EVENT_COMPLETED):
    return json.dumps({"event": event, "data": {"tx_ref": tx_ref, "status": "success"}}).encode()


def _deliver(tx_ref, event=payment_gateways.CHAPA_EVENT_COMPLETED):
    body = _webhook_body(tx_ref, event)
    return payment_service.handle_webhook(PROVIDER_CHAPA, body, compute_signature(WEBHOOK_SECRET, body))


@pytest.fixture
def chapa_ok(monkeypatch):
    """Chapa answers every initialize/refund successfully."""
    monkeypatch.setattr(ChapaGateway, "initialize", lambda self, **kwargs: CHECKOUT_URL)
    monkeypatch.setattr(ChapaGateway, "refund", lambda self, tx_ref, amount_cents, reason=None: "REF-CHAPA001")


@pytest.fixture
def pending_order(ticket_type, event, attendee, billing):
    return order_service.create_order(
        attendee.id, event.id, [{"ticket_type_id": ticket_type.id, "quantity": 2}], billing=billing
    )


@pytest.fixture
def chapa_attempt(chapa_ok, pending_order, attendee):
    return payment_service.initiate_payment(pending_order.id, attendee, "chapa").transaction


@pytest.fixture
def paid_order(chapa_attempt, pending_order):
    _deliver(chapa_attempt.transaction_id)
    return db.session.get(Order, pending_order.id)


# =============================================================================
# INITIATION
# =============================================================================


class TestInitiatePayment:
    def test_chapa_returns_checkout_url(self, chapa_ok, pending_order, attendee):
        initiation = payment_service.initiate_payment(pending_order.id, attendee, "chapa")

        payload = initiation.to_dict()
        assert payload["redirect_url"] == CHECKOUT_URL
        assert payload["transaction_reference"].startswith("TX-")
        assert payload["status"] == PAYMENT_PENDING
        assert initiation.transaction.checkout_url == CHECKOUT_URL
        assert initiation.transaction.amount_cents == pending_order.total_amount_cents

    def test_provider_outage_keeps_order_pending(self, monkeypatch, pending_order, attendee, ticket_type):
        def _down(self, **kwargs):
            raise PaymentProviderError("Payment provider is unavailable")

        monkeypatch.setattr(ChapaGateway, "initialize", _down)

        with pytest.raises(PaymentProviderError) as exc:
            payment_service.initiate_payment(pending_order.id, attendee, "chapa")

        assert exc.value.retryable is True
        assert db.session.get(Order, pending_order.id).status == ORDER_PENDING
        assert ticket_type.sold == 2
        attempt = db.session.query(PaymentTransaction).filter_by(order_id=pending_order.id).one()
        assert attempt.status == PAYMENT_FAILED

    def test_retry_after_outage(self, monkeypatch, pending_order, attendee):
        def _down(self, **kwargs):
            raise PaymentProviderError("Payment provider is unavailable")

        monkeypatch.setattr(ChapaGateway, "initialize", _down)
        with pytest.raises(PaymentProviderError):
            payment_service.initiate_payment(pending_order.id, attendee, "chapa")

        monkeypatch.setattr(ChapaGateway, "initialize", lambda self, **kwargs: CHECKOUT_URL)
        initiation = payment_service.initiate_payment(pending_order.id, attendee, "chapa")

        assert initiation.redirect_url == CHECKOUT_URL
        assert len(pending_order.payment_transactions) == 2

    def test_manual_method_returns_instructions(self, pending_order, attendee):
        initiation = payment_service.initiate_payment(pending_order.id, attendee, "bank_transfer")

        assert initiation.transaction.provider == PROVIDER_MANUAL
        assert initiation.transaction.transaction_id.startswith("MAN-")
        assert initiation.instructions["order_reference"] == pending_order.reference
        assert initiation.instructions["amount"] == "1000.00"
        assert "account_number" in initiation.instructions

    def test_unknown_method(self, pending_order, attendee):
        with pytest.raises(ValidationError):
            payment_service.initiate_payment(pending_order.id, attendee, "cash")

    def test_only_buyer_may_pay(self, chapa_ok, pending_order, make_user):
        with pytest.raises(ForbiddenError):
            payment_service.initiate_payment(pending_order.id, make_user(), "chapa")

    def test_cancelled_order_cannot_be_paid(self, chapa_ok, pending_order, attendee):
        order_service.cancel_order(pending_order.id, attendee)

        with pytest.raises(OrderNotPendingError):
            payment_service.initiate_payment(pending_order.id, attendee, "chapa")


# =============================================================================
# WEBHOOKS
# =============================================================================


class TestWebhook:
    def test_success_completes_order(self, chapa_attempt, pending_order):
        txn = _deliver(chapa_attempt.transaction_id)

        assert txn.status == PAYMENT_COMPLETED
        order = db.session.get(Order, pending_order.id)
        assert order.status == ORDER_COMPLETED
        assert order.completed_at is not None
        assert order.payment_method == "chapa"

    def test_failure_fails_order_and_releases(self, chapa_attempt, pending_order, ticket_type):
        txn = _deliver(chapa_attempt.transaction_id, payment_gateways.CHAPA_EVENT_FAILED)

        assert txn.status == PAYMENT_FAILED
        order = db.session.get(Order, pending_order.id)
        assert order.status == ORDER_FAILED
        assert ticket_type.sold == 0
        assert all(item.check_in_status == CHECK_IN_CANCELLED for item in order.items)

    def test_duplicate_delivery_applied_once(self, chapa_attempt, pending_order, ticket_type):
        _deliver(chapa_attempt.transaction_id, payment_gateways.CHAPA_EVENT_FAILED)

        with pytest.raises(DuplicateWebhookError):
            _deliver(chapa_attempt.transaction_id, payment_gateways.CHAPA_EVENT_FAILED)

        assert ticket_type.sold == 0
        assert db.session.get(Order, pending_order.id).status == ORDER_FAILED

    def test_conflicting_second_outcome_ignored(self, chapa_attempt, pending_order):
        _deliver(chapa_attempt.transaction_id)

        with pytest.raises(DuplicateWebhookError):
            _deliver(chapa_attempt.transaction_id, payment_gateways.CHAPA_EVENT_FAILED)

        assert db.session.get(Order, pending_order.id).status == ORDER_COMPLETED

    def test_bad_signature(self, chapa_attempt, pending_order):
        body = _webhook_body(chapa_attempt.transaction_id)

        with pytest.raises(WebhookRejectedError) as exc:
            payment_service.handle_webhook(PROVIDER_CHAPA, body, "deadbeef")

        assert exc.value.status_code == 401
        assert db.session.get(Order, pending_order.id).status == ORDER_PENDING

    def test_missing_signature(self, chapa_attempt):
        with pytest.raises(WebhookRejectedError) as exc:
            payment_service.handle_webhook(PROVIDER_CHAPA, _webhook_body(chapa_attempt.transaction_id), None)

        assert exc.value.status_code == 401

    def test_malformed_body(self, db_session):
        body = b"not-json"

        with pytest.raises(WebhookRejectedError) as exc:
            payment_service.handle_webhook(PROVIDER_CHAPA, body, compute_signature(WEBHOOK_SECRET, body))

        assert exc.value.status_code == 400

    def test_missing_tx_ref(self, db_session):
        body = json.dumps({"event": "charge.completed", "data": {}}).encode()

        with pytest.raises(WebhookRejectedError):
            payment_service.handle_webhook(PROVIDER_CHAPA, body, compute_signature(WEBHOOK_SECRET, body))

    def test_unknown_event_ignored(self, chapa_attempt):
        assert _deliver(chapa_attempt.transaction_id, "charge.refunded") is None
        assert db.session.get(PaymentTransaction, chapa_attempt.id).status == PAYMENT_PENDING

    def test_unknown_transaction_ignored(self, db_session):
        assert _deliver("TX-UNKNOWN1") is None

    def test_late_success_flags_refund(self, chapa_attempt, pending_order, attendee, ticket_type):
        order_service.cancel_order(pending_order.id, attendee)

        txn = _deliver(chapa_attempt.transaction_id)

        assert txn.status == PAYMENT_COMPLETED
        assert txn.details["requires_refund"] is True
        assert db.session.get(Order, pending_order.id).status == ORDER_CANCELLED
        assert ticket_type.sold == 0


# =============================================================================
# CALLBACK
# =============================================================================


class TestCallback:
    def test_callback_uses_server_verification(self, monkeypatch, chapa_attempt, pending_order):
        monkeypatch.setattr(
            ChapaGateway, "verify",
            lambda self, tx_ref: {"succeeded": True, "data": {"tx_ref": tx_ref, "status": "success"}},
        )

        txn = payment_service.handle_callback(PROVIDER_CHAPA, chapa_attempt.transaction_id)

        assert txn.status == PAYMENT_COMPLETED
        assert txn.details["verification"]["status"] == "success"
        assert db.session.get(Order, pending_order.id).status == ORDER_COMPLETED

    def test_callback_after_webhook_is_duplicate(self, monkeypatch, chapa_attempt):
        monkeypatch.setattr(ChapaGateway, "verify", lambda self, tx_ref: {"succeeded": True, "data": {}})
        _deliver(chapa_attempt.transaction_id)

        with pytest.raises(DuplicateWebhookError):
            payment_service.handle_callback(PROVIDER_CHAPA, chapa_attempt.transaction_id)

    def test_callback_unknown_reference(self, db_session):
        with pytest.raises(NotFoundError):
            payment_service.handle_callback(PROVIDER_CHAPA, "TX-MISSING0")

    def test_callback_requires_reference(self, db_session):
        with pytest.raises(ValidationError):
            payment_service.handle_callback(PROVIDER_CHAPA, None)


# =============================================================================
# MANUAL VERIFICATION
# =============================================================================


class TestManualVerification:
    def test_organizer_confirms_transfer(self, pending_order, attendee, organizer):
        attempt = payment_service.initiate_payment(pending_order.id, attendee, "mobile_money").transaction

        txn = payment_service.verify_manual_payment(attempt.transaction_id, organizer, note="Receipt 42")

        assert txn.status == PAYMENT_COMPLETED
        assert txn.details["verified_by_user_id"] == organizer.id
        assert db.session.get(Order, pending_order.id).status == ORDER_COMPLETED

    def test_rejected_transfer_releases(self, pending_order, attendee, organizer, ticket_type):
        attempt = payment_service.initiate_payment(pending_order.id, attendee, "bank_transfer").transaction

        payment_service.verify_manual_payment(attempt.transaction_id, organizer, succeeded=False)

        assert db.session.get(Order, pending_order.id).status == ORDER_FAILED
        assert ticket_type.sold == 0

    def test_buyer_cannot_confirm_own_payment(self, pending_order, attendee):
        attempt = payment_service.initiate_payment(pending_order.id, attendee, "bank_transfer").transaction

        with pytest.raises(ForbiddenError):
            payment_service.verify_manual_payment(attempt.transaction_id, attendee)

    def test_second_verification_is_duplicate(self, pending_order, attendee, organizer):
        attempt = payment_service.initiate_payment(pending_order.id, attendee, "bank_transfer").transaction
        payment_service.verify_manual_payment(attempt.transaction_id, organizer)

        with pytest.raises(DuplicateWebhookError):
            payment_service.verify_manual_payment(attempt.transaction_id, organizer)


# =============================================================================
# REFUNDS
# =============================================================================


class TestRefund:
    def test_full_refund_releases_holds(self, paid_order, organizer, ticket_type):
        order = payment_service.refund_order(paid_order.id, organizer, reason="Event moved")

        assert order.status == ORDER_REFUNDED
        assert order.refund_amount_cents == order.total_amount_cents
        assert ticket_type.sold == 0
        txn = order.payment_transactions[0]
        assert txn.status == PAYMENT_REFUNDED
        assert txn.refund_reference == "REF-CHAPA001"

    def test_partial_refund_amount_recorded(self, paid_order, organizer):
        order = payment_service.refund_order(paid_order.id, organizer, amount_cents=25000)

        assert order.refund_amount_cents == 25000

    def test_refund_above_total_rejected(self, paid_order, organizer):
        with pytest.raises(ValidationError):
            payment_service.refund_order(paid_order.id, organizer, amount_cents=paid_order.total_amount_cents + 1)

    def test_pending_order_cannot_be_refunded(self, pending_order, organizer):
        with pytest.raises(OrderNotPendingError):
            payment_service.refund_order(pending_order.id, organizer)

    def test_attendee_cannot_refund(self, paid_order, attendee):
        with pytest.raises(ForbiddenError):
            payment_service.refund_order(paid_order.id, attendee)

    def test_provider_refusal_changes_nothing(self, monkeypatch, paid_order, organizer, ticket_type):
        def _refuse(self, tx_ref, amount_cents, reason=None):
            raise PaymentProviderError("Refund was not accepted")

        monkeypatch.setattr(ChapaGateway, "refund", _refuse)

        with pytest.raises(PaymentProviderError):
            payment_service.refund_order(paid_order.id, organizer)

        assert db.session.get(Order, paid_order.id).status == ORDER_COMPLETED
        assert ticket_type.sold == 2
        assert paid_order.payment_transactions[0].status == PAYMENT_COMPLETED

    def test_refund_after_event_date_rejected(self, paid_order, organizer, event, ticket_type):
        event.event_date = utcnow() - timedelta(hours=1)
        db.session.commit()

        with pytest.raises(ValidationError):
            payment_service.refund_order(paid_order.id, organizer)

        assert db.session.get(Order, paid_order.id).status == ORDER_COMPLETED
        assert ticket_type.sold == 2

    def test_refund_in_progress_does_not_call_provider(self, monkeypatch, paid_order, organizer, ticket_type):
        calls = []
        monkeypatch.setattr(
            ChapaGateway, "refund",
            lambda self, tx_ref, amount_cents, reason=None: calls.append(tx_ref) or "REF-CHAPA002",
        )
        txn = paid_order.payment_transactions[0]
        txn.status = PAYMENT_REFUNDING
        db.session.commit()

        with pytest.raises(OrderNotPendingError):
            payment_service.refund_order(paid_order.id, organizer)

        assert calls == []
        assert db.session.get(Order, paid_order.id).status == ORDER_COMPLETED
        assert ticket_type.sold == 2

    def test_second_refund_rejected(self, paid_order, organizer):
        payment_service.refund_order(paid_order.id, organizer)

        with pytest.raises(OrderNotPendingError):
            payment_service.refund_order(paid_order.id, organizer)

    def test_manual_refund_gets_local_reference(self, pending_order, attendee, organizer):
        attempt = payment_service.initiate_payment(pending_order.id, attendee, "bank_transfer").transaction
        payment_service.verify_manual_payment(attempt.transaction_id, organizer)

        order = payment_service.refund_order(pending_order.id, organizer)

        assert order.payment_transactions[0].refund_reference.startswith("REF-")


# =============================================================================
# FLAGGED LATE PAYMENTS
# =============================================================================


@pytest.fixture
def flagged_attempt(chapa_attempt, pending_order, attendee):
    order_service.cancel_order(pending_order.id, attendee)
    return _deliver(chapa_attempt.transaction_id)


class TestFlaggedRefund:
    def test_listed_for_admin(self, flagged_attempt, admin):
        flagged = payment_service.list_flagged_payments(admin)

        assert [txn.id for txn in flagged] == [flagged_attempt.id]

    def test_organizer_cannot_list_or_refund(self, flagged_attempt, organizer):
        with pytest.raises(ForbiddenError):
            payment_service.list_flagged_payments(organizer)
        with pytest.raises(ForbiddenError):
            payment_service.refund_flagged_payment(PROVIDER_CHAPA, flagged_attempt.transaction_id, organizer)

    def test_refund_returns_full_amount(self, flagged_attempt, admin, pending_order):
        txn = payment_service.refund_flagged_payment(PROVIDER_CHAPA, flagged_attempt.transaction_id, admin)

        assert txn.status == PAYMENT_REFUNDED
        assert txn.refund_reference == "REF-CHAPA001"
        assert txn.refunded_amount_cents == txn.amount_cents
        assert db.session.get(Order, pending_order.id).status == ORDER_CANCELLED
        assert payment_service.list_flagged_payments(admin) == []

    def test_refund_twice_rejected(self, flagged_attempt, admin):
        payment_service.refund_flagged_payment(PROVIDER_CHAPA, flagged_attempt.transaction_id, admin)

        with pytest.raises(OrderNotPendingError):
            payment_service.refund_flagged_payment(PROVIDER_CHAPA, flagged_attempt.transaction_id, admin)

    def test_unflagged_payment_rejected(self, paid_order, admin):
        tx_ref = paid_order.payment_transactions[0].transaction_id

        with pytest.raises(ValidationError):
            payment_service.refund_flagged_payment(PROVIDER_CHAPA, tx_ref, admin)

    def test_provider_refusal_keeps_flag(self, monkeypatch, flagged_attempt, admin):
        def _refuse(self, tx_ref, amount_cents, reason=None):
            raise PaymentProviderError("Refund was not accepted")

        monkeypatch.setattr(ChapaGateway, "refund", _refuse)

        with pytest.raises(PaymentProviderError):
            payment_service.refund_flagged_payment(PROVIDER_CHAPA, flagged_attempt.transaction_id, admin)

        assert [txn.id for txn in payment_service.list_flagged_payments(admin)] == [flagged_attempt.id]


# =============================================================================
# CHAPA GATEWAY (HTTP layer)
# =============================================================================


def _gateway_with(monkeypatch, handler):
    gateway = ChapaGateway("sk-test", "https://chapa.test", webhook_secret=WEBHOOK_SECRET)
    monkeypatch.setattr(
        gateway,
        "_client",
        lambda: httpx.Client(base_url=gateway.base_url, transport=httpx.MockTransport(handler)),
    )
    return gateway


class TestChapaGateway:
    def test_initialize_sends_major_units(self, monkeypatch):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"status": "success", "data": {"checkout_url": CHECKOUT_URL}})

        gateway = _gateway_with(monkeypatch, handler)
        url = gateway.initialize(
            tx_ref="TX-1", amount_cents=45050, currency="ETB", email="a@b.c",
            first_name="A", last_name="B", title="Addis Jazz Night 2026", description="Tickets",
        )

        assert url == CHECKOUT_URL
        assert seen["path"] == "/v1/transaction/initialize"
        assert seen["body"]["amount"] == "450.50"
        assert len(seen["body"]["title"]) <= 16

    def test_http_error_becomes_provider_error(self, monkeypatch):
        gateway = _gateway_with(monkeypatch, lambda request: httpx.Response(503))

        with pytest.raises(PaymentProviderError) as exc:
            gateway.verify("TX-1")

        assert exc.value.details["status_code"] == 503

    def test_transport_error_becomes_provider_error(self, monkeypatch):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        gateway = _gateway_with(monkeypatch, handler)

        with pytest.raises(PaymentProviderError):
            gateway.refund("TX-1", 100)

    def test_verify_outcomes(self, monkeypatch):
        statuses = iter(["success", "failed", "pending"])

        def handler(request):
            return httpx.Response(200, json={"status": "success", "data": {"status": next(statuses)}})

        gateway = _gateway_with(monkeypatch, handler)

        assert gateway.verify("TX-1")["succeeded"] is True
        assert gateway.verify("TX-1")["succeeded"] is False
        with pytest.raises(PaymentProviderError):
            gateway.verify("TX-1")

    def test_unconfigured_key(self):
        with pytest.raises(PaymentProviderError):
            ChapaGateway("").verify("TX-1")

    def test_signature_check(self):
        gateway = ChapaGateway("sk-test", webhook_secret=WEBHOOK_SECRET)
        body = b'{"event":"charge.completed"}'

        assert gateway.verify_webhook_signature(body, compute_signature(WEBHOOK_SECRET, body))
        assert not gateway.verify_webhook_signature(body + b" ", compute_signature(WEBHOOK_SECRET, body))
        assert not gateway.verify_webhook_signature(body, None)

    def test_format_amount(self):
        assert payment_gateways.format_amount(4500) == "45.00"
        assert payment_gateways.format_amount(7) == "0.07"
