# Overview: Service-layer operations for payment; encapsulates business logic and database work.

"""
Payment Reconciliation Service

WHY: Money collected must always match tickets issued, even though the
provider reports back asynchronously, possibly twice, possibly late.

DESIGN PRINCIPLES:
- A pending PaymentTransaction is committed before the provider is called,
  so a callback that beats the HTTP response always finds its row.
- Provider outcomes are applied by one idempotent handler keyed by
  (provider, transaction_id). The pending -> completed|failed move is a
  guarded UPDATE; a second delivery finds nothing to move and is reported
  as DuplicateWebhookError.
- A failed payment fails the order and releases its holds. A success that
  arrives after the order died (expiry sweep) is recorded and flagged for
  refund; the order is never revived.
- No provider call happens inside an open write transaction.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

from flask import current_app

from ..extensions import db
from ..errors import (
    DuplicateWebhookError,
    ForbiddenError,
    NotFoundError,
    OrderNotPendingError,
    PaymentProviderError,
    ValidationError,
    WebhookRejectedError,
)
from ..models import Order, PaymentTransaction, User
from ..models.orders import ORDER_COMPLETED, ORDER_FAILED, ORDER_PENDING, ORDER_REFUNDED
from ..models.payments import (
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    PAYMENT_REFUNDING,
    PROVIDER_CHAPA,
    PROVIDER_MANUAL,
)
from boxoffice.time_utils import utcnow
from . import payment_gateways
from .concurrency import compare_and_set, lock_for_update, run_with_retry
from .order_service import get_order, release_order_holds


@dataclass(frozen=True)
class PaymentInitiation:
    transaction: PaymentTransaction
    redirect_url: str | None = None
    instructions: dict | None = None

    def to_dict(self) -> dict:
        data = {
            "transaction_reference": self.transaction.transaction_id,
            "provider": self.transaction.provider,
            "payment_method": self.transaction.payment_method,
            "status": self.transaction.status,
            "order_id": self.transaction.order_id,
        }
        if self.redirect_url:
            data["redirect_url"] = self.redirect_url
        if self.instructions:
            data["instructions"] = self.instructions
        return data


def _can_administer(order: Order, actor: User) -> bool:
    """Event organizer or admin. Attendees cannot confirm or refund their own payments."""
    if actor.is_admin:
        return True
    return order.event is not None and order.event.organizer_id == actor.id


def _split_name(full_name: str) -> tuple[str, str]:
    parts = (full_name or "").strip().split(None, 1)
    if not parts:
        return "Customer", ""
    return parts[0], parts[1] if len(parts) > 1 else ""


# =============================================================================
# INITIATION
# =============================================================================

def initiate_payment(order_id: int, actor: User, payment_method: str) -> PaymentInitiation:
    """
    Start paying for a pending order.

    Raises:
        NotFoundError, ForbiddenError, ValidationError
        OrderNotPendingError: order is no longer pending
        PaymentProviderError: provider unavailable (retryable; order stays pending)
    """
    provider = payment_gateways.provider_for_method(payment_method)
    gateway = payment_gateways.gateway_for(provider)

    def _create_attempt():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if order.user_id != actor.id and not actor.is_admin:
            raise ForbiddenError("Only the buyer can pay for this order")
        if order.status != ORDER_PENDING:
            raise OrderNotPendingError(
                f"Cannot pay for order with status {order.status}",
                details={"order_id": order.id, "status": order.status},
            )

        txn = PaymentTransaction(
            order_id=order.id,
            provider=provider,
            transaction_id=payment_gateways.new_transaction_reference(provider),
            payment_method=payment_method,
            status=PAYMENT_PENDING,
            amount_cents=order.total_amount_cents,
            currency=order.currency,
            details={"order_reference": order.reference},
        )
        order.payment_method = payment_method
        db.session.add(txn)
        db.session.commit()
        return txn

    txn = run_with_retry(_create_attempt)
    order = txn.order

    if provider == PROVIDER_MANUAL:
        instructions = gateway.payment_instructions(
            payment_method,
            tx_ref=txn.transaction_id,
            order_reference=order.reference,
            amount_cents=txn.amount_cents,
            currency=txn.currency,
        )
        return PaymentInitiation(transaction=txn, instructions=instructions)

    first_name, last_name = _split_name(order.billing_name)
    try:
        checkout_url = gateway.initialize(
            tx_ref=txn.transaction_id,
            amount_cents=txn.amount_cents,
            currency=txn.currency,
            email=order.billing_email,
            first_name=first_name,
            last_name=last_name,
            title=order.event.title,
            description=f"Tickets for {order.event.title}",
            meta={"order_id": order.id, "order_reference": order.reference},
        )
    except PaymentProviderError as exc:
        _fail_attempt(txn.id, exc)
        raise

    def _store_checkout_url():
        attempt = db.session.get(PaymentTransaction, txn.id)
        attempt.checkout_url = checkout_url
        db.session.commit()
        return attempt

    txn = run_with_retry(_store_checkout_url)
    return PaymentInitiation(transaction=txn, redirect_url=checkout_url)


def _fail_attempt(txn_id: int, exc: PaymentProviderError) -> None:
    """Mark an attempt failed without touching its order."""
    def _op():
        txn = db.session.get(PaymentTransaction, txn_id)
        details = {**(txn.details or {}), "provider_error": exc.message}
        compare_and_set(
            PaymentTransaction,
            txn_id,
            PaymentTransaction.status == PAYMENT_PENDING,
            status=PAYMENT_FAILED,
            settled_at=utcnow(),
            details=details,
        )
        db.session.commit()

    run_with_retry(_op)
    current_app.logger.warning(
        "Payment initialization failed for transaction %s: %s", txn_id, exc.message
    )


# =============================================================================
# OUTCOME HANDLING (idempotent)
# =============================================================================

def apply_payment_outcome(
    provider: str,
    transaction_id: str,
    succeeded: bool,
    details: dict | None = None,
) -> PaymentTransaction:
    """
    Settle one payment attempt exactly once.

    Raises:
        NotFoundError: unknown (provider, transaction_id)
        DuplicateWebhookError: attempt already settled; nothing re-applied
    """
    def _op():
        txn = (
            db.session.query(PaymentTransaction)
            .filter_by(provider=provider, transaction_id=transaction_id)
            .first()
        )
        if txn is None:
            raise NotFoundError(
                f"Payment transaction {transaction_id} not found",
                details={"provider": provider, "transaction_id": transaction_id},
            )

        now = utcnow()
        merged = {**(txn.details or {}), **(details or {})}
        settled = compare_and_set(
            PaymentTransaction,
            txn.id,
            PaymentTransaction.status == PAYMENT_PENDING,
            status=PAYMENT_COMPLETED if succeeded else PAYMENT_FAILED,
            settled_at=now,
            details=merged,
        )
        if not settled:
            raise DuplicateWebhookError(
                "Payment transaction already settled",
                details={"transaction_id": transaction_id, "status": txn.status},
            )

        order = lock_for_update(db.session.query(Order).filter_by(id=txn.order_id)).first()

        if succeeded:
            completed = compare_and_set(
                Order,
                order.id,
                Order.status == ORDER_PENDING,
                status=ORDER_COMPLETED,
                completed_at=now,
                payment_method=txn.payment_method,
            )
            if not completed:
                txn.details = {**merged, "requires_refund": True}
                current_app.logger.error(
                    "Payment %s succeeded for order %s in status %s; flagged for refund",
                    transaction_id, order.reference, order.status,
                )
        else:
            failed = compare_and_set(
                Order,
                order.id,
                Order.status == ORDER_PENDING,
                status=ORDER_FAILED,
                failed_at=now,
            )
            if failed:
                release_order_holds(order)

        db.session.commit()
        return txn

    return run_with_retry(_op)


def handle_callback(provider: str, tx_ref: str | None) -> PaymentTransaction:
    """
    Browser redirect callback. The redirect itself proves nothing; the
    outcome comes from a server-to-server verify call.
    """
    if provider != PROVIDER_CHAPA:
        raise ValidationError(f"Callbacks are not supported for provider {provider}")
    if not tx_ref:
        raise ValidationError("tx_ref is required")

    get_transaction(provider, tx_ref)

    verification = payment_gateways.gateway_for(provider).verify(tx_ref)
    return apply_payment_outcome(
        provider,
        tx_ref,
        verification["succeeded"],
        {"verification": verification["data"]},
    )


def handle_webhook(provider: str, raw_body: bytes, signature: str | None) -> PaymentTransaction | None:
    """
    Authenticated provider notification.

    Returns the settled transaction, or None when the event type or the
    transaction reference is not ours (acknowledged and dropped).

    Raises:
        WebhookRejectedError: bad signature (401) or malformed payload (400)
        DuplicateWebhookError: already applied
    """
    if provider != PROVIDER_CHAPA:
        raise WebhookRejectedError(f"Webhooks are not supported for provider {provider}")

    gateway = payment_gateways.gateway_for(provider)
    if not gateway.verify_webhook_signature(raw_body, signature):
        raise WebhookRejectedError("Invalid webhook signature", status_code=401)

    try:
        payload = json.loads(raw_body)
    except (TypeError, ValueError) as exc:
        raise WebhookRejectedError("Webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise WebhookRejectedError("Webhook body must be a JSON object")

    event = payload.get("event")
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    tx_ref = data.get("tx_ref") or payload.get("tx_ref")
    if not event or not tx_ref:
        raise WebhookRejectedError("Webhook payload is missing event or tx_ref")

    if event == payment_gateways.CHAPA_EVENT_COMPLETED:
        succeeded = True
    elif event == payment_gateways.CHAPA_EVENT_FAILED:
        succeeded = False
    else:
        current_app.logger.info("Ignoring %s webhook event %s for %s", provider, event, tx_ref)
        return None

    try:
        return apply_payment_outcome(provider, tx_ref, succeeded, {"webhook": data or payload})
    except NotFoundError:
        current_app.logger.warning("Dropping %s webhook for unknown transaction %s", provider, tx_ref)
        return None


def verify_manual_payment(
    tx_ref: str,
    actor: User,
    succeeded: bool = True,
    note: str | None = None,
) -> PaymentTransaction:
    """Organizer/admin confirms (or rejects) a bank transfer / mobile money payment."""
    txn = get_transaction(PROVIDER_MANUAL, tx_ref)
    if not _can_administer(txn.order, actor):
        raise ForbiddenError("Only the event organizer can verify payments")

    return apply_payment_outcome(
        PROVIDER_MANUAL,
        tx_ref,
        succeeded,
        {"verified_by_user_id": actor.id, "verification_note": note},
    )


# =============================================================================
# REFUNDS
# =============================================================================
#
# A refund claims its transaction (completed -> refunding) and commits before
# the provider is called. Only the claim winner sends money back; a failed
# provider call puts the transaction back to completed.

def _refundable_transaction(order: Order) -> PaymentTransaction | None:
    for txn in order.payment_transactions:
        if txn.status == PAYMENT_COMPLETED and not _is_flagged(txn):
            return txn
    return None


def _is_flagged(txn: PaymentTransaction) -> bool:
    return bool((txn.details or {}).get("requires_refund"))


def _claim_refund(txn_id: int) -> None:
    def _op():
        claimed = compare_and_set(
            PaymentTransaction,
            txn_id,
            PaymentTransaction.status == PAYMENT_COMPLETED,
            status=PAYMENT_REFUNDING,
        )
        if not claimed:
            raise OrderNotPendingError(
                "A refund is already in progress for this payment",
                details={"payment_transaction_id": txn_id},
            )
        db.session.commit()

    run_with_retry(_op)


def _release_refund_claim(txn_id: int) -> None:
    def _op():
        compare_and_set(
            PaymentTransaction,
            txn_id,
            PaymentTransaction.status == PAYMENT_REFUNDING,
            status=PAYMENT_COMPLETED,
        )
        db.session.commit()

    run_with_retry(_op)


def _send_refund(txn_id: int, provider: str, tx_ref: str, amount: int, reason: str | None) -> str | None:
    """Claim the transaction, then ask the provider. Returns the refund reference."""
    _claim_refund(txn_id)
    if amount == 0:
        return None
    try:
        return payment_gateways.gateway_for(provider).refund(tx_ref, amount, reason)
    except Exception:
        _release_refund_claim(txn_id)
        raise


def _mark_refunded(txn_id: int, refund_reference: str | None, amount: int, now) -> None:
    compare_and_set(
        PaymentTransaction,
        txn_id,
        PaymentTransaction.status == PAYMENT_REFUNDING,
        status=PAYMENT_REFUNDED,
        refund_reference=refund_reference,
        refunded_amount_cents=amount,
        refunded_at=now,
    )


def refund_order(
    order_id: int,
    actor: User,
    amount_cents: int | None = None,
    reason: str | None = None,
) -> Order:
    """
    Refund a completed order and release its holds.

    Raises:
        NotFoundError, ForbiddenError
        OrderNotPendingError: order is not completed, or another refund holds the claim
        ValidationError: event already took place, bad amount, no settled payment
        PaymentProviderError: provider refused or unavailable; nothing changed
    """
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    if not _can_administer(order, actor):
        raise ForbiddenError("Only the event organizer can refund orders")
    if order.status != ORDER_COMPLETED:
        raise OrderNotPendingError(
            "Only completed orders can be refunded",
            details={"order_id": order.id, "status": order.status},
        )
    if order.event.event_date is not None and order.event.event_date <= utcnow():
        raise ValidationError("Orders cannot be refunded after the event date")

    amount = order.total_amount_cents if amount_cents is None else amount_cents
    if amount > order.total_amount_cents or amount < 0 or (amount == 0 and order.total_amount_cents > 0):
        raise ValidationError(
            "Refund amount must be between 0 and the order total",
            details={"amount_cents": amount, "total_amount_cents": order.total_amount_cents},
        )

    txn = _refundable_transaction(order)
    if txn is None:
        if any(t.status == PAYMENT_REFUNDING for t in order.payment_transactions):
            raise OrderNotPendingError(
                "A refund is already in progress for this order", details={"order_id": order_id}
            )
        raise ValidationError("No settled payment found for this order")

    txn_id = txn.id
    refund_reference = _send_refund(txn_id, txn.provider, txn.transaction_id, amount, reason)

    def _op():
        now = utcnow()
        _mark_refunded(txn_id, refund_reference, amount, now)
        refunded = compare_and_set(
            Order,
            order_id,
            Order.status == ORDER_COMPLETED,
            status=ORDER_REFUNDED,
            refunded_at=now,
            refund_amount_cents=amount,
            refund_reason=reason,
        )
        if not refunded:
            db.session.commit()
            current_app.logger.error(
                "Order %s changed state while refund %s was processed", order_id, refund_reference
            )
            raise OrderNotPendingError("Order is no longer completed", details={"order_id": order_id})

        refreshed = db.session.get(Order, order_id)
        release_order_holds(refreshed)
        db.session.commit()
        return refreshed

    order = run_with_retry(_op)
    current_app.logger.info(
        "Refunded order %s (%s cents, reference %s)", order.reference, amount, refund_reference
    )
    return order


def list_flagged_payments(actor: User) -> list[PaymentTransaction]:
    """Late successes that collected money for an order that was already dead."""
    if not actor.is_admin:
        raise ForbiddenError("Only admins can review flagged payments")
    settled = (
        db.session.query(PaymentTransaction)
        .filter(PaymentTransaction.status == PAYMENT_COMPLETED)
        .order_by(PaymentTransaction.settled_at.asc(), PaymentTransaction.id.asc())
        .all()
    )
    return [txn for txn in settled if _is_flagged(txn)]


def refund_flagged_payment(
    provider: str,
    tx_ref: str,
    actor: User,
    reason: str | None = None,
) -> PaymentTransaction:
    """
    Return a flagged late payment in full. The order already released its
    holds when it died, so only the transaction changes.

    Raises:
        ForbiddenError: caller is not an admin
        NotFoundError: unknown transaction
        ValidationError: transaction is not flagged for refund
        OrderNotPendingError: already refunded, or another refund holds the claim
        PaymentProviderError: provider refused or unavailable; nothing changed
    """
    if not actor.is_admin:
        raise ForbiddenError("Only admins can refund flagged payments")

    txn = get_transaction(provider, tx_ref)
    if not _is_flagged(txn):
        raise ValidationError(
            "Payment is not flagged for refund", details={"transaction_id": tx_ref}
        )
    if txn.status != PAYMENT_COMPLETED:
        raise OrderNotPendingError(
            "Flagged payment is no longer refundable",
            details={"transaction_id": tx_ref, "status": txn.status},
        )

    txn_id = txn.id
    amount = txn.amount_cents
    refund_reference = _send_refund(txn_id, provider, tx_ref, amount, reason or "Order expired before payment")

    def _op():
        _mark_refunded(txn_id, refund_reference, amount, utcnow())
        db.session.commit()
        return db.session.get(PaymentTransaction, txn_id)

    refunded = run_with_retry(_op)
    current_app.logger.warning(
        "Refunded flagged payment %s/%s (%s cents, reference %s)", provider, tx_ref, amount, refund_reference
    )
    return refunded


def get_transaction(provider: str, transaction_id: str) -> PaymentTransaction:
    txn = (
        db.session.query(PaymentTransaction)
        .filter_by(provider=provider, transaction_id=transaction_id)
        .first()
    )
    if txn is None:
        raise NotFoundError(f"Payment transaction {transaction_id} not found")
    return txn


def list_payment_transactions(order_id: int, actor: User) -> list[PaymentTransaction]:
    order = get_order(order_id, actor)
    return list(order.payment_transactions)
