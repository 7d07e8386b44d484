"""
Concurrency tests against a file-backed SQLite database.

Each worker runs in its own thread with its own app context and session,
the way concurrent requests do.
"""
import os
import tempfile
import threading
import time
import unittest
from datetime import timedelta
from unittest import mock

from boxoffice import create_app
from boxoffice.errors import (
    AlreadyCheckedInError,
    DuplicateWebhookError,
    InsufficientInventoryError,
    OrderNotPendingError,
    PromotionExhaustedError,
)
from boxoffice.extensions import db
from boxoffice.models import Event, Promotion, TicketType, User
from boxoffice.models.auth import ROLE_ATTENDEE, ROLE_ORGANIZER
from boxoffice.models.events import EVENT_APPROVED
from boxoffice.models.orders import ORDER_REFUNDED
from boxoffice.models.payments import PAYMENT_REFUNDED, PROVIDER_MANUAL
from boxoffice.models.promotions import DISCOUNT_PERCENTAGE
from boxoffice.services import check_in_service, order_service, payment_service
from boxoffice.services.payment_gateways import ManualGateway
from boxoffice.time_utils import utcnow


BILLING = {"name": "Concurrent Buyer", "email": "buyer@example.com"}


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 15}},
            "BCRYPT_ROUNDS": 4,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            organizer = User(name="Organizer", email="org@example.com", password_hash="dummy", role=ROLE_ORGANIZER)
            buyer = User(name="Buyer", email="buyer@example.com", password_hash="dummy", role=ROLE_ATTENDEE)
            db.session.add_all([organizer, buyer])
            db.session.commit()
            self.organizer_id = organizer.id
            self.buyer_id = buyer.id

            event = Event(
                organizer_id=organizer.id,
                title="Concurrency Night",
                event_date=utcnow() + timedelta(days=7),
                approval_status=EVENT_APPROVED,
            )
            db.session.add(event)
            db.session.commit()
            self.event_id = event.id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _make_ticket_type(self, quantity):
        with self.app.app_context():
            ticket_type = TicketType(
                event_id=self.event_id,
                name="General",
                price_cents=1000,
                currency="ETB",
                quantity=quantity,
                sold=0,
                min_per_order=1,
            )
            db.session.add(ticket_type)
            db.session.commit()
            return ticket_type.id

    def _run_workers(self, target, count):
        """Start `count` threads running target(); collect results or exceptions."""
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(count)

        def worker():
            with self.app.app_context():
                try:
                    barrier.wait()
                    outcome = target()
                except Exception as exc:
                    outcome = exc
                finally:
                    db.session.remove()
                with lock:
                    results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results

    def _buy(self, ticket_type_id, quantity=1, promotion_code=None):
        order = order_service.create_order(
            self.buyer_id,
            self.event_id,
            [{"ticket_type_id": ticket_type_id, "quantity": quantity}],
            promotion_code=promotion_code,
            billing=BILLING,
        )
        return order.id

    def _successes(self, results):
        return [r for r in results if not isinstance(r, Exception)]

    def test_last_ticket_sold_once(self):
        ticket_type_id = self._make_ticket_type(quantity=1)

        results = self._run_workers(lambda: self._buy(ticket_type_id), 8)

        self.assertEqual(len(self._successes(results)), 1)
        failures = [r for r in results if isinstance(r, Exception)]
        self.assertTrue(all(isinstance(r, InsufficientInventoryError) for r in failures), failures)
        with self.app.app_context():
            self.assertEqual(db.session.get(TicketType, ticket_type_id).sold, 1)

    def test_no_oversell_under_contention(self):
        ticket_type_id = self._make_ticket_type(quantity=10)

        results = self._run_workers(lambda: self._buy(ticket_type_id), 20)

        self.assertEqual(len(self._successes(results)), 10)
        with self.app.app_context():
            self.assertEqual(db.session.get(TicketType, ticket_type_id).sold, 10)

    def test_promotion_last_use_race(self):
        ticket_type_id = self._make_ticket_type(quantity=100)
        with self.app.app_context():
            db.session.add(Promotion(
                event_id=self.event_id,
                code="LASTONE",
                discount_type=DISCOUNT_PERCENTAGE,
                discount_value=1000,
                max_uses=1,
                used=0,
                is_active=True,
            ))
            db.session.commit()

        results = self._run_workers(lambda: self._buy(ticket_type_id, promotion_code="LASTONE"), 6)

        self.assertEqual(len(self._successes(results)), 1)
        failures = [r for r in results if isinstance(r, Exception)]
        self.assertTrue(all(isinstance(r, PromotionExhaustedError) for r in failures), failures)
        with self.app.app_context():
            self.assertEqual(db.session.query(Promotion).filter_by(code="LASTONE").one().used, 1)
            # Losing orders gave their tickets back
            self.assertEqual(db.session.get(TicketType, ticket_type_id).sold, 1)

    def test_duplicate_webhook_race(self):
        ticket_type_id = self._make_ticket_type(quantity=5)
        with self.app.app_context():
            order_id = self._buy(ticket_type_id, quantity=3)
            buyer = db.session.get(User, self.buyer_id)
            tx_ref = payment_service.initiate_payment(order_id, buyer, "bank_transfer").transaction.transaction_id

        def deliver_failure():
            return payment_service.apply_payment_outcome(PROVIDER_MANUAL, tx_ref, False).id

        results = self._run_workers(deliver_failure, 5)

        self.assertEqual(len(self._successes(results)), 1)
        failures = [r for r in results if isinstance(r, Exception)]
        self.assertTrue(all(isinstance(r, DuplicateWebhookError) for r in failures), failures)
        with self.app.app_context():
            self.assertEqual(db.session.get(TicketType, ticket_type_id).sold, 0)

    def test_double_scan_race(self):
        ticket_type_id = self._make_ticket_type(quantity=5)
        with self.app.app_context():
            order_id = self._buy(ticket_type_id)
            buyer = db.session.get(User, self.buyer_id)
            organizer = db.session.get(User, self.organizer_id)
            tx_ref = payment_service.initiate_payment(order_id, buyer, "bank_transfer").transaction.transaction_id
            payment_service.verify_manual_payment(tx_ref, organizer)
            booking_id = order_service.get_order(order_id, organizer).items[0].id

        def scan():
            return check_in_service.check_in(booking_id, db.session.get(User, self.organizer_id)).id

        results = self._run_workers(scan, 5)

        self.assertEqual(len(self._successes(results)), 1)
        failures = [r for r in results if isinstance(r, Exception)]
        self.assertTrue(all(isinstance(r, AlreadyCheckedInError) for r in failures), failures)


    def test_concurrent_refund_sends_money_once(self):
        ticket_type_id = self._make_ticket_type(quantity=5)
        with self.app.app_context():
            order_id = self._buy(ticket_type_id, quantity=2)
            buyer = db.session.get(User, self.buyer_id)
            organizer = db.session.get(User, self.organizer_id)
            tx_ref = payment_service.initiate_payment(order_id, buyer, "bank_transfer").transaction.transaction_id
            payment_service.verify_manual_payment(tx_ref, organizer)

        provider_calls = []
        original_refund = ManualGateway.refund

        def slow_refund(gateway, *args, **kwargs):
            provider_calls.append(args)
            time.sleep(0.3)
            return original_refund(gateway, *args, **kwargs)

        def refund():
            return payment_service.refund_order(order_id, db.session.get(User, self.organizer_id)).id

        with mock.patch.object(ManualGateway, "refund", slow_refund):
            results = self._run_workers(refund, 2)

        self.assertEqual(len(provider_calls), 1)
        self.assertEqual(len(self._successes(results)), 1)
        failures = [r for r in results if isinstance(r, Exception)]
        self.assertTrue(all(isinstance(r, OrderNotPendingError) for r in failures), failures)
        with self.app.app_context():
            order = order_service.get_order(order_id, db.session.get(User, self.organizer_id))
            self.assertEqual(order.status, ORDER_REFUNDED)
            self.assertEqual([t.status for t in order.payment_transactions], [PAYMENT_REFUNDED])
            self.assertEqual(db.session.get(TicketType, ticket_type_id).sold, 0)

if __name__ == "__main__":
    unittest.main()
