"""
Pytest fixtures for Box Office backend tests.

Provides an in-memory database, factories for the ticketing core and
authenticated request headers.
"""

from datetime import timedelta

import pytest
from boxoffice import create_app
from boxoffice.extensions import db
from boxoffice.models import Event, Promotion, TicketType, User
from boxoffice.models.auth import ROLE_ADMIN, ROLE_ATTENDEE, ROLE_ORGANIZER
from boxoffice.models.events import EVENT_APPROVED
from boxoffice.models.promotions import DISCOUNT_PERCENTAGE
from boxoffice.services import session_service
from boxoffice.services.auth_service import hash_password
from boxoffice.services.payment_gateways import compute_signature
from boxoffice.time_utils import utcnow


TEST_PASSWORD = "Password123!"
WEBHOOK_SECRET = "whsec-test"

TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'BCRYPT_ROUNDS': 4,
    'CHAPA_SECRET_KEY': 'chapa-test-secret',
    'CHAPA_BASE_URL': 'https://chapa.test',
    'CHAPA_WEBHOOK_SECRET': WEBHOOK_SECRET,
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Empty every table before each test."""
    meta = db.metadata
    for table in reversed(meta.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    yield db.session

    db.session.rollback()


# =============================================================================
# FACTORIES
# =============================================================================

@pytest.fixture
def make_user(db_session):
    counter = {"n": 0}

    def _make(role=ROLE_ATTENDEE, name=None, email=None):
        counter["n"] += 1
        user = User(
            name=name or f"{role.title()} {counter['n']}",
            email=email or f"{role}{counter['n']}@boxoffice.test",
            password_hash=hash_password(TEST_PASSWORD),
            role=role,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture
def organizer(make_user):
    return make_user(ROLE_ORGANIZER)


@pytest.fixture
def attendee(make_user):
    return make_user(ROLE_ATTENDEE)


@pytest.fixture
def admin(make_user):
    return make_user(ROLE_ADMIN)


@pytest.fixture
def make_event(db_session):
    def _make(organizer, approval_status=EVENT_APPROVED, event_date=None, title="Addis Jazz Night"):
        event = Event(
            organizer_id=organizer.id,
            title=title,
            event_date=event_date or utcnow() + timedelta(days=30),
            approval_status=approval_status,
        )
        db_session.add(event)
        db_session.commit()
        return event

    return _make


@pytest.fixture
def event(make_event, organizer):
    return make_event(organizer)


@pytest.fixture
def make_ticket_type(db_session):
    def _make(event, name="General Admission", price_cents=50000, quantity=100, **kwargs):
        ticket_type = TicketType(
            event_id=event.id,
            name=name,
            price_cents=price_cents,
            currency=kwargs.pop("currency", "ETB"),
            quantity=quantity,
            sold=kwargs.pop("sold", 0),
            min_per_order=kwargs.pop("min_per_order", 1),
            **kwargs,
        )
        db_session.add(ticket_type)
        db_session.commit()
        return ticket_type

    return _make


@pytest.fixture
def ticket_type(make_ticket_type, event):
    return make_ticket_type(event)


@pytest.fixture
def make_promotion(db_session):
    def _make(event, code="SAVE10", discount_type=DISCOUNT_PERCENTAGE, discount_value=1000, **kwargs):
        promo = Promotion(
            event_id=event.id,
            code=code,
            discount_type=discount_type,
            discount_value=discount_value,
            used=kwargs.pop("used", 0),
            is_active=kwargs.pop("is_active", True),
            **kwargs,
        )
        db_session.add(promo)
        db_session.commit()
        return promo

    return _make


@pytest.fixture
def billing():
    return {"name": "Abebe Kebede", "email": "abebe@example.com", "address": "Bole, Addis Ababa"}


# =============================================================================
# AUTH HELPERS
# =============================================================================

def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def headers_for(db_session):
    def _headers(user):
        _, token = session_service.create_session(user.id)
        return auth_headers(token)

    return _headers


def signed_webhook(payload: bytes) -> dict:
    """Headers for a webhook body signed with the test secret."""
    return {
        "Chapa-Signature": compute_signature(WEBHOOK_SECRET, payload),
        "Content-Type": "application/json",
    }


@pytest.fixture
def webhook_headers():
    return signed_webhook
