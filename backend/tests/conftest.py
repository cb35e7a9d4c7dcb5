"""
Pytest fixtures for the order management backend tests.

Provides an in-memory application, a per-test table wipe, and small
factories for users, catalog, customers and commission configs.
"""

from datetime import timedelta

import pytest

from oms import create_app
from oms.authorization import Actor
from oms.extensions import db
from oms.models import Customer, SalesChannel, User
from oms.models.auth import ROLE_ADMIN, ROLE_STAFF, ROLE_AFFILIATE
from oms.models.commissions import RATE_PERCENTAGE
from oms.services import catalog_service, commission_service, events, session_service
from oms.time_utils import utcnow


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'WEBHOOK_SECRET': '',
        'TAX_RATE_BPS': 600,
    })

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
    """Empty every table before the test."""
    with app.app_context():
        # Core deletes bypass the ORM guards on append-only tables
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        db.session.expunge_all()

        yield db.session

        db.session.rollback()


@pytest.fixture(scope='function')
def published(app):
    """Collect every event published after commit."""
    received = []
    events.register_sink(app, received.append)
    yield received
    app.extensions["oms"]["event_sinks"].remove(received.append)


def _make_user(db_session, username, role):
    user = User(username=username, email=f"{username}@oms.test", full_name=username.title(), role=role)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def admin_user(db_session):
    return _make_user(db_session, "admin", ROLE_ADMIN)


@pytest.fixture(scope='function')
def staff_user(db_session):
    return _make_user(db_session, "sally", ROLE_STAFF)


@pytest.fixture(scope='function')
def other_staff_user(db_session):
    return _make_user(db_session, "oscar", ROLE_STAFF)


@pytest.fixture(scope='function')
def affiliate_user(db_session):
    return _make_user(db_session, "alex", ROLE_AFFILIATE)


@pytest.fixture(scope='function')
def admin_actor(admin_user):
    return Actor.from_user(admin_user)


@pytest.fixture(scope='function')
def staff_actor(staff_user):
    return Actor.from_user(staff_user)


@pytest.fixture(scope='function')
def affiliate_actor(affiliate_user):
    return Actor.from_user(affiliate_user)


@pytest.fixture(scope='function')
def category(db_session):
    return catalog_service.create_category("Electronics")


@pytest.fixture(scope='function')
def make_product(db_session, category):
    """Factory: make_product(name=..., price_cents=..., stock_quantity=...)."""
    def _make(name="Widget", price_cents=10000, cost_cents=6000, stock_quantity=5, low_stock_threshold=2):
        return catalog_service.create_product(
            category_id=category.id,
            name=name,
            price_cents=price_cents,
            cost_cents=cost_cents,
            stock_quantity=stock_quantity,
            low_stock_threshold=low_stock_threshold,
        )
    return _make


@pytest.fixture(scope='function')
def product(make_product):
    """Price 100.00, stock 5."""
    return make_product()


@pytest.fixture(scope='function')
def channel(db_session):
    channel = SalesChannel(name="Website", type="website", is_active=True)
    db_session.add(channel)
    db_session.commit()
    return channel


@pytest.fixture(scope='function')
def customer(db_session):
    customer = Customer(email="buyer@example.com", full_name="Bea Buyer", total_orders=0, total_spent_cents=0)
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def staff_commission(staff_user):
    """5% for the staff user, effective since yesterday."""
    return commission_service.create_config(
        staff_user.id, RATE_PERCENTAGE, 500, effective_from=utcnow() - timedelta(days=1)
    )


@pytest.fixture(scope='function')
def affiliate_commission(affiliate_user):
    """10% for the affiliate, effective since yesterday."""
    return commission_service.create_config(
        affiliate_user.id, RATE_PERCENTAGE, 1000, effective_from=utcnow() - timedelta(days=1)
    )


def issue_token(user) -> str:
    _session, token = session_service.create_session(user.id)
    return token


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def admin_headers(admin_user):
    return auth_headers(issue_token(admin_user))


@pytest.fixture(scope='function')
def staff_headers(staff_user):
    return auth_headers(issue_token(staff_user))


@pytest.fixture(scope='function')
def affiliate_headers(affiliate_user):
    return auth_headers(issue_token(affiliate_user))
