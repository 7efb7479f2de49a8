"""
Pytest fixtures for the mandi backend tests.

Provides the in-memory application, a per-test table wipe, catalogue and
customer factories, role users and auth-header helpers.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from mandi import create_app
from mandi.extensions import db
from mandi.models import ContractPrice, Customer, MarketRate, Product, User
from mandi.services.auth_service import create_user


TEST_PASSWORD = "Password123"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LOCK_INSTANCE_ID': 'test-instance',
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
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


# =============================================================================
# FACTORIES
# =============================================================================

def make_customer(session, name="Hotel Saravana", pricing_type="market", markup="0", balance="0", contract_prices=None, is_active=True):
    customer = Customer(
        name=name,
        phone="9800000000",
        pricing_type=pricing_type,
        markup_percentage=Decimal(markup),
        balance=Decimal(balance),
        is_active=is_active,
    )
    session.add(customer)
    session.flush()
    for product_id, price in (contract_prices or {}).items():
        session.add(ContractPrice(customer_id=customer.id, product_id=product_id, price=Decimal(price)))
    session.commit()
    return customer


def make_product(session, name="Tomato", unit="kg", is_active=True):
    product = Product(name=name, unit=unit, category="vegetables", is_active=is_active)
    session.add(product)
    session.commit()
    return product


def set_market_rate(session, product, rate, effective_date=None):
    entry = MarketRate(
        product_id=product.id,
        rate=Decimal(rate),
        effective_date=effective_date or datetime(2026, 10, 1, 6, 0),
    )
    session.add(entry)
    session.commit()
    return entry


def make_user(username, role, customer_id=None, name=None) -> User:
    return create_user(username, name or username.title(), TEST_PASSWORD, role, customer_id, rounds=4)


# =============================================================================
# CATALOGUE AND CUSTOMERS
# =============================================================================

@pytest.fixture(scope='function')
def tomato(db_session):
    product = make_product(db_session, "Tomato", "kg")
    set_market_rate(db_session, product, "100")
    return product


@pytest.fixture(scope='function')
def banana(db_session):
    product = make_product(db_session, "Banana", "dozen")
    set_market_rate(db_session, product, "60")
    return product


@pytest.fixture(scope='function')
def coconut(db_session):
    product = make_product(db_session, "Coconut", "piece")
    set_market_rate(db_session, product, "25")
    return product


@pytest.fixture(scope='function')
def market_customer(db_session):
    return make_customer(db_session, "Market Customer", "market")


@pytest.fixture(scope='function')
def markup_customer(db_session):
    return make_customer(db_session, "Markup Customer", "markup", markup="20")


@pytest.fixture(scope='function')
def contract_customer(db_session, banana):
    return make_customer(db_session, "Contract Customer", "contract", contract_prices={banana.id: "55"})


# =============================================================================
# USERS AND AUTH
# =============================================================================

@pytest.fixture(scope='function')
def admin_user(db_session):
    return make_user("admin", "admin", name="Admin")


@pytest.fixture(scope='function')
def staff_user(db_session):
    return make_user("staff", "staff", name="Staff Member")


@pytest.fixture(scope='function')
def customer_user(db_session, market_customer):
    return make_user("buyer", "customer", customer_id=market_customer.id, name="Buyer")


@pytest.fixture(scope='function')
def contract_customer_user(db_session, contract_customer):
    return make_user("contract_buyer", "customer", customer_id=contract_customer.id)


def get_auth_token(client, username: str, password: str = TEST_PASSWORD) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'username': username,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def admin_headers(client, admin_user):
    return auth_headers(get_auth_token(client, admin_user.username))


@pytest.fixture(scope='function')
def staff_headers(client, staff_user):
    return auth_headers(get_auth_token(client, staff_user.username))


@pytest.fixture(scope='function')
def customer_headers(client, customer_user):
    return auth_headers(get_auth_token(client, customer_user.username))
