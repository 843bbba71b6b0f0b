"""
Pytest fixtures for dairy delivery backend tests.

Provides test database setup, two tenants, users of every role, catalog
rows and auth helpers.
"""

from datetime import timedelta

import pytest
from dairy import create_app
from dairy.config import TestConfig
from dairy.extensions import db
from dairy.models import Address, Organization, Product, Subscription, SubscriptionDelivery
from dairy.services import materializer_service
from dairy.services.auth_service import create_user
from dairy.services.integrations import StaticGeocoder
from dairy.time_utils import today


PASSWORD = "Password123!"

# pincode -> (lat, lng); the depot is at (11.0168, 76.9558)
TEST_COORDINATES = {
    "641001": (11.0200, 76.9600),
    "641002": (11.0300, 76.9700),
    "641003": (11.0500, 76.9900),
    "641004": (11.0100, 76.9400),
}


class RecordingNotifier:
    """Push notifier double that keeps every sent event."""

    def __init__(self):
        self.sent = []

    def send(self, event):
        self.sent.append((event.event_type, event.entity_id))


@pytest.fixture(scope='session')
def notifier():
    return RecordingNotifier()


@pytest.fixture(scope='session')
def app(notifier):
    """Create application for testing."""
    app = create_app(TestConfig, geocoder=StaticGeocoder(TEST_COORDINATES), notifier=notifier)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app, notifier):
    """Create fresh database for each test."""
    with app.app_context():
        db.session.rollback()
        # Clear all data but keep schema
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        notifier.sent.clear()

        yield db.session

        db.session.rollback()


@pytest.fixture(scope='function')
def org(db_session):
    org = Organization(name="DairyFresh Coimbatore", code="DFC", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def other_org(db_session):
    org = Organization(name="Other Dairy", code="OTHER", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def admin(org):
    return create_user(org.id, "9000000000", PASSWORD, role="admin", full_name="Admin")


@pytest.fixture(scope='function')
def agent(org):
    return create_user(org.id, "9000000001", PASSWORD, role="agent", full_name="Ravi")


@pytest.fixture(scope='function')
def second_agent(org):
    return create_user(org.id, "9000000002", PASSWORD, role="agent", full_name="Meena")


@pytest.fixture(scope='function')
def customer(org):
    """Prepaid customer with a password."""
    return create_user(org.id, "9800000001", PASSWORD, full_name="Priya", payment_mode="prepaid")


@pytest.fixture(scope='function')
def postpaid_customer(org):
    return create_user(org.id, "9800000002", PASSWORD, full_name="Karthik", payment_mode="postpaid")


def _make_address(user, *, pincode="641001", area="RS Puram", with_coordinates=True):
    lat_lng = TEST_COORDINATES.get(pincode) if with_coordinates else None
    address = Address(
        user_id=user.id,
        label="home",
        line1=f"{user.id} Main Road",
        area=area,
        city="Coimbatore",
        state="Tamil Nadu",
        pincode=pincode,
        latitude=lat_lng[0] if lat_lng else None,
        longitude=lat_lng[1] if lat_lng else None,
        is_default=True,
    )
    db.session.add(address)
    db.session.commit()
    return address


@pytest.fixture(scope='function')
def address(customer):
    return _make_address(customer)


@pytest.fixture(scope='function')
def postpaid_address(postpaid_customer):
    return _make_address(postpaid_customer, pincode="641002", area="Gandhipuram")


@pytest.fixture(scope='function')
def milk(org):
    """Subscribable 1L milk at 30.00."""
    product = Product(
        org_id=org.id,
        name="Toned Milk",
        unit="1L",
        price_cents=3000,
        is_subscribable=True,
        status="active",
        stock_quantity=500,
    )
    db.session.add(product)
    db.session.commit()
    return product


@pytest.fixture(scope='function')
def ghee(org):
    """One-off product at 250.00 with limited stock."""
    product = Product(
        org_id=org.id,
        name="Ghee 500ml",
        unit="500ml",
        price_cents=25000,
        is_subscribable=False,
        status="active",
        stock_quantity=5,
    )
    db.session.add(product)
    db.session.commit()
    return product


@pytest.fixture(scope='function')
def tomorrow():
    return today() + timedelta(days=1)


def get_auth_token(client, phone: str, password: str = PASSWORD) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'phone': phone,
        'password': password
    })
    if response.status_code == 200:
        return response.json['data']['token']
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def make_address():
    """Factory: make_address(user, pincode=..., area=..., with_coordinates=...)."""
    return _make_address


@pytest.fixture(scope='function')
def admin_headers(client, admin):
    return auth_headers(get_auth_token(client, admin.phone))


@pytest.fixture(scope='function')
def agent_headers(client, agent):
    return auth_headers(get_auth_token(client, agent.phone))


@pytest.fixture(scope='function')
def customer_headers(client, customer):
    return auth_headers(get_auth_token(client, customer.phone))


@pytest.fixture(scope='function')
def make_customer(org):
    """Factory: make_customer(phone, name, payment_mode='prepaid')."""
    def _make_customer(phone, name, payment_mode="prepaid"):
        return create_user(org.id, phone, PASSWORD, full_name=name, payment_mode=payment_mode)
    return _make_customer


def _schedule_delivery(user, address, product, delivery_date, quantity=1):
    """One-day subscription materialized on delivery_date; returns its delivery row."""
    subscription = Subscription(
        org_id=user.org_id,
        user_id=user.id,
        product_id=product.id,
        address_id=address.id,
        default_quantity=quantity,
        billing_cycle="daily",
        delivery_days=[],
        start_date=delivery_date,
        end_date=delivery_date,
        payment_mode=user.payment_mode,
        status="active",
    )
    db.session.add(subscription)
    db.session.commit()
    materializer_service.materialize_subscription(
        subscription.id, delivery_date, delivery_date, as_of=delivery_date
    )
    return db.session.query(SubscriptionDelivery).filter_by(subscription_id=subscription.id).one()


@pytest.fixture(scope='function')
def schedule_delivery():
    """Factory: schedule_delivery(user, address, product, delivery_date, quantity=1)."""
    return _schedule_delivery
