"""Shared pytest fixtures for storefront tests.

Service tests run inside the ``ctx`` application context and receive ORM
objects. Route tests use ``client`` without a pushed context, so every
request gets its own session and login state; they receive ids through
``seed``.
"""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from storefront import create_app
from storefront.config import TestingConfig
from storefront.extensions import db
from storefront.models import Product, StoreProfile, User, UserRole
from storefront.services.payment_gateway import MockPaymentGateway


PASSWORD = "secret123"


class RecordingGateway(MockPaymentGateway):
    """Mock gateway that counts provider calls."""

    def __init__(self):
        super().__init__()
        self.outcome_calls = 0
        self.refund_calls = 0

    def fetch_outcome(self, token):
        self.outcome_calls += 1
        return super().fetch_outcome(token)

    def refund(self, token):
        self.refund_calls += 1
        super().refund(token)


def make_user(email, role=UserRole.CUSTOMER, store_name=None):
    user = User(email=email, role=role)
    user.set_password(PASSWORD)
    db.session.add(user)
    db.session.flush()
    if store_name:
        db.session.add(StoreProfile(user_id=user.id, store_name=store_name))
    db.session.commit()
    return user


def make_product(store, name, price, stock=10, **kwargs):
    product = Product(
        store_id=store.id,
        name=name,
        price=Decimal(price),
        stock=stock,
        **kwargs,
    )
    db.session.add(product)
    db.session.commit()
    return product


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    app.extensions["payment_gateway"] = RecordingGateway()
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def gateway(app):
    return app.extensions["payment_gateway"]


@pytest.fixture
def broker(app):
    return app.extensions["chat_broker"]


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield
        db.session.rollback()


@pytest.fixture
def seller(ctx):
    return make_user("owner@admin.com", UserRole.ADMIN, store_name="Test Store")


@pytest.fixture
def other_seller(ctx):
    return make_user(
        "second@admin.com", UserRole.ADMIN, store_name="Second Store")


@pytest.fixture
def customer(ctx):
    return make_user("buyer@example.com")


@pytest.fixture
def other_customer(ctx):
    return make_user("other@example.com")


@pytest.fixture
def product_p(seller):
    return make_product(
        seller,
        "Product P",
        "10.00",
        stock=10,
        category="electronics",
        rating=Decimal("4.5"),
    )


@pytest.fixture
def product_q(seller):
    return make_product(
        seller,
        "Product Q",
        "5.00",
        stock=10,
        category="books",
        rating=Decimal("3.0"),
    )


@pytest.fixture
def seed(app):
    """Committed users and products for route tests, as ids."""
    with app.app_context():
        seller = make_user(
            "owner@admin.com", UserRole.ADMIN, store_name="Test Store")
        customer = make_user("buyer@example.com")
        other = make_user("other@example.com")
        p = make_product(seller, "Product P", "10.00", category="electronics")
        q = make_product(seller, "Product Q", "5.00", category="books")
        ids = SimpleNamespace(
            seller_id=seller.id,
            customer_id=customer.id,
            other_customer_id=other.id,
            product_p_id=p.id,
            product_q_id=q.id,
        )
        db.session.remove()
    return ids


@pytest.fixture
def client(app):
    return app.test_client()


def login(client, email, password=PASSWORD):
    response = client.post(
        "/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.get_json()
    return response


@pytest.fixture
def customer_client(app, seed):
    client = app.test_client()
    login(client, "buyer@example.com")
    return client


@pytest.fixture
def seller_client(app, seed):
    client = app.test_client()
    login(client, "owner@admin.com")
    return client


ADDRESS = {
    "full_name": "Jane Buyer",
    "address": "1 Main St",
    "city": "Springfield",
    "state": "IL",
    "zip_code": "62701",
    "phone": "555-0100",
}


@pytest.fixture
def address():
    return dict(ADDRESS)
