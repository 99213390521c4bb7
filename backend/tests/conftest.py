"""
Pytest fixtures for storekeeper backend tests.

Provides the test app, a wiped database per test, two stores with their
sellers, an admin, and helpers to build products and bearer headers.
"""

import pytest

from storekeeper import create_app
from storekeeper.config import TestConfig
from storekeeper.extensions import db
from storekeeper.models.auth import ROLE_ADMIN, ROLE_SELLER
from storekeeper.services import products_service, store_service
from storekeeper.services.auth_service import create_user
from storekeeper.services.session_service import create_session
from storekeeper.services.tenant_service import AccessContext

PASSWORD = "Password123"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)

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
        db.session.expunge_all()


@pytest.fixture(scope='function')
def store_a(db_session):
    return store_service.create_store("Boutique Centre", address="1 Rue du Marché")


@pytest.fixture(scope='function')
def store_b(db_session):
    return store_service.create_store("Boutique Port")


@pytest.fixture(scope='function')
def admin(db_session):
    return create_user("admin@example.com", "Admin", PASSWORD, role=ROLE_ADMIN)


@pytest.fixture(scope='function')
def seller_a(db_session, store_a):
    return create_user("seller.a@example.com", "Seller A", PASSWORD, role=ROLE_SELLER, store_id=store_a.id)


@pytest.fixture(scope='function')
def seller_b(db_session, store_b):
    return create_user("seller.b@example.com", "Seller B", PASSWORD, role=ROLE_SELLER, store_id=store_b.id)


@pytest.fixture(scope='function')
def admin_access(admin):
    return AccessContext(user_id=admin.id, role=ROLE_ADMIN)


@pytest.fixture(scope='function')
def access_a(seller_a):
    return AccessContext(user_id=seller_a.id, role=ROLE_SELLER, store_id=seller_a.store_id)


@pytest.fixture(scope='function')
def access_b(seller_b):
    return AccessContext(user_id=seller_b.id, role=ROLE_SELLER, store_id=seller_b.store_id)


@pytest.fixture(scope='function')
def make_product(db_session, admin_access):
    """Factory creating a product through the products service."""

    def _make(store, *, stock=10, name="Riz 5kg", category="Épicerie", **overrides):
        patch = {
            "store_id": store.id,
            "name": name,
            "category": category,
            "units_per_package": 5,
            "package_purchase_price_cents": 400,
            "unit_sale_price_cents": 100,
            "package_sale_price_cents": 450,
            "min_stock_alert": 2,
            "initial_stock": stock,
        }
        patch.update(overrides)
        return products_service.create_product(access=admin_access, patch=patch)

    return _make


@pytest.fixture(scope='function')
def product_a(make_product, store_a):
    """Product in store A: stock 10, 5 units per package, unit 100, package 450."""
    return make_product(store_a)


@pytest.fixture(scope='function')
def product_b(make_product, store_b):
    return make_product(store_b, name="Huile 1L")


@pytest.fixture(scope='function')
def auth_headers(db_session):
    """Bearer header for a freshly created session of a user."""

    def _headers(user) -> dict:
        _session, token = create_session(user_id=user.id)
        return {'Authorization': f'Bearer {token}'}

    return _headers
