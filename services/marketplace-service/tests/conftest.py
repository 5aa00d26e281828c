"""Shared fixtures: per-test SQLite database, actors, tokens and an API client."""
import os

# Must be set before any service module reads config
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["OTEL_ENABLED"] = "false"
os.environ["PYROSCOPE_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SEED_DEMO_DATA"] = "false"
os.environ["JWT_SECRET"] = "test-secret"

from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from auth import Actor, IdentityProvider
from database import build_engine, get_db
from models import Base, Product
from services.catalog_store import CatalogStore
from services.order_service import OrderService

FARMER_1 = Actor(id="farmer-1", role="farmer")
FARMER_2 = Actor(id="farmer-2", role="farmer")
CONSUMER_1 = Actor(id="consumer-1", role="consumer")
CONSUMER_2 = Actor(id="consumer-2", role="consumer")

ADDRESS = "12 Orchard Lane, Nashik 422001"
PHONE = "98765 43210"

CONTACTS = {
    "consumer-1": {"name": "Asha Rao", "email": "asha@example.com", "phone": "9876543210"},
    "consumer-2": {"name": "Vikram Das", "email": "vikram@example.com", "phone": "9123456780"},
}


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'marketplace.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def catalog():
    return CatalogStore()


@pytest.fixture
def order_service(catalog):
    return OrderService(catalog)


@pytest.fixture
def make_product(session_factory):
    """Insert a product and return its id."""

    def _make(farmer_id="farmer-1", **overrides):
        fields = dict(
            title="Basmati Rice",
            description="Aged long-grain rice",
            category="Rice",
            price_per_unit=Decimal("80.00"),
            measuring_unit="kg",
            min_order_qty=1,
            shelf_life_days=180,
            quantity_available=10,
            delivery_radius_km=20,
        )
        fields.update(overrides)
        session = session_factory()
        try:
            product = Product(farmer_id=farmer_id, **fields)
            session.add(product)
            session.commit()
            return product.id
        finally:
            session.close()

    return _make


@pytest.fixture
def stock_of(session_factory):
    """Read a product's current stock from a fresh session."""

    def _stock(product_id):
        session = session_factory()
        try:
            return session.get(Product, product_id).quantity_available
        finally:
            session.close()

    return _stock


@pytest.fixture
def identity_provider():
    return IdentityProvider("test-secret")


@pytest.fixture
def auth_headers(identity_provider):
    def _headers(actor):
        token = identity_provider.issue_token(actor.id, actor.role)
        return {"Authorization": f"Bearer {token}"}

    return _headers


def directory_handler(request: httpx.Request) -> httpx.Response:
    user_id = request.url.path.rsplit("/", 1)[-1]
    if user_id in CONTACTS:
        return httpx.Response(200, json={"id": user_id, **CONTACTS[user_id]})
    return httpx.Response(404, json={"message": "User not found"})


@pytest.fixture
def client(session_factory, identity_provider):
    from main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.identity_provider = identity_provider
    app.state.http_client = httpx.AsyncClient(transport=httpx.MockTransport(directory_handler))

    yield TestClient(app)

    app.dependency_overrides.clear()
