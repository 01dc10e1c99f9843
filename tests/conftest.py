import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ordering import auth, crud, errors, schemas
from ordering.db import Base, get_db
from ordering.main import app, get_payment_provider
from ordering.payments import PaymentProvider, ProviderSession

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeProvider(PaymentProvider):
    """In-memory stand-in for the hosted checkout provider."""

    def __init__(self):
        self.sessions = {}
        self.created = []
        self.fail_with = None

    def create_checkout_session(self, *, line_items, metadata, customer_email, success_url, cancel_url):
        if self.fail_with:
            raise self.fail_with
        session_id = f"cs_test_{len(self.sessions) + 1}"
        session = ProviderSession(
            id=session_id,
            url=f"https://checkout.test/pay/{session_id}",
            payment_status="unpaid",
            amount_total=sum(item.unit_amount * item.quantity for item in line_items),
            metadata=dict(metadata),
        )
        self.sessions[session_id] = session
        self.created.append(
            {
                "line_items": list(line_items),
                "metadata": dict(metadata),
                "customer_email": customer_email,
                "success_url": success_url,
            }
        )
        return session

    def retrieve_checkout_session(self, session_id):
        if self.fail_with:
            raise self.fail_with
        if session_id not in self.sessions:
            raise errors.GatewayError()
        return self.sessions[session_id]

    def pay(self, session_id, payment_intent="pi_test_1"):
        session = self.sessions[session_id]
        session.payment_status = "paid"
        session.payment_intent = payment_intent
        return session


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def client(db, provider):
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_provider] = lambda: provider
    yield TestClient(app)
    app.dependency_overrides.clear()


def _headers(user):
    token = auth.create_access_token({"sub": str(user.id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user(db):
    return crud.create_user(db, "diner@example.com", "secret123", full_name="Dee Diner")


@pytest.fixture
def other_user(db):
    return crud.create_user(db, "other@example.com", "secret123")


@pytest.fixture
def admin(db):
    return crud.create_user(db, "admin@example.com", "secret123", is_admin=True)


@pytest.fixture
def auth_headers(user):
    return _headers(user)


@pytest.fixture
def other_headers(other_user):
    return _headers(other_user)


@pytest.fixture
def admin_headers(admin):
    return _headers(admin)


@pytest.fixture
def menu(db):
    bread = crud.create_product(
        db,
        schemas.ProductCreate(name="Garlic Bread", price="5.00", category="Sides"),
    )
    pizza = crud.create_product(
        db,
        schemas.ProductCreate(
            name="Margherita",
            price="8.00",
            category="Pizza",
            option_groups=[
                {
                    "name": "Extras",
                    "max_selections": 2,
                    "options": [
                        {"name": "Extra Cheese", "price_modifier": "1.50"},
                        {"name": "Olives", "price_modifier": "0.80", "sort_order": 1},
                        {"name": "Basil", "price_modifier": "0.20", "sort_order": 2},
                    ],
                }
            ],
        ),
    )
    coffee = crud.create_product(
        db,
        schemas.ProductCreate(
            name="Coffee",
            price="2.50",
            category="Drinks",
            available_for_delivery=False,
            option_groups=[
                {
                    "name": "Size",
                    "is_required": True,
                    "min_selections": 1,
                    "max_selections": 1,
                    "options": [
                        {"name": "Small", "price_modifier": "0"},
                        {"name": "Large", "price_modifier": "0.70", "sort_order": 1},
                    ],
                }
            ],
        ),
    )
    extras = pizza.option_groups[0]
    size = coffee.option_groups[0]
    return SimpleNamespace(
        bread=bread,
        pizza=pizza,
        coffee=coffee,
        cheese={"group_id": extras.id, "option_id": extras.options[0].id},
        olives={"group_id": extras.id, "option_id": extras.options[1].id},
        basil={"group_id": extras.id, "option_id": extras.options[2].id},
        large={"group_id": size.id, "option_id": size.options[1].id},
    )


@pytest.fixture
def config(db):
    return crud.get_restaurant_config(db)
