"""Shared fixtures: an in-memory Motor database, a fake Stripe gateway and an HTTP client."""
import json
import os
from datetime import timedelta

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "garage_test")

import httpx
import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

from errors import Forbidden
from models import ROLE_CONTRACTOR, ROLE_USER, Car, SessionData, User, utcnow
from server import app, get_db, get_optional_payment_gateway, get_payment_gateway


class FakeGateway:
    """Stands in for StripeGateway; tests flip intents to succeeded by hand."""

    currency = "usd"

    def __init__(self):
        self.intents = {}
        self.created = []
        self.canceled = []

    async def create_payment_intent(self, amount_cents, metadata, idempotency_key, receipt_email=None, shipping=None):
        self.created.append({
            "amount": amount_cents,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
            "receipt_email": receipt_email,
            "shipping": shipping,
        })
        intent_id = f"pi_{len(self.intents) + 1}"
        for intent in self.intents.values():
            if intent["idempotency_key"] == idempotency_key:
                return intent
        intent = {
            "id": intent_id,
            "client_secret": f"{intent_id}_secret",
            "amount": amount_cents,
            "currency": self.currency,
            "metadata": dict(metadata),
            "status": "requires_payment_method",
            "idempotency_key": idempotency_key,
        }
        self.intents[intent_id] = intent
        return intent

    async def retrieve_payment_intent(self, intent_id):
        return self.intents[intent_id]

    async def cancel_payment_intent(self, intent_id):
        self.canceled.append(intent_id)
        self.intents[intent_id]["status"] = "canceled"
        return self.intents[intent_id]

    def construct_event(self, payload, signature):
        if signature != "valid":
            raise Forbidden("Invalid webhook signature")
        return json.loads(payload)

    def succeed(self, intent_id):
        self.intents[intent_id]["status"] = "succeeded"


@pytest.fixture
def db():
    return AsyncMongoMockClient()["garage_test"]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_car(db):
    async def _make_car(**overrides):
        fields = {
            "make": "Ferrari",
            "model": "F40",
            "year": 1991,
            "asking_price": 100000,
            "min_price": 90000,
            "is_listed": True,
        }
        fields.update(overrides)
        car = Car(**fields).model_dump()
        await db.cars.insert_one(dict(car))
        return car
    return _make_car


@pytest.fixture
def make_user(db):
    async def _make_user(name="Buyer", role=ROLE_USER):
        user = User(email=f"{name.lower()}@example.com", display_name=name, role=role)
        await db.users.insert_one(user.model_dump())
        return user
    return _make_user


@pytest_asyncio.fixture
async def contractor(make_user):
    return await make_user("House", role=ROLE_CONTRACTOR)


@pytest.fixture
def auth_headers(db):
    async def _auth_headers(user):
        session = SessionData(
            session_token=f"token-{user.id}",
            user_id=user.id,
            expires_at=utcnow() + timedelta(days=1),
        )
        await db.sessions.insert_one(session.model_dump())
        return {"Authorization": f"Bearer {session.session_token}"}
    return _auth_headers


@pytest_asyncio.fixture
async def api(db, gateway):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_optional_payment_gateway] = lambda: gateway
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    app.dependency_overrides.clear()
