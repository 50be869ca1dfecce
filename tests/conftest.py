import hashlib
import hmac
import json
import time
import uuid

import httpx
import pytest
from jose import jwt
from mongomock_motor import AsyncMongoMockClient

from shared.utils import settings
from shared.security_config import limiter
from app.errors import ValidationError
from app.main import app, get_payment_gateway
from app.orders import OrderStore
from app.payments import StripePaymentGateway, IssuedPaymentIntent

WEBHOOK_SECRET = "whsec_test_blackbird"

LATTE = {
    "_id": "prod-latte",
    "name": "Latte",
    "product_type": "drink",
    "base_price": 4.00,
    "is_active": True,
    "in_stock": True,
    "sizes": [
        {"name": "Regular", "price": 4.50, "display_order": 0, "is_default": True},
        {"name": "Large", "price": 5.25, "display_order": 1},
    ],
    "modifier_groups": [
        {
            "name": "Milk",
            "modifiers": [
                {"name": "Oat Milk", "price": 0.75, "is_available": True},
                {"name": "Almond Milk", "price": 0.75, "is_available": False},
            ],
        },
        {"name": "Extras", "modifiers": [{"name": "Extra Shot", "price": 1.00}]},
    ],
}

COMIC = {
    "_id": "prod-saga-1",
    "name": "Saga #1",
    "product_type": "comic",
    "base_price": 3.99,
}

SOLD_OUT = {
    "_id": "prod-croissant",
    "name": "Croissant",
    "product_type": "food",
    "base_price": 3.25,
    "in_stock": False,
}

RETIRED = {
    "_id": "prod-pumpkin",
    "name": "Pumpkin Spice Latte",
    "product_type": "drink",
    "base_price": 5.50,
    "is_active": False,
}

CATALOG = [LATTE, COMIC, SOLD_OUT, RETIRED]


class RecordingGateway(StripePaymentGateway):
    """Issues fake intents, keeps the params it was asked to send, and serves them back."""

    def __init__(self):
        super().__init__(api_key="sk_test_blackbird", webhook_secret=WEBHOOK_SECRET)
        self.created = []
        self.intents = {}

    async def create_payment_intent(self, params: dict) -> IssuedPaymentIntent:
        self.created.append(params)
        intent_id = f"pi_3TestBlackbird{len(self.created):04d}ab{len(self.created):06d}"
        self.intents[intent_id] = {
            "id": intent_id,
            "object": "payment_intent",
            "amount": params["amount"],
            "amount_received": 0,
            "status": "requires_payment_method",
            "metadata": dict(params["metadata"]),
        }
        return IssuedPaymentIntent(
            id=intent_id,
            client_secret=f"{intent_id}_secret_test",
            amount=params["amount"],
        )

    def settle(self, intent_id: str, amount: int = None, status: str = "succeeded", metadata: dict = None) -> dict:
        """Mark an intent as paid the way Stripe would after confirmation."""
        intent = self.intents.setdefault(intent_id, {
            "id": intent_id, "object": "payment_intent", "amount": 1113, "metadata": {},
        })
        if amount is not None:
            intent["amount"] = amount
        if metadata is not None:
            intent["metadata"] = metadata
        intent["status"] = status
        intent["amount_received"] = intent["amount"] if status == "succeeded" else 0
        return intent

    async def retrieve_payment_intent(self, payment_intent_id: str) -> dict:
        if payment_intent_id not in self.intents:
            raise ValidationError("Payment not found")
        return dict(self.intents[payment_intent_id])


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def payment_intent_event(intent: dict, event_type: str = "payment_intent.succeeded") -> str:
    return json.dumps({
        "id": f"evt_{uuid.uuid4().hex[:24]}",
        "object": "event",
        "type": event_type,
        "data": {"object": intent},
    })


def admin_token(role: str = "admin") -> str:
    return jwt.encode({"sub": "staff-1", "role": role}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


@pytest.fixture(autouse=True)
def reset_rate_limits():
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
async def db():
    database = AsyncMongoMockClient()[f"blackbird_test_{uuid.uuid4().hex[:8]}"]
    await OrderStore(database).ensure_indexes()
    await database.products.insert_many([dict(p) for p in CATALOG])
    return database


@pytest.fixture
def store(db):
    return OrderStore(db)


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
async def client(db, gateway):
    app.mongodb = db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def customer():
    return {"name": "Ada Lovelace", "email": "Ada@Example.com", "phone": "(555) 123-4567"}


@pytest.fixture
def latte_line():
    return {
        "product": {"id": "prod-latte", "name": "Latte"},
        "size": {"name": "Regular", "price": 4.50},
        "modifiers": [{"name": "Oat Milk", "price": 0.75}],
        "quantity": 2,
        "unitPrice": 5.25,
        "totalPrice": 10.50,
    }
