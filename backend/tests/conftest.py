"""
Pytest fixtures for the Gadget Store backend.

Provides an in-memory Mongo database, a stubbed Resend SDK, a stub Stripe
SDK, seeded accounts and a product factory.
"""

from types import SimpleNamespace

import mongomock
import pytest
import resend
from flask_jwt_extended import create_access_token

from app import create_app
from helpers import utcnow

TEST_CONFIG = {
    "TESTING": True,
    "JWT_SECRET_KEY": "test-secret-key-with-enough-length-for-hs256",
    "RESEND_API_KEY": "re_test_key",
    "STRIPE_SECRET_KEY": "sk_test_key",
    "CLIENT_URL": "http://client.test",
    "MAIL_MAX_ATTEMPTS": 3,
}


class StubCheckoutSessions:
    """Records ``checkout.Session.create`` calls and answers with a canned session."""

    def __init__(self):
        self.calls = []
        self.response = {"id": "cs_test_123", "object": "checkout.session"}
        self.error = None

    def create(self, **params):
        self.calls.append(params)
        if self.error is not None:
            raise self.error
        return self.response


class StubStripe:
    """Stands in for the ``stripe`` module: only ``checkout.Session`` is used."""

    def __init__(self):
        self.checkout = SimpleNamespace(Session=StubCheckoutSessions())

    @property
    def sessions(self):
        return self.checkout.Session


@pytest.fixture
def db():
    return mongomock.MongoClient().gadgetstore_test


@pytest.fixture
def stripe_sdk():
    return StubStripe()


@pytest.fixture
def sent_emails(monkeypatch):
    sent = []

    def fake_send(payload):
        sent.append({"payload": payload, "api_key": resend.api_key})
        return {"id": f"email-{len(sent)}"}

    monkeypatch.setattr(resend.Emails, "send", fake_send)
    return sent


@pytest.fixture
def failing_mail(monkeypatch, sent_emails):
    attempts = []

    def fake_send(payload):
        attempts.append(payload)
        raise RuntimeError("provider down")

    monkeypatch.setattr(resend.Emails, "send", fake_send)
    return attempts


@pytest.fixture
def app(db, stripe_sdk, sent_emails):
    app = create_app(dict(TEST_CONFIG), database=db, stripe_client=stripe_sdk)
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return app.extensions["gadget_store"]


def _insert_user(db, name, email, role):
    return db.users.insert_one(
        {
            "name": name,
            "email": email,
            "password_hash": b"not-a-real-hash",
            "phone_number": "+55 11 91234-5678",
            "role": role,
            "address": {"city": "Sao Paulo", "country": "Brazil"},
            "transactions": [],
            "created_at": utcnow(),
        }
    ).inserted_id


@pytest.fixture
def consumer_id(db):
    return _insert_user(db, "Consumer", "consumer@example.com", "CONSUMER")


@pytest.fixture
def other_consumer_id(db):
    return _insert_user(db, "Other", "other@example.com", "CONSUMER")


@pytest.fixture
def admin_id(db):
    return _insert_user(db, "Admin", "admin@example.com", "ADMIN")


def _headers_for(email):
    token = create_access_token(identity=email)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def consumer_headers(app, consumer_id):
    return _headers_for("consumer@example.com")


@pytest.fixture
def admin_headers(app, admin_id):
    return _headers_for("admin@example.com")


@pytest.fixture
def make_product(db):
    def factory(**overrides):
        document = {
            "category": "Smartphones",
            "model": "Galaxy S21",
            "brand": "Samsung",
            "cost": 150.0,
            "price": 199.99,
            "discount": 0,
            "description": "Flagship phone",
            "color": "Phantom Gray",
            "condition": "NEW",
            "image_url": ["https://cdn.example.com/s21.png"],
            "qtt_in_stock": 5,
            "transactions": [],
        }
        document.update(overrides)
        return db.products.insert_one(document).inserted_id

    return factory


@pytest.fixture
def purchase(client, consumer_headers):
    def submit(*items, headers=None, buyer_id=None):
        body = {"products": [{"productId": str(pid), "qtt": qtt} for pid, qtt in items]}
        if buyer_id is not None:
            body["buyerId"] = str(buyer_id)
        return client.post("/transaction", json=body, headers=headers or consumer_headers)

    return submit
