import hashlib
import hmac
import json
import time

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from config import Settings, default_plans, get_settings


class FakeMailer:
    def __init__(self):
        self.sent = []
        self.error = None

    def send(self, to, subject, html, text, from_name=None):
        if self.error:
            raise self.error
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text, "from_name": from_name})
        return f"<msg-{len(self.sent)}@example.com>"


class FakeStripe:
    def __init__(self):
        self.calls = []
        self.subscriptions = {}
        self.error = None

    def create_checkout_session(self, **kwargs):
        self.calls.append(("checkout", kwargs))
        if self.error:
            raise self.error
        return {"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}

    def create_portal_session(self, customer_id, return_url):
        self.calls.append(("portal", customer_id, return_url))
        if self.error:
            raise self.error
        return {"url": f"https://billing.stripe.test/{customer_id}"}

    def retrieve_subscription(self, subscription_id):
        self.calls.append(("retrieve", subscription_id))
        if self.error:
            raise self.error
        return self.subscriptions[subscription_id]


def stripe_subscription(sub_id="sub_1", customer="cus_1", price_id="price_premium", status="active", period_end=1893456000, cancel=False):
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_end": period_end,
        "cancel_at_period_end": cancel,
        "items": {"data": [{"price": {"id": price_id}}]},
    }


def sign(payload: bytes, secret: str = "whsec_test", timestamp: int = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def event_body(event_type: str, obj: dict) -> bytes:
    return json.dumps({"id": "evt_1", "type": event_type, "data": {"object": obj}}).encode()


@pytest.fixture
def mongo(monkeypatch):
    db = mongomock.MongoClient()["simply_invoicing_test"]
    monkeypatch.setattr(database, "db", db)
    monkeypatch.setattr(main, "db", db)
    monkeypatch.setattr(main, "PBKDF2_ITERATIONS", 1000)
    return db


@pytest.fixture
def settings():
    return Settings(
        app_url="https://app.example.com",
        admin_emails=["owner@example.com"],
        smtp_host="smtp.example.com",
        email_from="billing@example.com",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test",
        plans=default_plans("price_basic", "price_premium"),
    )


@pytest.fixture
def fake_mailer():
    return FakeMailer()


@pytest.fixture
def fake_stripe():
    return FakeStripe()


@pytest.fixture
def client(mongo, settings, fake_mailer, fake_stripe):
    main.app.dependency_overrides[get_settings] = lambda: settings
    main.app.dependency_overrides[main.get_optional_mailer] = lambda: fake_mailer
    main.app.dependency_overrides[main.get_stripe_client] = lambda: fake_stripe
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


@pytest.fixture
def register(client):
    def _register(email="alice@example.com", password="secret123", display_name=None):
        r = client.post("/auth/register", json={"email": email, "password": password, "display_name": display_name})
        assert r.status_code == 200, r.text
        body = r.json()
        return {"Authorization": f"Bearer {body['token']}"}, body["user"]
    return _register
