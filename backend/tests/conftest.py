"""
Shared fixtures for the Cupid's Arrow test suite.

Each test gets its own SQLite database file, and the app's dependencies
(database session, gateways, email) are overridden with fakes that record
what they were asked to do.
"""
import hashlib
import hmac
import json
import time

import pytest
from httpx import AsyncClient, ASGITransport

from db.database import Base, build_engine, build_session_factory, get_db
from services.email_service import EmailService, get_email_service
from services.errors import EmailDeliveryError, GatewayError
from services.payment_gateways import (
    GatewayCheckout, RazorpayGateway, StripeGateway,
    get_razorpay_gateway, get_stripe_gateway,
)
from services.rate_limit import limiter
from server import app

RAZORPAY_KEY_SECRET = "rzp_test_secret"
RAZORPAY_WEBHOOK_SECRET = "rzp_webhook_secret"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"


class FakeEmailService(EmailService):
    """Renders the real templates but records sends instead of calling Resend"""

    def __init__(self):
        super().__init__()
        self.api_key = "re_test"
        self.sent = []
        self.fail = False

    async def send_email(self, to_email, subject, html_content, tags=None):
        if self.fail:
            raise EmailDeliveryError("Email API returned 500")
        self.sent.append({"to": to_email, "subject": subject, "html": html_content, "tags": tags})
        return f"email_{len(self.sent)}"

    def sent_to(self, address):
        return [m for m in self.sent if m["to"] == address]


class FakeRazorpayGateway(RazorpayGateway):
    def __init__(self):
        super().__init__()
        self.key_id = "rzp_test_key"
        self.key_secret = RAZORPAY_KEY_SECRET
        self.webhook_secret = RAZORPAY_WEBHOOK_SECRET
        self.orders = []
        self.fail = False

    async def create_order(self, amount, currency, receipt, notes=None):
        if self.fail:
            raise GatewayError("Failed to create payment order")
        order_id = f"order_test{len(self.orders) + 1}"
        self.orders.append({"id": order_id, "amount": amount, "currency": currency, "receipt": receipt, "notes": notes})
        return GatewayCheckout(reference=order_id, amount=amount, currency=currency)


class FakeStripeGateway(StripeGateway):
    def __init__(self):
        super().__init__()
        self.api_key = "sk_test_key"
        self.webhook_secret = STRIPE_WEBHOOK_SECRET
        self.sessions = []
        self.fail = False

    async def create_checkout_session(self, amount, currency, product_name, description,
                                      customer_email, success_url, cancel_url, metadata):
        if self.fail:
            raise GatewayError("Failed to create checkout session")
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions.append({
            "id": session_id, "amount": amount, "currency": currency,
            "success_url": success_url, "cancel_url": cancel_url, "metadata": metadata,
        })
        return GatewayCheckout(
            reference=session_id,
            amount=amount,
            currency=currency,
            checkout_url=f"https://checkout.stripe.com/c/pay/{session_id}",
        )


@pytest.fixture
async def engine(tmp_path):
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def email_service():
    return FakeEmailService()


@pytest.fixture
def razorpay():
    return FakeRazorpayGateway()


@pytest.fixture
def stripe_gateway():
    return FakeStripeGateway()


@pytest.fixture
async def client(session_factory, email_service, razorpay, stripe_gateway, monkeypatch):
    """API client wired to the test database and fakes"""
    monkeypatch.setenv("ADMIN_NOTIFY_EMAIL", "admin@cupidsarrow.app")
    monkeypatch.setenv("API_BASE_URL", "https://api.test")
    monkeypatch.setenv("APP_URL", "https://app.test")

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_email_service] = lambda: email_service
    app.dependency_overrides[get_razorpay_gateway] = lambda: razorpay
    app.dependency_overrides[get_stripe_gateway] = lambda: stripe_gateway
    limiter.enabled = False

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    limiter.enabled = True


# ============================================
# SIGNING HELPERS
# ============================================

def razorpay_webhook_signature(raw_body: bytes, secret: str = RAZORPAY_WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def razorpay_checkout_signature(order_id: str, payment_id: str, secret: str = RAZORPAY_KEY_SECRET) -> str:
    return hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


def stripe_signature_header(raw_body: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp=None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode() + raw_body
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def razorpay_event(event: str, order_id: str, payment_id: str = "pay_rzp_1", **entity) -> bytes:
    payment = {"id": payment_id, "order_id": order_id, **entity}
    return json.dumps({"event": event, "payload": {"payment": {"entity": payment}}}).encode()


def stripe_event(event_type: str, obj: dict) -> bytes:
    return json.dumps({
        "id": "evt_test_1",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }).encode()


CRUSH_PAYLOAD = {
    "experience_type": "CRUSH",
    "recipient_name": "Asha",
    "recipient_email": "Asha@Example.com",
    "sender_name": "Ravi",
    "sender_email": "ravi@example.com",
    "content": {"note": "You light up every room"},
    "timezone": "Asia/Kolkata",
}


@pytest.fixture
async def experience_id(client):
    """A fresh CRUSH experience priced for India"""
    response = await client.post("/api/experiences", json=CRUSH_PAYLOAD)
    assert response.status_code == 201
    return response.json()["experience_id"]
