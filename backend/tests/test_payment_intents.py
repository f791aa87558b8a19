"""
Payment Intent Factory Tests (Razorpay order / Stripe Checkout session)
"""
from sqlalchemy import select, func

from db.models import Experience, PaymentAttempt


async def _attempts(session_factory, experience_id):
    async with session_factory() as session:
        return (await session.execute(
            select(PaymentAttempt).where(PaymentAttempt.experience_id == experience_id)
        )).scalars().all()


async def _state(session_factory, experience_id):
    async with session_factory() as session:
        return (await session.execute(
            select(Experience.lifecycle_state).where(Experience.experience_id == experience_id)
        )).scalar_one()


class TestRazorpayOrder:

    async def test_creates_pending_attempt_and_moves_to_preview(self, client, session_factory, razorpay, experience_id):
        response = await client.post("/api/payments/razorpay/order", json={"experience_id": experience_id})

        assert response.status_code == 200
        data = response.json()
        assert data["order_id"] == "order_test1"
        assert data["amount"] == 4900
        assert data["currency"] == "INR"
        assert data["key_id"] == "rzp_test_key"
        assert data["reused"] is False

        order = razorpay.orders[0]
        assert order["notes"]["experience_id"] == experience_id
        assert order["receipt"] == f"exp_{experience_id.split('_', 1)[1][:8]}"

        attempts = await _attempts(session_factory, experience_id)
        assert len(attempts) == 1
        assert attempts[0].status == "PENDING"
        assert attempts[0].gateway_reference == "order_test1"
        assert await _state(session_factory, experience_id) == "PREVIEW"

    async def test_pending_attempt_is_reused(self, client, session_factory, razorpay, experience_id):
        first = await client.post("/api/payments/razorpay/order", json={"experience_id": experience_id})
        second = await client.post("/api/payments/razorpay/order", json={"experience_id": experience_id})

        assert second.json()["order_id"] == first.json()["order_id"]
        assert second.json()["reused"] is True
        assert len(razorpay.orders) == 1
        assert len(await _attempts(session_factory, experience_id)) == 1

    async def test_gateway_failure_persists_nothing(self, client, session_factory, razorpay, experience_id):
        razorpay.fail = True

        response = await client.post("/api/payments/razorpay/order", json={"experience_id": experience_id})

        assert response.status_code == 502
        assert await _attempts(session_factory, experience_id) == []
        assert await _state(session_factory, experience_id) == "DRAFT"

    async def test_unknown_experience(self, client):
        response = await client.post("/api/payments/razorpay/order", json={"experience_id": "exp_missing"})
        assert response.status_code == 404

    async def test_paid_experience_rejected(self, client, session_factory, razorpay, experience_id):
        async with session_factory() as session:
            experience = (await session.execute(
                select(Experience).where(Experience.experience_id == experience_id)
            )).scalar_one()
            experience.lifecycle_state = "SENT"
            await session.commit()

        response = await client.post("/api/payments/razorpay/order", json={"experience_id": experience_id})

        assert response.status_code == 409
        assert razorpay.orders == []

    async def test_international_experience_charged_in_inr(self, client, razorpay):
        created = await client.post("/api/experiences", json={
            "experience_type": "COUPLE",
            "recipient_name": "Sam",
            "recipient_email": "sam@example.com",
            "content": {"admiration_messages": ["Your laugh"]},
            "timezone": "Europe/London",
        })
        assert created.json()["currency"] == "USD"

        response = await client.post(
            "/api/payments/razorpay/order", json={"experience_id": created.json()["experience_id"]}
        )
        assert response.json()["currency"] == "INR"
        assert response.json()["amount"] == 9900


class TestStripeCheckout:

    async def test_creates_session(self, client, session_factory, stripe_gateway, experience_id):
        response = await client.post(
            "/api/payments/stripe/checkout", json={"experience_id": experience_id, "currency": "gbp"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["session_id"] == "cs_test_1"
        assert data["checkout_url"].endswith("cs_test_1")

        session = stripe_gateway.sessions[0]
        assert session["amount"] == 159
        assert session["metadata"]["experience_id"] == experience_id
        assert session["success_url"] == (
            f"https://app.test/create/payment/success?session_id={{CHECKOUT_SESSION_ID}}&experience_id={experience_id}"
        )
        assert session["cancel_url"] == f"https://app.test/create/payment/cancel?experience_id={experience_id}"
        assert await _state(session_factory, experience_id) == "PREVIEW"

    async def test_reuse_returns_checkout_url(self, client, stripe_gateway, experience_id):
        first = await client.post("/api/payments/stripe/checkout", json={"experience_id": experience_id})
        second = await client.post("/api/payments/stripe/checkout", json={"experience_id": experience_id})

        assert second.json()["reused"] is True
        assert second.json()["checkout_url"] == first.json()["checkout_url"]
        assert len(stripe_gateway.sessions) == 1

    async def test_unsupported_currency(self, client, session_factory, stripe_gateway, experience_id):
        response = await client.post(
            "/api/payments/stripe/checkout", json={"experience_id": experience_id, "currency": "jpy"}
        )

        assert response.status_code == 400
        assert stripe_gateway.sessions == []
        async with session_factory() as session:
            count = (await session.execute(select(func.count(PaymentAttempt.id)))).scalar_one()
        assert count == 0
