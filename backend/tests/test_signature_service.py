"""
Signature Verifier Tests

All variants must fail closed: a missing secret, a missing header or a
mismatch is an InvalidSignatureError.
"""
import json
import time
from datetime import datetime, timezone, timedelta

import pytest

from db.models import Experience, PaymentAttempt, ManualPaymentClaim
from services.errors import (
    InvalidSignatureError, InvalidTokenError, AlreadyReviewedError, ValidationError
)
from services.signature_service import (
    compute_hmac_sha256, verify_razorpay_webhook, verify_razorpay_checkout,
    verify_stripe_webhook, ApprovalTokenVerifier,
)
from conftest import (
    razorpay_webhook_signature, razorpay_checkout_signature, stripe_signature_header,
    RAZORPAY_WEBHOOK_SECRET, RAZORPAY_KEY_SECRET, STRIPE_WEBHOOK_SECRET,
)

BODY = b'{"event":"payment.captured"}'


class TestRazorpayWebhook:

    def test_valid_signature(self):
        verify_razorpay_webhook(BODY, razorpay_webhook_signature(BODY), RAZORPAY_WEBHOOK_SECRET)

    def test_signature_over_different_body(self):
        signature = razorpay_webhook_signature(b'{"event":"payment.failed"}')
        with pytest.raises(InvalidSignatureError):
            verify_razorpay_webhook(BODY, signature, RAZORPAY_WEBHOOK_SECRET)

    def test_missing_header(self):
        with pytest.raises(InvalidSignatureError):
            verify_razorpay_webhook(BODY, None, RAZORPAY_WEBHOOK_SECRET)

    def test_unconfigured_secret_fails_closed(self):
        with pytest.raises(InvalidSignatureError):
            verify_razorpay_webhook(BODY, razorpay_webhook_signature(BODY), "")

    def test_hmac_is_hex(self):
        digest = compute_hmac_sha256("secret", b"body")
        assert len(digest) == 64
        int(digest, 16)


class TestRazorpayCheckout:

    def test_valid_signature(self):
        signature = razorpay_checkout_signature("order_1", "pay_1")
        verify_razorpay_checkout("order_1", "pay_1", signature, RAZORPAY_KEY_SECRET)

    def test_swapped_ids_rejected(self):
        signature = razorpay_checkout_signature("pay_1", "order_1")
        with pytest.raises(InvalidSignatureError):
            verify_razorpay_checkout("order_1", "pay_1", signature, RAZORPAY_KEY_SECRET)

    def test_webhook_secret_does_not_sign_checkout(self):
        signature = razorpay_checkout_signature("order_1", "pay_1", secret=RAZORPAY_WEBHOOK_SECRET)
        with pytest.raises(InvalidSignatureError):
            verify_razorpay_checkout("order_1", "pay_1", signature, RAZORPAY_KEY_SECRET)


class TestStripeWebhook:

    def _body(self):
        return json.dumps({
            "id": "evt_1", "object": "event", "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_test_1"}},
        }).encode()

    def test_valid_signature_returns_event(self):
        body = self._body()
        event = verify_stripe_webhook(body, stripe_signature_header(body), STRIPE_WEBHOOK_SECRET)
        assert event["type"] == "checkout.session.completed"

    def test_tampered_body(self):
        body = self._body()
        header = stripe_signature_header(body)
        with pytest.raises(InvalidSignatureError):
            verify_stripe_webhook(body.replace(b"cs_test_1", b"cs_test_2"), header, STRIPE_WEBHOOK_SECRET)

    def test_stale_timestamp(self):
        body = self._body()
        header = stripe_signature_header(body, timestamp=int(time.time()) - 301)
        with pytest.raises(InvalidSignatureError):
            verify_stripe_webhook(body, header, STRIPE_WEBHOOK_SECRET)

    def test_future_timestamp(self):
        body = self._body()
        header = stripe_signature_header(body, timestamp=int(time.time()) + 600)
        with pytest.raises(InvalidSignatureError):
            verify_stripe_webhook(body, header, STRIPE_WEBHOOK_SECRET)

    def test_within_tolerance(self):
        body = self._body()
        header = stripe_signature_header(body, timestamp=int(time.time()) - 120)
        verify_stripe_webhook(body, header, STRIPE_WEBHOOK_SECRET)

    def test_header_without_timestamp(self):
        with pytest.raises(InvalidSignatureError):
            verify_stripe_webhook(self._body(), "v1=deadbeef", STRIPE_WEBHOOK_SECRET)

    def test_missing_secret(self):
        body = self._body()
        with pytest.raises(InvalidSignatureError):
            verify_stripe_webhook(body, stripe_signature_header(body), None)


async def _claim(session, token="tok_valid", expires_in=timedelta(hours=72), reviewed=False):
    experience = Experience(
        experience_type="CRUSH", lifecycle_state="PREVIEW", content={},
        amount_due=4900, currency="INR", recipient_name="Asha", recipient_email="asha@example.com",
    )
    session.add(experience)
    await session.flush()
    attempt = PaymentAttempt(
        experience_id=experience.experience_id, gateway="manual", amount=4900, currency="INR",
    )
    session.add(attempt)
    await session.flush()
    claim = ManualPaymentClaim(
        experience_id=experience.experience_id,
        attempt_id=attempt.attempt_id,
        name="Ravi",
        email="ravi@example.com",
        payment_method="upi",
        transaction_id="TXN123456",
        approval_token=token,
        token_expires_at=datetime.now(timezone.utc) + expires_in,
        reviewed=reviewed,
    )
    session.add(claim)
    await session.commit()
    return claim


class TestApprovalToken:

    async def test_valid_token(self, db_session):
        claim = await _claim(db_session)
        found = await ApprovalTokenVerifier(db_session).verify("tok_valid")
        assert found.claim_id == claim.claim_id

    async def test_missing_token(self, db_session):
        with pytest.raises(ValidationError):
            await ApprovalTokenVerifier(db_session).verify("  ")

    async def test_unknown_token(self, db_session):
        await _claim(db_session)
        with pytest.raises(InvalidTokenError):
            await ApprovalTokenVerifier(db_session).verify("tok_guess")

    async def test_expired_token(self, db_session):
        await _claim(db_session, expires_in=timedelta(minutes=-1))
        with pytest.raises(InvalidTokenError):
            await ApprovalTokenVerifier(db_session).verify("tok_valid")

    async def test_reviewed_token(self, db_session):
        await _claim(db_session, reviewed=True)
        with pytest.raises(AlreadyReviewedError):
            await ApprovalTokenVerifier(db_session).verify("tok_valid")
