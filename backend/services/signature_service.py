"""
Signature verification for inbound completion signals.

Every variant fails closed and runs before any mutation:
- Razorpay webhook: hex HMAC-SHA256 of the raw body
- Razorpay checkout: hex HMAC-SHA256 of "order_id|payment_id"
- Stripe webhook: HMAC-SHA256 of "t.body" with a timestamp tolerance window
- Approval token: single-use, expiring capability looked up in the database
"""
import hmac
import hashlib
import logging
import time
from datetime import datetime, timezone
from typing import Optional

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ManualPaymentClaim
from services.errors import (
    InvalidSignatureError, InvalidTokenError, AlreadyReviewedError, ValidationError
)

logger = logging.getLogger(__name__)

STRIPE_TIMESTAMP_TOLERANCE = 300  # seconds


def compute_hmac_sha256(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _require(secret: Optional[str], signature: Optional[str], source: str):
    if not secret:
        logger.error(f"{source} secret not configured - rejecting signal")
        raise InvalidSignatureError(f"{source} signature verification not configured")
    if not signature:
        logger.warning(f"Missing {source} signature")
        raise InvalidSignatureError("Missing signature")


def verify_razorpay_webhook(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """Check X-Razorpay-Signature against the raw request body"""
    _require(secret, signature, "Razorpay webhook")
    expected = compute_hmac_sha256(secret, raw_body)
    if not hmac.compare_digest(expected, signature):
        logger.warning("Invalid Razorpay webhook signature")
        raise InvalidSignatureError("Invalid signature")


def verify_razorpay_checkout(order_id: str, payment_id: str, signature: Optional[str], key_secret: Optional[str]) -> None:
    """Check the signature Razorpay Checkout hands back to the browser"""
    _require(key_secret, signature, "Razorpay checkout")
    expected = compute_hmac_sha256(key_secret, f"{order_id}|{payment_id}".encode())
    if not hmac.compare_digest(expected, signature):
        logger.warning(f"Invalid Razorpay payment signature for order {order_id}")
        raise InvalidSignatureError("Invalid payment signature")


def _stripe_header_timestamp(signature_header: str) -> Optional[int]:
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t" and value.isdigit():
            return int(value)
    return None


def verify_stripe_webhook(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    tolerance: int = STRIPE_TIMESTAMP_TOLERANCE
):
    """
    Verify a Stripe webhook and return the parsed event.

    The SDK rejects stale timestamps; timestamps too far in the future are
    rejected here so the skew window applies in both directions.
    """
    _require(secret, signature_header, "Stripe webhook")

    timestamp = _stripe_header_timestamp(signature_header)
    if timestamp is None or timestamp - time.time() > tolerance:
        logger.warning("Stripe webhook timestamp missing or outside tolerance")
        raise InvalidSignatureError("Invalid signature timestamp")

    try:
        return stripe.Webhook.construct_event(raw_body, signature_header, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Stripe webhook signature verification failed: {e}")
        raise InvalidSignatureError("Invalid signature") from e
    except ValueError as e:
        raise ValidationError("Malformed webhook payload") from e


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def token_expired(claim: ManualPaymentClaim) -> bool:
    return _as_utc(claim.token_expires_at) < datetime.now(timezone.utc)


class ApprovalTokenVerifier:
    """Resolves an admin approval token to the claim it authorizes"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def verify(self, token: Optional[str]) -> ManualPaymentClaim:
        if not token or not token.strip():
            raise ValidationError("Missing approval token")

        result = await self.session.execute(
            select(ManualPaymentClaim).where(ManualPaymentClaim.approval_token == token.strip())
        )
        claim = result.scalar_one_or_none()

        if claim is None:
            logger.warning("Approval attempted with unknown token")
            raise InvalidTokenError("Invalid or expired approval link")

        if claim.reviewed:
            raise AlreadyReviewedError("Payment was already approved", claim=claim)

        if token_expired(claim):
            logger.warning(f"Expired approval token used for claim {claim.claim_id}")
            raise InvalidTokenError("Invalid or expired approval link")

        return claim
