"""
Payment Intent Factory: mints a gateway order/session for an experience and
persists the PENDING attempt that completion signals will later reference.

The gateway call happens before anything is written, so a gateway failure
leaves no trace in the database.
"""
import os
import logging
from typing import Optional, Dict, Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import (
    Experience, PaymentAttempt, PaymentGateway, PaymentAttemptStatus,
    LifecycleState, is_paid_or_later,
)
from services.analytics_service import AnalyticsService, EventType
from services.delivery_service import get_experience_or_404, DEFAULT_APP_URL
from services.errors import AlreadyPaidError, ValidationError
from services.logging_service import log_lifecycle_transition
from services.payment_gateways import RazorpayGateway, StripeGateway, GatewayCheckout
from services.pricing import STRIPE_PRICE_MAP, stripe_price_for, price_for

logger = logging.getLogger(__name__)

RAZORPAY_CURRENCY = "INR"

PRODUCT_NAMES = {
    "CRUSH": "Crush Valentine Experience",
    "COUPLE": "Couple Love Story Experience",
}


def stripe_success_url(app_url: str, experience_id: str) -> str:
    return f"{app_url.rstrip('/')}/create/payment/success?session_id={{CHECKOUT_SESSION_ID}}&experience_id={experience_id}"


def stripe_cancel_url(app_url: str, experience_id: str) -> str:
    return f"{app_url.rstrip('/')}/create/payment/cancel?experience_id={experience_id}"


async def move_to_preview(session: AsyncSession, experience_id: str, source: str) -> bool:
    """DRAFT -> PREVIEW. PREVIEW and later states are left alone. Caller commits."""
    result = await session.execute(
        update(Experience)
        .where(
            Experience.experience_id == experience_id,
            Experience.lifecycle_state == LifecycleState.DRAFT.value,
        )
        .values(lifecycle_state=LifecycleState.PREVIEW.value)
        .execution_options(synchronize_session=False)
    )
    moved = result.rowcount == 1
    if moved:
        log_lifecycle_transition(
            experience_id,
            from_state=LifecycleState.DRAFT.value,
            to_state=LifecycleState.PREVIEW.value,
            source=source,
        )
    return moved


class PaymentIntentService:
    def __init__(
        self,
        session: AsyncSession,
        razorpay: Optional[RazorpayGateway] = None,
        stripe_gateway: Optional[StripeGateway] = None,
        app_url: Optional[str] = None
    ):
        self.session = session
        self.razorpay = razorpay
        self.stripe = stripe_gateway
        self.app_url = app_url or os.environ.get("APP_URL", DEFAULT_APP_URL)
        self.analytics = AnalyticsService(session)

    async def _payable_experience(self, experience_id: str) -> Experience:
        experience = await get_experience_or_404(self.session, experience_id)
        if is_paid_or_later(experience.lifecycle_state):
            raise AlreadyPaidError("This experience has already been paid for")
        return experience

    async def _pending_attempt(self, experience_id: str, gateway: PaymentGateway) -> Optional[PaymentAttempt]:
        result = await self.session.execute(
            select(PaymentAttempt)
            .where(
                PaymentAttempt.experience_id == experience_id,
                PaymentAttempt.gateway == gateway.value,
                PaymentAttempt.status == PaymentAttemptStatus.PENDING.value,
            )
            .order_by(PaymentAttempt.id.desc())
        )
        return result.scalars().first()

    async def _persist_attempt(
        self,
        experience: Experience,
        gateway: PaymentGateway,
        checkout: GatewayCheckout
    ) -> PaymentAttempt:
        attempt = PaymentAttempt(
            experience_id=experience.experience_id,
            gateway=gateway.value,
            gateway_reference=checkout.reference,
            status=PaymentAttemptStatus.PENDING.value,
            amount=checkout.amount,
            currency=checkout.currency,
            checkout_url=checkout.checkout_url,
        )
        self.session.add(attempt)
        await move_to_preview(self.session, experience.experience_id, source=f"{gateway.value}_intent")
        await self.session.flush()

        await self.analytics.record(
            experience.experience_id,
            EventType.PAYMENT_INITIATED,
            {
                "attempt_id": attempt.attempt_id,
                "gateway": gateway.value,
                "amount": checkout.amount,
                "currency": checkout.currency,
            },
            commit=False,
        )
        await self.session.commit()
        logger.info(f"Created {gateway.value} attempt {attempt.attempt_id} for {experience.experience_id}")
        return attempt

    async def initiate_razorpay(self, experience_id: str) -> Dict[str, Any]:
        """Create (or reuse) a Razorpay order for the experience's INR price"""
        experience = await self._payable_experience(experience_id)

        existing = await self._pending_attempt(experience_id, PaymentGateway.RAZORPAY)
        if existing:
            logger.info(f"Reusing pending Razorpay order {existing.gateway_reference} for {experience_id}")
            return self._razorpay_response(experience, existing, reused=True)

        amount = experience.amount_due
        if experience.currency != RAZORPAY_CURRENCY:
            # Razorpay only settles INR; fall back to the Indian price
            amount, _ = price_for(experience.experience_type, "IN")

        checkout = await self.razorpay.create_order(
            amount=amount,
            currency=RAZORPAY_CURRENCY,
            receipt=f"exp_{experience_id.split('_', 1)[-1][:8]}",
            notes={
                "experience_id": experience_id,
                "experience_type": experience.experience_type,
                "recipient_email": experience.recipient_email,
            },
        )
        attempt = await self._persist_attempt(experience, PaymentGateway.RAZORPAY, checkout)
        return self._razorpay_response(experience, attempt, reused=False)

    def _razorpay_response(self, experience: Experience, attempt: PaymentAttempt, reused: bool) -> Dict[str, Any]:
        return {
            "order_id": attempt.gateway_reference,
            "attempt_id": attempt.attempt_id,
            "amount": attempt.amount,
            "currency": attempt.currency,
            "key_id": self.razorpay.key_id if self.razorpay else "",
            "experience_id": experience.experience_id,
            "prefill": {"name": experience.sender_name or ""},
            "reused": reused,
        }

    async def initiate_stripe(self, experience_id: str, currency: str = "usd") -> Dict[str, Any]:
        """Create (or reuse) a Stripe Checkout session"""
        currency = (currency or "usd").lower()
        if currency not in STRIPE_PRICE_MAP:
            raise ValidationError(f"Unsupported currency: {currency}")

        experience = await self._payable_experience(experience_id)

        existing = await self._pending_attempt(experience_id, PaymentGateway.STRIPE)
        if existing and existing.currency == currency:
            logger.info(f"Reusing pending Stripe session {existing.gateway_reference} for {experience_id}")
            return {
                "checkout_url": existing.checkout_url,
                "session_id": existing.gateway_reference,
                "attempt_id": existing.attempt_id,
                "reused": True,
            }

        amount = stripe_price_for(experience.experience_type, currency)
        checkout = await self.stripe.create_checkout_session(
            amount=amount,
            currency=currency,
            product_name=PRODUCT_NAMES[experience.experience_type],
            description=f"A special Valentine experience for {experience.recipient_name}",
            customer_email=experience.sender_email,
            success_url=stripe_success_url(self.app_url, experience_id),
            cancel_url=stripe_cancel_url(self.app_url, experience_id),
            metadata={
                "experience_id": experience_id,
                "experience_type": experience.experience_type,
            },
        )
        attempt = await self._persist_attempt(experience, PaymentGateway.STRIPE, checkout)
        return {
            "checkout_url": checkout.checkout_url,
            "session_id": checkout.reference,
            "attempt_id": attempt.attempt_id,
            "reused": False,
        }
