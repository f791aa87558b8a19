"""
Manual payment rail (UPI / PayPal with human verification).

The payer submits a transaction id; the admin receives an email with a
single-use, expiring approval link. Following that link marks the claim
reviewed and runs the same PAID transition as the gateway rails.
"""
import os
import secrets
import logging
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from html import escape
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import (
    ManualPaymentClaim, ManualPaymentMethod, PaymentAttempt, PaymentGateway,
    PaymentAttemptStatus, is_paid_or_later,
)
from services.analytics_service import AnalyticsService, EventType
from services.delivery_service import get_experience_or_404
from services.email_service import EmailService
from services.errors import (
    ValidationError, AlreadyPaidError, AlreadyReviewedError, LifecycleError, EmailDeliveryError
)
from services.lifecycle_service import LifecycleService, TransitionSource, TransitionResult
from services.payment_intent_service import move_to_preview
from services.pricing import order_ref as make_order_ref
from services.signature_service import ApprovalTokenVerifier, token_expired

logger = logging.getLogger(__name__)

MIN_TRANSACTION_ID_LENGTH = 6
DEFAULT_TOKEN_TTL_HOURS = 72


def approval_url(api_base_url: str, token: str) -> str:
    return f"{api_base_url.rstrip('/')}/api/admin/verify?token={token}"


@dataclass
class ClaimSubmission:
    claim_id: str
    attempt_id: str
    order_ref: str
    already_submitted: bool = False
    admin_notified: bool = False


class ManualPaymentService:
    def __init__(
        self,
        session: AsyncSession,
        email_service: EmailService,
        lifecycle: LifecycleService,
        api_base_url: Optional[str] = None,
        admin_email: Optional[str] = None,
        token_ttl_hours: Optional[int] = None
    ):
        self.session = session
        self.email_service = email_service
        self.lifecycle = lifecycle
        self.api_base_url = api_base_url or os.environ.get("API_BASE_URL", "http://localhost:8000")
        self.admin_email = admin_email or os.environ.get("ADMIN_NOTIFY_EMAIL", "")
        self.token_ttl = timedelta(
            hours=token_ttl_hours or int(os.environ.get("APPROVAL_TOKEN_TTL_HOURS", DEFAULT_TOKEN_TTL_HOURS))
        )
        self.analytics = AnalyticsService(session)

    async def submit_claim(
        self,
        experience_id: str,
        name: str,
        email: str,
        payment_method: str,
        transaction_id: str,
        screenshot_url: Optional[str] = None,
        message_content: Optional[str] = None,
        order_ref: Optional[str] = None
    ) -> ClaimSubmission:
        """
        Record a payer's manual payment claim and notify the admin.

        Raises:
            ValidationError: missing fields, unknown method or short transaction id
            NotFoundError: unknown experience
            AlreadyPaidError: the experience is PAID or later
        """
        name = (name or "").strip()
        email = (email or "").strip().lower()
        transaction_id = (transaction_id or "").strip()

        if not name or not email:
            raise ValidationError("Name and email are required")
        try:
            payment_method = ManualPaymentMethod((payment_method or "").lower()).value
        except ValueError:
            raise ValidationError("payment_method must be upi or paypal")
        if len(transaction_id) < MIN_TRANSACTION_ID_LENGTH:
            raise ValidationError(f"Transaction ID must be at least {MIN_TRANSACTION_ID_LENGTH} characters")

        experience = await get_experience_or_404(self.session, experience_id)
        if is_paid_or_later(experience.lifecycle_state):
            raise AlreadyPaidError("This experience has already been paid for")

        existing_result = await self.session.execute(
            select(ManualPaymentClaim)
            .where(ManualPaymentClaim.experience_id == experience_id)
            .order_by(ManualPaymentClaim.id.asc())
        )
        existing = existing_result.scalars().first()
        if existing and not existing.reviewed and token_expired(existing):
            return await self._reissue_token(existing, experience)
        if existing:
            logger.info(f"Manual claim for {experience_id} already submitted ({existing.claim_id})")
            return ClaimSubmission(
                claim_id=existing.claim_id,
                attempt_id=existing.attempt_id,
                order_ref=existing.order_ref or make_order_ref(experience_id),
                already_submitted=True,
            )

        reference = (order_ref or "").strip() or make_order_ref(experience_id)
        attempt = PaymentAttempt(
            experience_id=experience_id,
            gateway=PaymentGateway.MANUAL.value,
            gateway_reference=None,
            status=PaymentAttemptStatus.PENDING.value,
            amount=experience.amount_due,
            currency=experience.currency,
        )
        self.session.add(attempt)
        await self.session.flush()

        token = secrets.token_urlsafe(32)
        claim = ManualPaymentClaim(
            experience_id=experience_id,
            attempt_id=attempt.attempt_id,
            name=name,
            email=email,
            payment_method=payment_method,
            transaction_id=transaction_id,
            screenshot_url=screenshot_url,
            message_content=message_content,
            order_ref=reference,
            approval_token=token,
            token_expires_at=datetime.now(timezone.utc) + self.token_ttl,
        )
        self.session.add(claim)

        await move_to_preview(self.session, experience_id, source="manual_claim")
        await self.session.flush()
        await self.analytics.record(
            experience_id,
            EventType.MANUAL_PAYMENT_SUBMITTED,
            {
                "claim_id": claim.claim_id,
                "attempt_id": attempt.attempt_id,
                "payment_method": payment_method,
                "order_ref": reference,
            },
            commit=False,
        )
        await self.session.commit()
        logger.info(f"Manual {payment_method} claim {claim.claim_id} submitted for {experience_id}")

        admin_notified = await self._notify_admin(claim, experience, token)
        return ClaimSubmission(
            claim_id=claim.claim_id,
            attempt_id=attempt.attempt_id,
            order_ref=reference,
            admin_notified=admin_notified,
        )

    async def _reissue_token(self, claim: ManualPaymentClaim, experience) -> ClaimSubmission:
        """The previous approval link lapsed unused; mint a fresh one and re-announce the claim"""
        token = secrets.token_urlsafe(32)
        claim.approval_token = token
        claim.token_expires_at = datetime.now(timezone.utc) + self.token_ttl
        await self.session.commit()
        logger.info(f"Approval link for claim {claim.claim_id} expired; reissued")

        admin_notified = await self._notify_admin(claim, experience, token)
        return ClaimSubmission(
            claim_id=claim.claim_id,
            attempt_id=claim.attempt_id,
            order_ref=claim.order_ref or make_order_ref(claim.experience_id),
            already_submitted=True,
            admin_notified=admin_notified,
        )

    async def _notify_admin(self, claim: ManualPaymentClaim, experience, token: str) -> bool:
        if not self.admin_email:
            logger.warning("ADMIN_NOTIFY_EMAIL not set - manual claim will not be announced")
            return False

        try:
            await self.email_service.send_admin_payment_notification(
                to_email=self.admin_email,
                payer_name=claim.name,
                payer_email=claim.email,
                payment_method=claim.payment_method,
                transaction_id=claim.transaction_id,
                order_ref=claim.order_ref,
                experience_type=experience.experience_type,
                recipient_name=experience.recipient_name,
                recipient_email=experience.recipient_email,
                approve_url=approval_url(self.api_base_url, token),
                screenshot_url=claim.screenshot_url,
                message_summary=claim.message_content,
            )
        except EmailDeliveryError as e:
            logger.error(f"Admin notification for claim {claim.claim_id} failed: {e.message}")
            return False
        return True

    async def _mark_reviewed(self, claim_id: str) -> bool:
        result = await self.session.execute(
            update(ManualPaymentClaim)
            .where(
                ManualPaymentClaim.claim_id == claim_id,
                ManualPaymentClaim.reviewed.is_(False),
            )
            .values(reviewed=True, reviewed_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def approve_claim(self, token: Optional[str]) -> TransitionResult:
        """
        Redeem an approval token: mark the claim reviewed and apply the PAID
        transition for its manual attempt. The reviewed flag is committed
        together with the PAID transition.

        Raises:
            ValidationError: token missing
            InvalidTokenError: unknown or expired token
            AlreadyReviewedError: the claim was already approved
        """
        claim = await ApprovalTokenVerifier(self.session).verify(token)
        claim_id, attempt_id, experience_id = claim.claim_id, claim.attempt_id, claim.experience_id

        if not await self._mark_reviewed(claim_id):
            await self.session.rollback()
            raise AlreadyReviewedError("Payment was already approved", claim=claim)

        result = await self.lifecycle.apply_payment_completed(
            attempt_id,
            TransitionSource.ADMIN_APPROVAL,
            experience_id=experience_id,
        )
        if not result.applied:
            # The transition did not commit the flag for us
            await self._mark_reviewed(claim_id)
            await self.session.commit()

        logger.info(f"Claim {claim_id} approved for {experience_id} ({result.outcome})")
        return result


# ============================================
# ADMIN HTML PAGES
# ============================================

PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>{title}</title>
</head>
<body style="margin:0;padding:40px 20px;background:#FFF5F5;font-family:system-ui,-apple-system,sans-serif;">
<div style="max-width:420px;margin:0 auto;background:white;border-radius:16px;padding:32px;text-align:center;">
<div style="font-size:48px;">{icon}</div>
<h1 style="font-size:22px;color:#1a1a1a;">{title}</h1>
<p style="font-size:15px;color:#666;line-height:1.6;">{body}</p>
</div>
</body>
</html>
"""


def render_page(icon: str, title: str, body: str) -> str:
    return PAGE_TEMPLATE.format(icon=icon, title=escape(title), body=escape(body))


def render_approved(result: TransitionResult) -> str:
    if result.email_sent:
        body = "Payment verified and the valentine email was sent to the recipient."
    elif result.delivery_error:
        body = f"Payment verified, but the email could not be sent ({result.delivery_error}). Retry delivery from the dashboard."
    else:
        body = "Payment verified."
    return render_page("✅", "Payment Approved", body)


def render_error(error: LifecycleError) -> str:
    if isinstance(error, AlreadyReviewedError):
        return render_page("👍", "Already Approved", "This payment was already approved. No further action is needed.")
    if isinstance(error, ValidationError):
        return render_page("⚠️", "Missing Token", "The approval link is incomplete.")
    return render_page("❌", "Invalid Link", error.message)
