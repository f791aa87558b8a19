"""
Lifecycle Transition Applier for Cupid's Arrow

Applies the "payment completed" transition for an experience. Every trigger
(client confirmation, gateway webhook, admin approval) lands here, possibly
concurrently and possibly more than once, so the transition is written as a
pair of compare-and-swap updates whose row counts decide the outcome:

- the attempt moves to COMPLETED only if it is not COMPLETED yet
- the experience moves to PAID only from DRAFT or PREVIEW

If the experience was already paid through a different attempt, the attempt
update is rolled back so at most one attempt per experience is COMPLETED.
"""
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import (
    Experience, PaymentAttempt, PaymentAttemptStatus, LifecycleState,
    PAYABLE_STATES, is_paid_or_later,
)
from services.analytics_service import AnalyticsService, EventType
from services.delivery_service import DeliveryService, get_experience_or_404
from services.errors import (
    ValidationError, UnknownAttemptError, EmailDeliveryError, NotPayableStateError
)
from services.logging_service import log_lifecycle_transition

logger = logging.getLogger(__name__)


class TransitionSource(str, Enum):
    CLIENT_VERIFY = "client_verify"
    RAZORPAY_WEBHOOK = "razorpay_webhook"
    STRIPE_WEBHOOK = "stripe_webhook"
    ADMIN_APPROVAL = "admin_approval"


class CompletionPlan(str, Enum):
    APPLY = "APPLY"
    ALREADY_COMPLETED = "ALREADY_COMPLETED"
    ALREADY_PAID = "ALREADY_PAID"
    PAID_BY_OTHER = "PAID_BY_OTHER"


def plan_payment_completion(
    attempt_status: str,
    attempt_id: str,
    lifecycle_state: str,
    paid_attempt_id: Optional[str]
) -> CompletionPlan:
    """
    Decide what a completion signal should do, given a snapshot of the attempt
    and its experience. Pure: the applier re-checks the same conditions inside
    its conditional updates.
    """
    if attempt_status == PaymentAttemptStatus.COMPLETED.value:
        return CompletionPlan.ALREADY_COMPLETED

    if is_paid_or_later(lifecycle_state):
        if paid_attempt_id and paid_attempt_id != attempt_id:
            return CompletionPlan.PAID_BY_OTHER
        return CompletionPlan.ALREADY_PAID

    return CompletionPlan.APPLY


@dataclass
class TransitionResult:
    experience_id: str
    attempt_id: str
    applied: bool
    outcome: str
    lifecycle_state: str
    email_sent: bool = False
    delivery_error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class LifecycleService:
    """Drives payment attempts and experiences through the PAID transition"""

    def __init__(self, session: AsyncSession, delivery: DeliveryService):
        self.session = session
        self.delivery = delivery
        self.analytics = AnalyticsService(session)

    async def _find_attempt(self, reference: str) -> PaymentAttempt:
        result = await self.session.execute(
            select(PaymentAttempt)
            .where(or_(
                PaymentAttempt.gateway_reference == reference,
                PaymentAttempt.attempt_id == reference,
            ))
            .execution_options(populate_existing=True)
        )
        attempt = result.scalar_one_or_none()
        if attempt is None:
            raise UnknownAttemptError(f"No payment attempt for reference {reference}")
        return attempt

    async def apply_payment_completed(
        self,
        attempt_reference: str,
        source: TransitionSource,
        experience_id: Optional[str] = None,
        gateway_payment_id: Optional[str] = None
    ) -> TransitionResult:
        """
        Idempotently mark an attempt COMPLETED and its experience PAID, then
        trigger delivery.

        Args:
            attempt_reference: gateway order/session id, or attempt id for the manual rail
            source: which trigger observed the completion
            experience_id: when given, must own the attempt
            gateway_payment_id: gateway-side payment id to store on the attempt

        Raises:
            UnknownAttemptError: no attempt matches the reference
            ValidationError: experience_id does not own the attempt
        """
        attempt = await self._find_attempt(attempt_reference)
        attempt_id, owner_id = attempt.attempt_id, attempt.experience_id
        if experience_id and owner_id != experience_id:
            logger.warning(
                f"Completion signal for {attempt_id} names experience {experience_id}, "
                f"attempt belongs to {owner_id}"
            )
            raise ValidationError("Payment does not belong to this experience")

        experience = await get_experience_or_404(self.session, owner_id)
        plan = plan_payment_completion(
            attempt.status, attempt_id, experience.lifecycle_state, experience.paid_attempt_id
        )

        if plan == CompletionPlan.APPLY:
            plan = await self._complete(attempt, experience, source, gateway_payment_id)

        if plan == CompletionPlan.APPLY:
            result = TransitionResult(
                experience_id=owner_id,
                attempt_id=attempt_id,
                applied=True,
                outcome=plan.value,
                lifecycle_state=LifecycleState.PAID.value,
            )
            await self._deliver(result)
            return result

        # Rows may have been expired by a rollback; reload before reading them
        attempt = await self._find_attempt(attempt_id)
        experience = await get_experience_or_404(self.session, owner_id)

        if plan == CompletionPlan.PAID_BY_OTHER:
            await self._record_duplicate(attempt, experience, source)
        else:
            logger.info(f"Attempt {attempt_id} already applied ({plan.value}), ignoring {source.value}")

        return TransitionResult(
            experience_id=owner_id,
            attempt_id=attempt_id,
            applied=False,
            outcome=plan.value,
            lifecycle_state=experience.lifecycle_state,
        )

    async def _complete(
        self,
        attempt: PaymentAttempt,
        experience: Experience,
        source: TransitionSource,
        gateway_payment_id: Optional[str]
    ) -> CompletionPlan:
        attempt_id, experience_id = attempt.attempt_id, experience.experience_id
        from_state = experience.lifecycle_state
        now = datetime.now(timezone.utc)
        attempt_values = {
            "status": PaymentAttemptStatus.COMPLETED.value,
            "verified_at": now,
            "completion_source": source.value,
        }
        if gateway_payment_id:
            attempt_values["gateway_payment_id"] = gateway_payment_id

        attempt_update = await self.session.execute(
            update(PaymentAttempt)
            .where(
                PaymentAttempt.attempt_id == attempt_id,
                PaymentAttempt.status != PaymentAttemptStatus.COMPLETED.value,
            )
            .values(**attempt_values)
            .execution_options(synchronize_session=False)
        )
        if attempt_update.rowcount != 1:
            # A concurrent trigger completed this attempt first
            await self.session.rollback()
            return CompletionPlan.ALREADY_COMPLETED

        experience_update = await self.session.execute(
            update(Experience)
            .where(
                Experience.experience_id == experience_id,
                Experience.lifecycle_state.in_(PAYABLE_STATES),
            )
            .values(
                lifecycle_state=LifecycleState.PAID.value,
                paid_at=now,
                paid_attempt_id=attempt_id,
            )
            .execution_options(synchronize_session=False)
        )
        if experience_update.rowcount != 1:
            # Paid in the meantime; keep the attempt as it was
            await self.session.rollback()
            current = await get_experience_or_404(self.session, experience_id)
            if current.paid_attempt_id == attempt_id:
                return CompletionPlan.ALREADY_PAID
            return CompletionPlan.PAID_BY_OTHER

        await self.analytics.record(
            experience.experience_id,
            EventType.PAYMENT_COMPLETED,
            {
                "attempt_id": attempt.attempt_id,
                "gateway": attempt.gateway,
                "source": source.value,
                "amount": attempt.amount,
                "currency": attempt.currency,
            },
            commit=False,
        )
        await self.session.commit()

        log_lifecycle_transition(
            experience.experience_id,
            from_state=experience.lifecycle_state,
            to_state=LifecycleState.PAID.value,
            source=source.value,
            attempt_id=attempt.attempt_id,
        )
        return CompletionPlan.APPLY

    async def _record_duplicate(self, attempt: PaymentAttempt, experience: Experience, source: TransitionSource):
        logger.warning(
            f"Experience {experience.experience_id} already paid by {experience.paid_attempt_id}; "
            f"ignoring completion of {attempt.attempt_id} via {source.value}",
            extra={"experience_id": experience.experience_id, "attempt_id": attempt.attempt_id},
        )
        await self.analytics.record(
            experience.experience_id,
            EventType.DUPLICATE_PAYMENT_IGNORED,
            {
                "attempt_id": attempt.attempt_id,
                "gateway": attempt.gateway,
                "source": source.value,
            },
        )

    async def _deliver(self, result: TransitionResult):
        try:
            email_id = await self.delivery.deliver(result.experience_id)
        except (EmailDeliveryError, NotPayableStateError) as e:
            logger.error(f"Delivery after payment failed for {result.experience_id}: {e.message}")
            result.delivery_error = e.message
            return

        if email_id is not None:
            result.email_sent = True
            result.lifecycle_state = LifecycleState.SENT.value

    async def mark_attempt_failed(
        self,
        attempt_reference: str,
        error_code: Optional[str] = None,
        error_description: Optional[str] = None
    ) -> bool:
        """Move a PENDING attempt to FAILED. Returns False when nothing changed."""
        attempt = await self._find_attempt(attempt_reference)

        result = await self.session.execute(
            update(PaymentAttempt)
            .where(
                PaymentAttempt.attempt_id == attempt.attempt_id,
                PaymentAttempt.status == PaymentAttemptStatus.PENDING.value,
            )
            .values(
                status=PaymentAttemptStatus.FAILED.value,
                error_code=error_code,
                error_description=error_description,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            return False

        await self.analytics.record(
            attempt.experience_id,
            EventType.PAYMENT_FAILED,
            {"attempt_id": attempt.attempt_id, "error_code": error_code, "error_description": error_description},
            commit=False,
        )
        await self.session.commit()
        logger.info(f"Payment attempt {attempt.attempt_id} failed: {error_code}")
        return True

    async def mark_refunded(self, gateway_payment_id: str) -> bool:
        """
        Move the COMPLETED attempt carrying this gateway payment id to REFUNDED.
        The experience keeps its lifecycle state.
        """
        attempt_result = await self.session.execute(
            select(PaymentAttempt).where(PaymentAttempt.gateway_payment_id == gateway_payment_id)
        )
        attempt = attempt_result.scalars().first()
        if attempt is None:
            logger.warning(f"Refund for unknown payment {gateway_payment_id}")
            return False

        result = await self.session.execute(
            update(PaymentAttempt)
            .where(
                PaymentAttempt.attempt_id == attempt.attempt_id,
                PaymentAttempt.status == PaymentAttemptStatus.COMPLETED.value,
            )
            .values(status=PaymentAttemptStatus.REFUNDED.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            return False

        await self.analytics.record(
            attempt.experience_id,
            EventType.PAYMENT_REFUNDED,
            {"attempt_id": attempt.attempt_id, "gateway_payment_id": gateway_payment_id},
            commit=False,
        )
        await self.session.commit()
        logger.info(f"Payment attempt {attempt.attempt_id} refunded")
        return True
