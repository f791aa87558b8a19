"""
Experience Service for Cupid's Arrow
Creation, public read and the recipient-side interactions (open, respond, reply).
"""
import re
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Experience, ExperienceType, LifecycleState, RecipientResponse
from services.analytics_service import AnalyticsService, EventType
from services.delivery_service import get_experience_or_404
from services.email_service import EmailService
from services.errors import ValidationError, EmailDeliveryError
from services.logging_service import log_lifecycle_transition
from services.pricing import price_for, format_amount

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
MAX_REPLY_LENGTH = 2000

# A response may only be recorded once the recipient has the link
RESPONDABLE_STATES = (LifecycleState.SENT.value, LifecycleState.OPENED.value)


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and bool(EMAIL_PATTERN.match(email))


def _has_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def validate_content(experience_type: str, content: Dict[str, Any]):
    """COUPLE experiences need at least one titled memory or one admiration message"""
    if experience_type != ExperienceType.COUPLE.value:
        return

    memories = content.get("memories") or []
    admiration = content.get("admiration_messages") or []
    has_memory = any(isinstance(m, dict) and _has_text(m.get("title")) for m in memories)
    has_admiration = any(_has_text(m) for m in admiration)

    if not (has_memory or has_admiration):
        raise ValidationError("Add at least one memory or admiration message")


def public_view(experience: Experience) -> Dict[str, Any]:
    """What the recipient's playback page may see. No emails, no payment data."""
    return {
        "experience_id": experience.experience_id,
        "experience_type": experience.experience_type,
        "lifecycle_state": experience.lifecycle_state,
        "content": experience.content or {},
        "recipient_name": experience.recipient_name,
        "sender_name": experience.sender_name,
        "response": experience.response,
        "has_reply": bool(experience.reply_message),
    }


class ExperienceService:
    def __init__(self, session: AsyncSession, email_service: Optional[EmailService] = None):
        self.session = session
        self.email_service = email_service
        self.analytics = AnalyticsService(session)

    async def create_experience(
        self,
        experience_type: str,
        recipient_name: str,
        recipient_email: str,
        content: Optional[Dict[str, Any]] = None,
        sender_name: Optional[str] = None,
        sender_email: Optional[str] = None,
        region: str = "IN"
    ) -> Experience:
        """Persist a DRAFT experience with its price snapshot"""
        if experience_type not in (ExperienceType.CRUSH.value, ExperienceType.COUPLE.value):
            raise ValidationError("experience_type must be CRUSH or COUPLE")

        recipient_name = (recipient_name or "").strip()
        if not recipient_name:
            raise ValidationError("Recipient name is required")

        recipient_email = (recipient_email or "").strip().lower()
        if not is_valid_email(recipient_email):
            raise ValidationError("A valid recipient email is required")

        sender_email = (sender_email or "").strip().lower() or None
        if sender_email and not is_valid_email(sender_email):
            raise ValidationError("Sender email is not valid")

        content = content or {}
        validate_content(experience_type, content)

        amount, currency = price_for(experience_type, region)

        experience = Experience(
            experience_type=experience_type,
            lifecycle_state=LifecycleState.DRAFT.value,
            content=content,
            amount_due=amount,
            currency=currency,
            recipient_name=recipient_name,
            recipient_email=recipient_email,
            sender_name=(sender_name or "").strip() or None,
            sender_email=sender_email,
        )
        self.session.add(experience)
        await self.session.flush()

        await self.analytics.record(
            experience.experience_id,
            EventType.EXPERIENCE_CREATED,
            {"experience_type": experience_type, "amount": amount, "currency": currency, "region": region},
            commit=False,
        )
        await self.session.commit()

        logger.info(f"Created {experience_type} experience {experience.experience_id} ({format_amount(amount, currency)})")
        return experience

    async def get_experience(self, experience_id: str) -> Experience:
        return await get_experience_or_404(self.session, experience_id)

    async def mark_opened(self, experience_id: str) -> Experience:
        """SENT -> OPENED the first time the recipient loads the link. Otherwise a no-op."""
        await get_experience_or_404(self.session, experience_id)

        result = await self.session.execute(
            update(Experience)
            .where(
                Experience.experience_id == experience_id,
                Experience.lifecycle_state == LifecycleState.SENT.value,
            )
            .values(lifecycle_state=LifecycleState.OPENED.value, opened_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await self.analytics.record(experience_id, EventType.EXPERIENCE_OPENED, commit=False)
            await self.session.commit()
            log_lifecycle_transition(
                experience_id,
                from_state=LifecycleState.SENT.value,
                to_state=LifecycleState.OPENED.value,
                source="recipient",
            )
        else:
            await self.session.rollback()

        return await get_experience_or_404(self.session, experience_id)

    async def record_response(self, experience_id: str, response: str) -> Experience:
        """
        Record the recipient's answer once. Later calls, or calls before the
        experience was sent, leave the stored response untouched.
        """
        try:
            response = RecipientResponse(response).value
        except ValueError:
            raise ValidationError("response must be YES, GRACEFUL_EXIT or REAFFIRMED")

        experience = await get_experience_or_404(self.session, experience_id)
        from_state = experience.lifecycle_state

        result = await self.session.execute(
            update(Experience)
            .where(
                Experience.experience_id == experience_id,
                Experience.response.is_(None),
                Experience.lifecycle_state.in_(RESPONDABLE_STATES),
            )
            .values(
                response=response,
                responded_at=datetime.now(timezone.utc),
                lifecycle_state=LifecycleState.RESPONDED.value,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await self.analytics.record(experience_id, EventType.EXPERIENCE_RESPONDED, {"response": response}, commit=False)
            await self.session.commit()
            log_lifecycle_transition(
                experience_id,
                from_state=from_state,
                to_state=LifecycleState.RESPONDED.value,
                source="recipient",
            )
        else:
            await self.session.rollback()
            logger.info(f"Response for {experience_id} ignored (state={from_state})")

        return await get_experience_or_404(self.session, experience_id)

    async def record_reply(self, experience_id: str, reply_message: str) -> Dict[str, Any]:
        """Store the recipient's reply and forward it to the sender when they left an email"""
        reply_message = (reply_message or "").strip()
        if not reply_message:
            raise ValidationError("Reply message is required")
        if len(reply_message) > MAX_REPLY_LENGTH:
            raise ValidationError(f"Reply must be at most {MAX_REPLY_LENGTH} characters")

        experience = await get_experience_or_404(self.session, experience_id)
        experience.reply_message = reply_message
        experience.replied_at = datetime.now(timezone.utc)
        await self.session.commit()

        email_sent = False
        if experience.sender_email and self.email_service:
            try:
                await self.email_service.send_reply_email(
                    to_email=experience.sender_email,
                    sender_name=experience.sender_name or "there",
                    recipient_name=experience.recipient_name,
                    reply_message=reply_message,
                    response=experience.response or "YES",
                    experience_id=experience_id,
                )
                email_sent = True
            except EmailDeliveryError as e:
                logger.error(f"Reply email for {experience_id} failed: {e.message}")

        await self.analytics.record(experience_id, EventType.REPLY_SENT, {"email_sent": email_sent})
        return {"saved": True, "email_sent": email_sent}
