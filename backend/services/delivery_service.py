"""
Delivery Trigger: emails the playback link for a PAID experience and marks it SENT.

Delivery is claimed with a conditional update before the email goes out, so two
concurrent callers cannot both send. A failed send releases the claim and can
be retried through the send-email endpoint.
"""
import os
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Experience, LifecycleState
from services.analytics_service import AnalyticsService, EventType
from services.email_service import EmailService
from services.errors import NotFoundError, NotPayableStateError, EmailDeliveryError
from services.logging_service import log_lifecycle_transition

logger = logging.getLogger(__name__)

DEFAULT_APP_URL = "https://cupidsarrow.app"

# A claim older than this is treated as abandoned (process died mid-send)
DELIVERY_CLAIM_TIMEOUT = timedelta(minutes=10)


def playback_url(app_url: str, experience_id: str) -> str:
    return f"{app_url.rstrip('/')}/v/{experience_id}"


async def get_experience_or_404(session: AsyncSession, experience_id: str) -> Experience:
    result = await session.execute(
        select(Experience)
        .where(Experience.experience_id == experience_id)
        .execution_options(populate_existing=True)
    )
    experience = result.scalar_one_or_none()
    if experience is None:
        raise NotFoundError("Experience not found")
    return experience


class DeliveryService:
    """Sends the recipient email at most once per experience"""

    def __init__(self, session: AsyncSession, email_service: EmailService, app_url: Optional[str] = None):
        self.session = session
        self.email_service = email_service
        self.app_url = app_url or os.environ.get("APP_URL", DEFAULT_APP_URL)
        self.analytics = AnalyticsService(session)

    async def _claim(self, experience_id: str, now: datetime) -> bool:
        result = await self.session.execute(
            update(Experience)
            .where(
                Experience.experience_id == experience_id,
                Experience.lifecycle_state == LifecycleState.PAID.value,
                or_(
                    Experience.delivery_started_at.is_(None),
                    Experience.delivery_started_at < now - DELIVERY_CLAIM_TIMEOUT,
                ),
            )
            .values(delivery_started_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount == 1

    async def _release(self, experience_id: str, error: str):
        await self.session.execute(
            update(Experience)
            .where(
                Experience.experience_id == experience_id,
                Experience.lifecycle_state == LifecycleState.PAID.value,
            )
            .values(delivery_started_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.analytics.record(experience_id, EventType.EMAIL_FAILED, {"error": error}, commit=False)
        await self.session.commit()

    async def deliver(self, experience_id: str) -> Optional[str]:
        """
        Email the playback link and move PAID -> SENT.

        Returns:
            The email provider id, or None when another caller holds the delivery claim

        Raises:
            NotFoundError: unknown experience
            NotPayableStateError: experience is not PAID
            EmailDeliveryError: the email API failed; the experience stays PAID
        """
        experience = await get_experience_or_404(self.session, experience_id)

        if experience.lifecycle_state != LifecycleState.PAID.value:
            raise NotPayableStateError(
                f"Experience is in {experience.lifecycle_state} state, not PAID"
            )

        now = datetime.now(timezone.utc)
        if not await self._claim(experience_id, now):
            logger.info(f"Delivery for {experience_id} already claimed, skipping")
            return None

        try:
            email_id = await self.email_service.send_experience_email(
                to_email=experience.recipient_email,
                recipient_name=experience.recipient_name,
                sender_name=experience.sender_name,
                experience_type=experience.experience_type,
                experience_id=experience_id,
                experience_url=playback_url(self.app_url, experience_id),
            )
        except EmailDeliveryError as e:
            logger.warning(f"Delivery failed for {experience_id}: {e.message}")
            await self._release(experience_id, e.message)
            raise

        await self.session.execute(
            update(Experience)
            .where(
                Experience.experience_id == experience_id,
                Experience.lifecycle_state == LifecycleState.PAID.value,
            )
            .values(lifecycle_state=LifecycleState.SENT.value, sent_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await self.analytics.record(experience_id, EventType.EMAIL_SENT, {"email_id": email_id}, commit=False)
        await self.session.commit()

        log_lifecycle_transition(
            experience_id,
            from_state=LifecycleState.PAID.value,
            to_state=LifecycleState.SENT.value,
            source="delivery",
        )
        return email_id
