"""
Analytics Service for Cupid's Arrow
Append-only audit trail of experience lifecycle events.

Each event records which trigger produced a transition so racing completion
signals (client confirmation, webhook, admin approval) can be told apart later.
"""
import logging
from enum import Enum
from typing import Optional, Dict, Any, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import AnalyticsEvent

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    EXPERIENCE_CREATED = "EXPERIENCE_CREATED"
    PAYMENT_INITIATED = "PAYMENT_INITIATED"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
    DUPLICATE_PAYMENT_IGNORED = "DUPLICATE_PAYMENT_IGNORED"
    MANUAL_PAYMENT_SUBMITTED = "MANUAL_PAYMENT_SUBMITTED"
    EMAIL_SENT = "EMAIL_SENT"
    EMAIL_FAILED = "EMAIL_FAILED"
    EXPERIENCE_OPENED = "EXPERIENCE_OPENED"
    EXPERIENCE_RESPONDED = "EXPERIENCE_RESPONDED"
    REPLY_SENT = "REPLY_SENT"


class AnalyticsService:
    """Records lifecycle events for an experience"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        experience_id: str,
        event_type: EventType,
        metadata: Optional[Dict[str, Any]] = None,
        commit: bool = True
    ) -> AnalyticsEvent:
        """Append an event. With commit=False the caller owns the transaction."""
        event = AnalyticsEvent(
            experience_id=experience_id,
            event_type=event_type.value,
            event_metadata=metadata or {},
        )
        self.session.add(event)
        if commit:
            await self.session.commit()
        logger.debug(f"Recorded {event_type.value} for {experience_id}")
        return event

    async def get_events(self, experience_id: str, event_type: Optional[EventType] = None) -> List[AnalyticsEvent]:
        query = select(AnalyticsEvent).where(AnalyticsEvent.experience_id == experience_id)
        if event_type:
            query = query.where(AnalyticsEvent.event_type == event_type.value)
        result = await self.session.execute(query.order_by(AnalyticsEvent.id.asc()))
        return list(result.scalars().all())
