"""
Experience routes: creation by the sender, playback-side reads and
interactions by the recipient, and the delivery backup path.
"""
from fastapi import APIRouter, Request, Depends
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from db import get_db
from services.delivery_service import DeliveryService
from services.email_service import EmailService, get_email_service
from services.experience_service import ExperienceService, public_view
from services.pricing import detect_region, format_amount
from services.rate_limit import limit_endpoint

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/experiences", tags=["experiences"])


class ExperienceCreate(BaseModel):
    experience_type: str
    recipient_name: str
    recipient_email: str
    sender_name: Optional[str] = None
    sender_email: Optional[str] = None
    content: Dict[str, Any] = Field(default_factory=dict)
    region: Optional[str] = None
    timezone: Optional[str] = None
    locale: Optional[str] = None


class ExperienceCreatedResponse(BaseModel):
    experience_id: str
    experience_type: str
    lifecycle_state: str
    amount: int
    currency: str
    display_price: str
    created_at: datetime


class ResponseBody(BaseModel):
    response: str


class ReplyBody(BaseModel):
    reply_message: str


@router.post("", response_model=ExperienceCreatedResponse, status_code=201)
@limit_endpoint("experience_create")
async def create_experience(
    request: Request,
    body: ExperienceCreate,
    session: AsyncSession = Depends(get_db)
):
    """Create a DRAFT experience with a price snapshot for the buyer's region"""
    region = body.region or detect_region(body.timezone, body.locale)
    experience = await ExperienceService(session).create_experience(
        experience_type=body.experience_type,
        recipient_name=body.recipient_name,
        recipient_email=body.recipient_email,
        content=body.content,
        sender_name=body.sender_name,
        sender_email=body.sender_email,
        region=region,
    )
    return ExperienceCreatedResponse(
        experience_id=experience.experience_id,
        experience_type=experience.experience_type,
        lifecycle_state=experience.lifecycle_state,
        amount=experience.amount_due,
        currency=experience.currency,
        display_price=format_amount(experience.amount_due, experience.currency),
        created_at=experience.created_at,
    )


@router.get("/{experience_id}")
async def get_experience(experience_id: str, session: AsyncSession = Depends(get_db)):
    """Public read for the playback page"""
    experience = await ExperienceService(session).get_experience(experience_id)
    return public_view(experience)


@router.post("/{experience_id}/opened")
async def mark_opened(experience_id: str, session: AsyncSession = Depends(get_db)):
    experience = await ExperienceService(session).mark_opened(experience_id)
    return {"experience_id": experience_id, "lifecycle_state": experience.lifecycle_state}


@router.post("/{experience_id}/response")
async def record_response(
    experience_id: str,
    body: ResponseBody,
    session: AsyncSession = Depends(get_db)
):
    experience = await ExperienceService(session).record_response(experience_id, body.response)
    return {
        "experience_id": experience_id,
        "lifecycle_state": experience.lifecycle_state,
        "response": experience.response,
    }


@router.post("/{experience_id}/reply")
@limit_endpoint("reply")
async def record_reply(
    request: Request,
    experience_id: str,
    body: ReplyBody,
    session: AsyncSession = Depends(get_db),
    email_service: EmailService = Depends(get_email_service)
):
    """Save the recipient's reply and forward it to the sender"""
    return await ExperienceService(session, email_service).record_reply(experience_id, body.reply_message)


@router.post("/{experience_id}/send-email")
async def send_experience_email(
    experience_id: str,
    session: AsyncSession = Depends(get_db),
    email_service: EmailService = Depends(get_email_service)
):
    """
    Deliver a PAID experience. Backup path for when delivery after payment
    failed; a no-op while another delivery is in flight.
    """
    email_id = await DeliveryService(session, email_service).deliver(experience_id)
    return {
        "experience_id": experience_id,
        "email_sent": email_id is not None,
        "email_id": email_id,
    }
