"""
Admin Routes for Cupid's Arrow

One-click approval of manual (UPI / PayPal) payments from the admin
notification email. The approval token in the link is the credential:
single-use and expiring. Responses are HTML pages, not JSON, since the
admin opens the link in a browser.
"""
from fastapi import APIRouter, Depends
from fastapi.responses import HTMLResponse
from typing import Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from db import get_db
from services.email_service import EmailService, get_email_service
from services.errors import (
    ValidationError, InvalidTokenError, AlreadyReviewedError, NotFoundError
)
from services.manual_payment_service import ManualPaymentService, render_approved, render_error
from routes.payments import build_lifecycle

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.api_route("/verify", methods=["GET", "POST"], response_class=HTMLResponse)
async def verify_manual_payment(
    token: Optional[str] = None,
    session: AsyncSession = Depends(get_db),
    email_service: EmailService = Depends(get_email_service)
):
    """Approve a manual payment claim and deliver the experience"""
    service = ManualPaymentService(session, email_service, build_lifecycle(session, email_service))
    try:
        result = await service.approve_claim(token)
    except (ValidationError, InvalidTokenError, AlreadyReviewedError, NotFoundError) as e:
        logger.info(f"Approval link not redeemed: {type(e).__name__}")
        return HTMLResponse(render_error(e), status_code=e.status_code)

    return HTMLResponse(render_approved(result), status_code=200)
