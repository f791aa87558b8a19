"""
Gateway webhooks. Signatures are checked against the raw body before the
payload is parsed or anything is written.
"""
from fastapi import APIRouter, Request, Depends
import json
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from db import get_db
from services.email_service import EmailService, get_email_service
from services.errors import ValidationError
from services.lifecycle_service import TransitionSource
from services.payment_gateways import (
    RazorpayGateway, StripeGateway, get_razorpay_gateway, get_stripe_gateway
)
from services.signature_service import verify_razorpay_webhook, verify_stripe_webhook
from routes.payments import build_lifecycle

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhooks"])


def _parse_json(raw_body: bytes) -> dict:
    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        raise ValidationError("Malformed webhook payload") from e
    if not isinstance(payload, dict):
        raise ValidationError("Malformed webhook payload")
    return payload


@router.post("/razorpay")
async def razorpay_webhook(
    request: Request,
    session: AsyncSession = Depends(get_db),
    razorpay: RazorpayGateway = Depends(get_razorpay_gateway),
    email_service: EmailService = Depends(get_email_service)
):
    """Handle payment.captured and payment.failed"""
    raw_body = await request.body()
    verify_razorpay_webhook(raw_body, request.headers.get("X-Razorpay-Signature"), razorpay.webhook_secret)

    payload = _parse_json(raw_body)
    event_type = payload.get("event")
    payment = ((payload.get("payload") or {}).get("payment") or {}).get("entity") or {}
    order_id = payment.get("order_id")

    logger.info(f"Razorpay webhook: {event_type} for order {order_id}")

    if event_type not in ("payment.captured", "payment.failed"):
        return {"received": True, "status": "ignored"}

    if not order_id:
        raise ValidationError("Webhook payment has no order_id")

    lifecycle = build_lifecycle(session, email_service)

    if event_type == "payment.failed":
        changed = await lifecycle.mark_attempt_failed(
            order_id,
            error_code=payment.get("error_code"),
            error_description=payment.get("error_description"),
        )
        return {"received": True, "status": "failed_recorded" if changed else "no_change"}

    result = await lifecycle.apply_payment_completed(
        order_id,
        TransitionSource.RAZORPAY_WEBHOOK,
        gateway_payment_id=payment.get("id"),
    )
    return {"received": True, "status": result.outcome, **result.to_dict()}


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    session: AsyncSession = Depends(get_db),
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway),
    email_service: EmailService = Depends(get_email_service)
):
    """Handle checkout.session.completed, checkout.session.expired and charge.refunded"""
    raw_body = await request.body()
    verify_stripe_webhook(raw_body, request.headers.get("Stripe-Signature"), stripe_gateway.webhook_secret)

    payload = _parse_json(raw_body)
    event_type = payload.get("type")
    obj = (payload.get("data") or {}).get("object") or {}

    logger.info(f"Stripe webhook: {event_type} ({obj.get('id')})")

    lifecycle = build_lifecycle(session, email_service)
    session_id = obj.get("id")

    if event_type in ("checkout.session.completed", "checkout.session.expired") and not session_id:
        raise ValidationError("Webhook checkout session has no id")

    if event_type == "checkout.session.completed":
        if obj.get("payment_status") not in (None, "paid", "no_payment_required"):
            # Async payment methods confirm later
            return {"received": True, "status": "awaiting_payment"}
        result = await lifecycle.apply_payment_completed(
            session_id,
            TransitionSource.STRIPE_WEBHOOK,
            experience_id=(obj.get("metadata") or {}).get("experience_id"),
            gateway_payment_id=obj.get("payment_intent"),
        )
        return {"received": True, "status": result.outcome, **result.to_dict()}

    if event_type == "checkout.session.expired":
        changed = await lifecycle.mark_attempt_failed(
            session_id, error_code="session_expired", error_description="Checkout session expired"
        )
        return {"received": True, "status": "failed_recorded" if changed else "no_change"}

    if event_type == "charge.refunded" and obj.get("payment_intent"):
        changed = await lifecycle.mark_refunded(obj["payment_intent"])
        return {"received": True, "status": "refund_recorded" if changed else "no_change"}

    return {"received": True, "status": "ignored"}
