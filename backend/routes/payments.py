from fastapi import APIRouter, Request, Depends
from pydantic import BaseModel, EmailStr
from typing import Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from db import get_db
from services.delivery_service import DeliveryService
from services.email_service import EmailService, get_email_service
from services.lifecycle_service import LifecycleService, TransitionSource
from services.manual_payment_service import ManualPaymentService
from services.payment_gateways import (
    RazorpayGateway, StripeGateway, get_razorpay_gateway, get_stripe_gateway
)
from services.payment_intent_service import PaymentIntentService
from services.rate_limit import limit_endpoint
from services.signature_service import verify_razorpay_checkout

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


class RazorpayOrderRequest(BaseModel):
    experience_id: str


class RazorpayVerifyRequest(BaseModel):
    experience_id: str
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class StripeCheckoutRequest(BaseModel):
    experience_id: str
    currency: str = "usd"


class ManualClaimRequest(BaseModel):
    experience_id: str
    name: str
    email: EmailStr
    payment_method: str
    transaction_id: str
    screenshot_url: Optional[str] = None
    message_content: Optional[str] = None
    order_ref: Optional[str] = None


def build_lifecycle(session: AsyncSession, email_service: EmailService) -> LifecycleService:
    return LifecycleService(session, DeliveryService(session, email_service))


@router.post("/razorpay/order")
@limit_endpoint("payment_intent")
async def create_razorpay_order(
    request: Request,
    body: RazorpayOrderRequest,
    session: AsyncSession = Depends(get_db),
    razorpay: RazorpayGateway = Depends(get_razorpay_gateway)
):
    """Create a Razorpay order for Razorpay Checkout"""
    return await PaymentIntentService(session, razorpay=razorpay).initiate_razorpay(body.experience_id)


@router.post("/razorpay/verify")
async def verify_razorpay_payment(
    body: RazorpayVerifyRequest,
    session: AsyncSession = Depends(get_db),
    razorpay: RazorpayGateway = Depends(get_razorpay_gateway),
    email_service: EmailService = Depends(get_email_service)
):
    """
    Client-side confirmation after Razorpay Checkout succeeds.
    Races the payment.captured webhook; whichever lands first applies.
    """
    verify_razorpay_checkout(
        body.razorpay_order_id,
        body.razorpay_payment_id,
        body.razorpay_signature,
        razorpay.key_secret,
    )
    result = await build_lifecycle(session, email_service).apply_payment_completed(
        body.razorpay_order_id,
        TransitionSource.CLIENT_VERIFY,
        experience_id=body.experience_id,
        gateway_payment_id=body.razorpay_payment_id,
    )
    return {"verified": True, **result.to_dict()}


@router.post("/stripe/checkout")
@limit_endpoint("payment_intent")
async def create_stripe_checkout(
    request: Request,
    body: StripeCheckoutRequest,
    session: AsyncSession = Depends(get_db),
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway)
):
    """Create a Stripe Checkout session"""
    return await PaymentIntentService(session, stripe_gateway=stripe_gateway).initiate_stripe(
        body.experience_id, body.currency
    )


@router.post("/manual/claim")
@limit_endpoint("manual_claim")
async def submit_manual_claim(
    request: Request,
    body: ManualClaimRequest,
    session: AsyncSession = Depends(get_db),
    email_service: EmailService = Depends(get_email_service)
):
    """Record a UPI/PayPal payment for admin verification"""
    service = ManualPaymentService(session, email_service, build_lifecycle(session, email_service))
    submission = await service.submit_claim(
        experience_id=body.experience_id,
        name=body.name,
        email=body.email,
        payment_method=body.payment_method,
        transaction_id=body.transaction_id,
        screenshot_url=body.screenshot_url,
        message_content=body.message_content,
        order_ref=body.order_ref,
    )
    return {
        "success": True,
        "claim_id": submission.claim_id,
        "order_ref": submission.order_ref,
        "already_submitted": submission.already_submitted,
    }
