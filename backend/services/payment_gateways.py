"""
Payment gateway clients for Cupid's Arrow.
Razorpay orders over its REST API, Stripe Checkout through the official SDK.
"""
import os
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any

import httpx
import stripe

from services.errors import GatewayError

logger = logging.getLogger(__name__)


@dataclass
class GatewayCheckout:
    """What a gateway hands back when a session/order is minted"""
    reference: str
    amount: int
    currency: str
    checkout_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class RazorpayGateway:
    """Creates Razorpay orders and holds the Razorpay secrets"""

    name = "razorpay"

    def __init__(self):
        self.key_id = os.environ.get("RAZORPAY_KEY_ID", "")
        self.key_secret = os.environ.get("RAZORPAY_KEY_SECRET", "")
        self.webhook_secret = os.environ.get("RAZORPAY_WEBHOOK_SECRET", "")
        self.orders_url = "https://api.razorpay.com/v1/orders"

    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None
    ) -> GatewayCheckout:
        if not self.is_configured():
            raise GatewayError("Razorpay is not configured")

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.orders_url,
                    json={
                        "amount": amount,
                        "currency": currency,
                        "receipt": receipt,
                        "notes": notes or {},
                    },
                    auth=(self.key_id, self.key_secret),
                    timeout=30.0
                )
        except httpx.HTTPError as e:
            logger.error(f"Razorpay order creation failed: {e}")
            raise GatewayError("Failed to create payment order") from e

        if response.status_code != 200:
            logger.error(f"Razorpay error: {response.status_code} {response.text}")
            raise GatewayError("Failed to create payment order")

        order = response.json()
        return GatewayCheckout(
            reference=order["id"],
            amount=order.get("amount", amount),
            currency=order.get("currency", currency),
            raw=order,
        )


class StripeGateway:
    """Creates Stripe Checkout sessions and holds the Stripe secrets"""

    name = "stripe"

    def __init__(self):
        self.api_key = os.environ.get("STRIPE_API_KEY", "")
        self.webhook_secret = os.environ.get("STRIPE_WEBHOOK_SECRET", "")

    def is_configured(self) -> bool:
        return bool(self.api_key) and self.api_key != "your-stripe-api-key-here"

    def _client(self):
        if not self.is_configured():
            raise GatewayError("Stripe is not configured")
        stripe.api_key = self.api_key
        return stripe

    async def create_checkout_session(
        self,
        amount: int,
        currency: str,
        product_name: str,
        description: str,
        customer_email: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str]
    ) -> GatewayCheckout:
        stripe_client = self._client()

        try:
            checkout_session = stripe_client.checkout.Session.create(
                mode="payment",
                success_url=success_url,
                cancel_url=cancel_url,
                customer_email=customer_email,
                line_items=[
                    {
                        "price_data": {
                            "currency": currency,
                            "product_data": {
                                "name": product_name,
                                "description": description,
                            },
                            "unit_amount": amount,
                        },
                        "quantity": 1,
                    },
                ],
                metadata=metadata,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout creation failed: {e}")
            raise GatewayError("Failed to create checkout session") from e

        return GatewayCheckout(
            reference=checkout_session.id,
            amount=amount,
            currency=currency,
            checkout_url=checkout_session.url,
        )


_razorpay: Optional[RazorpayGateway] = None
_stripe: Optional[StripeGateway] = None


def get_razorpay_gateway() -> RazorpayGateway:
    global _razorpay
    if _razorpay is None:
        _razorpay = RazorpayGateway()
    return _razorpay


def get_stripe_gateway() -> StripeGateway:
    global _stripe
    if _stripe is None:
        _stripe = StripeGateway()
    return _stripe
