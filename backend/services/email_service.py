"""
Email Service using the Resend API
Sends experience links to recipients, admin payment notifications and reply notifications
"""
import os
import random
import logging
from html import escape
from typing import Optional, List, Dict

import httpx

from services.errors import EmailDeliveryError

logger = logging.getLogger(__name__)

# Email configuration
RESEND_API_URL = "https://api.resend.com/emails"
DEFAULT_SENDER = "Cupid's Arrow <love@cupidsarrow.app>"
APP_NAME = "Cupid's Arrow"

SUBJECT_LINES = {
    "CRUSH": [
        "Someone has a secret admiration for you 💕",
        "A love note awaits you 💌",
        "Someone is thinking of you... 🥰",
    ],
    "COUPLE": [
        "A love letter from someone special 💖",
        "Your journey together, beautifully told 💑",
        "A celebration of your love story 💝",
    ],
}


def pick_subject(experience_type: str) -> str:
    return random.choice(SUBJECT_LINES[experience_type])


class EmailService:
    """Service for sending transactional emails via Resend"""

    def __init__(self):
        self.api_key = os.environ.get("RESEND_API_KEY")
        self.sender_email = os.environ.get("EMAIL_FROM", DEFAULT_SENDER)
        self.timeout = 30.0

    def is_configured(self) -> bool:
        """Check if email service is properly configured"""
        return bool(self.api_key)

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        tags: Optional[List[Dict[str, str]]] = None
    ) -> str:
        """
        Send an email via the Resend API

        Args:
            to_email: Recipient email address
            subject: Email subject
            html_content: HTML body content
            tags: Optional Resend tags for tracking

        Returns:
            The provider's email id

        Raises:
            EmailDeliveryError: service not configured, network failure or non-2xx response
        """
        if not self.is_configured():
            logger.warning("Email service not configured - cannot send email")
            raise EmailDeliveryError("Email service not configured")

        payload = {
            "from": self.sender_email,
            "to": [to_email],
            "subject": subject,
            "html": html_content,
        }
        if tags:
            payload["tags"] = tags

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    RESEND_API_URL,
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json"
                    },
                    timeout=self.timeout
                )
        except httpx.HTTPError as e:
            logger.error(f"Failed to reach email API for {subject!r}: {e}")
            raise EmailDeliveryError(f"Email API unreachable: {e}") from e

        if not response.is_success:
            logger.error(f"Email API rejected {subject!r}: {response.status_code} {response.text}")
            raise EmailDeliveryError(f"Email API returned {response.status_code}")

        # Only the status code matters; a 2xx without a JSON body still counts as sent
        try:
            email_id = response.json().get("id", "")
        except ValueError:
            email_id = ""
        logger.info(f"Email sent successfully: {subject} (id={email_id})")
        return email_id

    async def send_experience_email(
        self,
        to_email: str,
        recipient_name: str,
        sender_name: Optional[str],
        experience_type: str,
        experience_id: str,
        experience_url: str
    ) -> str:
        """Send the playback link to the recipient"""
        if sender_name:
            sender_text = f"from {escape(sender_name)}"
        elif experience_type == "CRUSH":
            sender_text = "from a secret admirer"
        else:
            sender_text = "from someone who loves you"

        if experience_type == "CRUSH":
            cta_text = "See Your Secret Message"
            message = ("Someone has been thinking about you and wants to share their feelings. "
                       "It's a beautiful experience waiting just for you.")
        else:
            cta_text = "Experience Your Love Story"
            message = ("A beautiful journey of memories and appreciation has been crafted just for you. "
                       "It's a celebration of your special connection.")

        html_content = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>A Special Message for You</title>
</head>
<body style="margin: 0; padding: 0; background-color: #FFF5F5; font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif;">
    <div style="max-width: 500px; margin: 40px auto; background: white; border-radius: 24px; padding: 48px 32px; text-align: center; box-shadow: 0 4px 24px rgba(0,0,0,0.08);">
        <div style="font-size: 48px; margin-bottom: 24px;">💕</div>
        <h1 style="margin: 0 0 8px; font-size: 28px; font-weight: 600; color: #1a1a1a;">Hey {escape(recipient_name)}!</h1>
        <p style="margin: 0 0 32px; font-size: 16px; color: #666; line-height: 1.6;">You've received something special {sender_text}</p>
        <p style="margin: 0 0 32px; font-size: 15px; color: #444; line-height: 1.7;">{message}</p>
        <a href="{experience_url}" style="display: inline-block; padding: 16px 40px; background: linear-gradient(135deg, #FB7185 0%, #F43F5E 100%); color: white; text-decoration: none; border-radius: 50px; font-weight: 600; font-size: 16px;">{cta_text}</a>
        <p style="margin: 40px 0 0; font-size: 13px; color: #999;">This experience was created with love on {APP_NAME}</p>
    </div>
</body>
</html>
"""

        return await self.send_email(
            to_email,
            pick_subject(experience_type),
            html_content,
            tags=[
                {"name": "experience_id", "value": experience_id},
                {"name": "experience_type", "value": experience_type},
            ]
        )

    async def send_admin_payment_notification(
        self,
        to_email: str,
        payer_name: str,
        payer_email: str,
        payment_method: str,
        transaction_id: str,
        order_ref: str,
        experience_type: str,
        recipient_name: str,
        recipient_email: str,
        approve_url: str,
        screenshot_url: Optional[str] = None,
        message_summary: Optional[str] = None
    ) -> str:
        """Send the admin a manual payment claim with a one-click approval link"""
        subject = f"💰 New Payment: {payment_method.upper()} from {payer_name}"
        wallet = "UPI app" if payment_method == "upi" else "PayPal"

        extras = ""
        if message_summary:
            extras += f'<div style="margin:16px 0;padding:12px;background:#FFF5F5;border-radius:8px;font-size:13px;color:#666;">💌 {escape(message_summary[:200])}</div>'
        if screenshot_url:
            extras += f'<div style="margin:16px 0;"><a href="{escape(screenshot_url)}" style="color:#F43F5E;font-size:13px;">📷 View Payment Screenshot</a></div>'

        html_content = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="margin:0;padding:20px;background:#f5f5f5;font-family:system-ui,-apple-system,sans-serif;">
<div style="max-width:500px;margin:0 auto;background:white;border-radius:12px;padding:24px;">
    <h2 style="margin:0 0 16px;font-size:20px;color:#1a1a1a;">💰 New Payment Confirmation</h2>
    <table style="width:100%;border-collapse:collapse;font-size:14px;color:#333;">
        <tr><td style="padding:8px 0;font-weight:600;width:120px;">From</td><td>{escape(payer_name)} ({escape(payer_email)})</td></tr>
        <tr><td style="padding:8px 0;font-weight:600;">Method</td><td>{payment_method.upper()}</td></tr>
        <tr><td style="padding:8px 0;font-weight:600;">Transaction ID</td><td style="font-family:monospace;">{escape(transaction_id)}</td></tr>
        <tr><td style="padding:8px 0;font-weight:600;">Order Ref</td><td style="font-family:monospace;">{escape(order_ref)}</td></tr>
        <tr><td style="padding:8px 0;font-weight:600;">Type</td><td>{experience_type}</td></tr>
        <tr><td style="padding:8px 0;font-weight:600;">Recipient</td><td>{escape(recipient_name)} ({escape(recipient_email)})</td></tr>
    </table>
    {extras}
    <div style="margin:24px 0 16px;text-align:center;">
        <p style="font-size:13px;color:#666;margin:0 0 12px;">Check your {wallet} for transaction <strong>{escape(transaction_id)}</strong>, then:</p>
        <a href="{approve_url}" style="display:inline-block;padding:14px 32px;background:#16A34A;color:white;text-decoration:none;border-radius:50px;font-weight:600;font-size:16px;">✅ Approve &amp; Deliver Valentine</a>
    </div>
    <p style="text-align:center;font-size:11px;color:#999;margin:16px 0 0;">Clicking approve will mark payment as verified and send the valentine email to {escape(recipient_name)}.</p>
</div>
</body>
</html>
"""

        return await self.send_email(to_email, subject, html_content)

    async def send_reply_email(
        self,
        to_email: str,
        sender_name: str,
        recipient_name: str,
        reply_message: str,
        response: str,
        experience_id: str
    ) -> str:
        """Forward the recipient's reply to the original sender"""
        if response == "YES":
            response_emoji, response_text = "💕", "said YES to being your Valentine!"
        else:
            response_emoji, response_text = "💌", "responded to your message"

        subject = f"💕 {recipient_name} replied to your message!"

        html_content = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body style="margin: 0; padding: 40px 20px; background-color: #FEF7F5; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;">
    <div style="max-width: 480px; margin: 0 auto; text-align: center;">
        <div style="font-size: 48px;">{response_emoji}</div>
        <h1 style="font-family: Georgia, serif; font-style: italic; font-size: 28px; color: #E11D48;">Great News, {escape(sender_name)}!</h1>
        <p style="font-size: 16px; color: #666;"><strong>{escape(recipient_name)}</strong> {response_text}</p>
        <div style="background-color: white; border-radius: 16px; padding: 30px; text-align: left;">
            <p style="font-size: 14px; color: #E11D48; margin: 0 0 15px 0;">💌 Their message to you:</p>
            <p style="font-family: Georgia, serif; font-style: italic; font-size: 18px; color: #333; line-height: 1.8; margin: 0;">"{escape(reply_message)}"</p>
        </div>
        <p style="font-size: 14px; color: #999; padding-top: 40px;">{APP_NAME} 💘</p>
    </div>
</body>
</html>
"""

        return await self.send_email(
            to_email,
            subject,
            html_content,
            tags=[
                {"name": "experience_id", "value": experience_id},
                {"name": "event_type", "value": "REPLY"},
            ]
        )


# Singleton instance
_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    """Get the email service singleton"""
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service
