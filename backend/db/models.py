"""
Cupid's Arrow Database Models
SQLAlchemy 2.0

Enforces:
- Relational integrity via foreign keys
- Monotonic lifecycle progression (via conditional updates in services)
- Unique gateway references and approval tokens
"""
from datetime import datetime, timezone
from typing import Optional, List
from enum import Enum as PyEnum
import uuid

from sqlalchemy import (
    String, Text, Boolean, Integer, DateTime, JSON,
    ForeignKey, Index,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


def generate_uuid(prefix: str = "") -> str:
    """Generate a prefixed UUID"""
    return f"{prefix}{uuid.uuid4().hex[:12]}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# ENUMS (Python-side for type safety)
# ============================================

class ExperienceType(str, PyEnum):
    CRUSH = "CRUSH"
    COUPLE = "COUPLE"


class LifecycleState(str, PyEnum):
    DRAFT = "DRAFT"
    PREVIEW = "PREVIEW"
    PAID = "PAID"
    SENT = "SENT"
    OPENED = "OPENED"
    RESPONDED = "RESPONDED"


class RecipientResponse(str, PyEnum):
    YES = "YES"
    GRACEFUL_EXIT = "GRACEFUL_EXIT"
    REAFFIRMED = "REAFFIRMED"


class PaymentGateway(str, PyEnum):
    RAZORPAY = "razorpay"
    STRIPE = "stripe"
    MANUAL = "manual"


class PaymentAttemptStatus(str, PyEnum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class ManualPaymentMethod(str, PyEnum):
    UPI = "upi"
    PAYPAL = "paypal"


# Lifecycle ordering for validation
LIFECYCLE_ORDER = {
    LifecycleState.DRAFT: 0,
    LifecycleState.PREVIEW: 1,
    LifecycleState.PAID: 2,
    LifecycleState.SENT: 3,
    LifecycleState.OPENED: 4,
    LifecycleState.RESPONDED: 5,
}

# States from which a payment may still complete
PAYABLE_STATES = (LifecycleState.DRAFT.value, LifecycleState.PREVIEW.value)


def is_paid_or_later(state: str) -> bool:
    """True once an experience has reached PAID"""
    return LIFECYCLE_ORDER[LifecycleState(state)] >= LIFECYCLE_ORDER[LifecycleState.PAID]


# ============================================
# EXPERIENCE MODELS
# ============================================

class Experience(Base):
    __tablename__ = "experiences"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    experience_id: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, default=lambda: generate_uuid("exp_"))
    experience_type: Mapped[str] = mapped_column(String(20), nullable=False)
    lifecycle_state: Mapped[str] = mapped_column(String(20), default=LifecycleState.DRAFT.value, nullable=False)
    content: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    # Price snapshot in the smallest currency unit (paise / cents)
    amount_due: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)

    recipient_name: Mapped[str] = mapped_column(String(255), nullable=False)
    recipient_email: Mapped[str] = mapped_column(String(255), nullable=False)
    sender_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sender_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    response: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    reply_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    paid_attempt_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    delivery_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    replied_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    payment_attempts: Mapped[List["PaymentAttempt"]] = relationship(back_populates="experience", cascade="all, delete-orphan")
    manual_claims: Mapped[List["ManualPaymentClaim"]] = relationship(back_populates="experience", cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_experiences_experience_id', 'experience_id'),
        Index('idx_experiences_lifecycle_state', 'lifecycle_state'),
    )


# ============================================
# PAYMENT MODELS
# ============================================

class PaymentAttempt(Base):
    __tablename__ = "payment_attempts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    attempt_id: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, default=lambda: generate_uuid("pay_"))
    experience_id: Mapped[str] = mapped_column(String(50), ForeignKey("experiences.experience_id", ondelete="CASCADE"), nullable=False)
    gateway: Mapped[str] = mapped_column(String(20), nullable=False)

    # Razorpay order id / Stripe checkout session id; null for the manual rail
    gateway_reference: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    # Razorpay payment id / Stripe payment intent id
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Hosted checkout page (Stripe), reused while the attempt is PENDING
    checkout_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=PaymentAttemptStatus.PENDING.value, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    completion_source: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    error_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    experience: Mapped["Experience"] = relationship(back_populates="payment_attempts")

    __table_args__ = (
        Index('idx_payment_attempts_experience', 'experience_id', 'gateway', 'status'),
        Index('idx_payment_attempts_reference', 'gateway_reference'),
        Index('idx_payment_attempts_payment_id', 'gateway_payment_id'),
    )


class ManualPaymentClaim(Base):
    __tablename__ = "manual_payment_claims"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    claim_id: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, default=lambda: generate_uuid("claim_"))
    experience_id: Mapped[str] = mapped_column(String(50), ForeignKey("experiences.experience_id", ondelete="CASCADE"), nullable=False)
    attempt_id: Mapped[str] = mapped_column(String(50), ForeignKey("payment_attempts.attempt_id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    screenshot_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    message_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    order_ref: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Single-use capability granting approval rights
    approval_token: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    token_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reviewed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    # Relationships
    experience: Mapped["Experience"] = relationship(back_populates="manual_claims")

    __table_args__ = (
        Index('idx_manual_claims_experience', 'experience_id'),
        Index('idx_manual_claims_token', 'approval_token'),
    )


# ============================================
# ANALYTICS MODELS
# ============================================

class AnalyticsEvent(Base):
    """Append-only audit trail of lifecycle events"""
    __tablename__ = "analytics_events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, default=lambda: generate_uuid("evt_"))
    experience_id: Mapped[str] = mapped_column(String(50), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    event_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index('idx_analytics_events_experience', 'experience_id', 'created_at'),
        Index('idx_analytics_events_type', 'event_type'),
    )
