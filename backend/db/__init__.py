from .database import get_db, engine, AsyncSessionLocal, init_db
from .models import (
    Base, Experience, ExperienceType, LifecycleState, RecipientResponse,
    PaymentAttempt, PaymentGateway, PaymentAttemptStatus,
    ManualPaymentClaim, ManualPaymentMethod, AnalyticsEvent,
    LIFECYCLE_ORDER, PAYABLE_STATES, is_paid_or_later,
)
