"""
Pricing and region helpers.

All amounts are in the smallest currency unit (paise / cents).
"""
from typing import Optional

from db.models import ExperienceType

# Price snapshot taken at experience creation, by region
REGION_PRICING = {
    "IN": {"currency": "INR", ExperienceType.CRUSH: 4900, ExperienceType.COUPLE: 9900},
    "INTL": {"currency": "USD", ExperienceType.CRUSH: 199, ExperienceType.COUPLE: 299},
}

# Stripe Checkout prices per currency
STRIPE_PRICE_MAP = {
    "usd": {ExperienceType.CRUSH: 199, ExperienceType.COUPLE: 299},
    "eur": {ExperienceType.CRUSH: 199, ExperienceType.COUPLE: 299},
    "gbp": {ExperienceType.CRUSH: 159, ExperienceType.COUPLE: 249},
    "inr": {ExperienceType.CRUSH: 14900, ExperienceType.COUPLE: 24900},
}

CURRENCY_SYMBOLS = {"INR": "₹", "USD": "$", "EUR": "€", "GBP": "£"}

INDIA_TIMEZONES = {"Asia/Kolkata", "Asia/Calcutta"}


def detect_region(timezone_name: Optional[str] = None, locale: Optional[str] = None) -> str:
    """Guess the buyer's pricing region from browser timezone and locale hints"""
    locale = locale or ""
    if timezone_name in INDIA_TIMEZONES:
        return "IN"
    if "IN" in locale or locale in ("hi", "hi-IN"):
        return "IN"
    return "INTL"


def price_for(experience_type: str, region: str = "IN") -> tuple[int, str]:
    """Return (amount, currency) for an experience type in a region"""
    table = REGION_PRICING.get(region, REGION_PRICING["INTL"])
    return table[ExperienceType(experience_type)], table["currency"]


def stripe_price_for(experience_type: str, currency: str) -> int:
    prices = STRIPE_PRICE_MAP[currency.lower()]
    return prices[ExperienceType(experience_type)]


def format_amount(amount: int, currency: str) -> str:
    """Human display: 4900 INR -> ₹49, 199 USD -> $1.99"""
    symbol = CURRENCY_SYMBOLS.get(currency.upper(), f"{currency.upper()} ")
    major, minor = divmod(amount, 100)
    if minor == 0 and currency.upper() == "INR":
        return f"{symbol}{major}"
    return f"{symbol}{major}.{minor:02d}"


def order_ref(experience_id: str) -> str:
    """Short reference shown to manual payers and in admin emails"""
    raw = experience_id.split("_", 1)[-1].replace("-", "")
    return f"VA-{raw[:8].upper()}"
