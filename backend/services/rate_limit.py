"""
Rate Limiting Configuration for Cupid's Arrow

Protects the public, unauthenticated write endpoints:
- Experience creation (spam experiences)
- Payment intents (gateway API quota)
- Manual payment claims and replies (admin / sender inbox flooding)

Webhooks and admin approval are not limited: gateways retry on 429.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request, Response
from fastapi.responses import JSONResponse
import logging

logger = logging.getLogger(__name__)


def get_ip_only(request: Request) -> str:
    """Key requests by client IP; there are no user accounts."""
    return f"ip:{get_remote_address(request)}"


# Create limiter instance with in-memory storage
# For production with multiple workers, use Redis: "redis://localhost:6379"
limiter = Limiter(
    key_func=get_ip_only,
    storage_uri="memory://",
    strategy="fixed-window"
)

# Rate limit configurations by endpoint type
RATE_LIMITS = {
    "experience_create": "10/minute",   # 10 new experiences per minute per IP
    "payment_intent": "20/minute",      # 20 order/session creations per minute per IP
    "manual_claim": "5/minute",         # 5 manual payment claims per minute per IP
    "reply": "5/minute",                # 5 replies per minute per IP
}


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """
    Custom handler for rate limit exceeded errors.
    Returns a user-friendly JSON response with retry information.
    """
    retry_after = getattr(exc, 'retry_after', 60)

    client_id = get_ip_only(request)
    logger.warning(
        f"Rate limit exceeded for {client_id} on {request.url.path}",
        extra={
            "client_id": client_id,
            "path": request.url.path,
            "method": request.method,
            "limit": str(exc.detail) if hasattr(exc, 'detail') else "unknown"
        }
    )

    return JSONResponse(
        status_code=429,
        content={
            "detail": "Rate limit exceeded. Please slow down.",
            "error_code": "RATE_LIMIT_EXCEEDED",
            "retry_after": retry_after,
            "message": f"Too many requests. Please wait {retry_after} seconds before trying again."
        },
        headers={
            "Retry-After": str(retry_after),
            "X-RateLimit-Limit": str(exc.detail) if hasattr(exc, 'detail') else "unknown",
        }
    )


def limit_endpoint(name: str):
    """Rate limit decorator for a named public endpoint."""
    return limiter.limit(RATE_LIMITS[name], key_func=get_ip_only)
