"""
Lifecycle error taxonomy for Cupid's Arrow.

Every domain failure carries the HTTP status the API layer answers with,
so routes raise and a single exception handler renders the response.
"""


class LifecycleError(Exception):
    """Base class for experience lifecycle errors"""
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__ or "")
        self.message = message or (self.__class__.__doc__ or "").strip()


class ValidationError(LifecycleError):
    """Malformed or missing request fields"""
    status_code = 400


class InvalidSignatureError(LifecycleError):
    """Completion signal failed signature verification"""
    status_code = 401


class InvalidTokenError(LifecycleError):
    """Approval token is unknown or expired"""
    status_code = 404


class AlreadyPaidError(LifecycleError):
    """Experience has already been paid for"""
    status_code = 409


class AlreadyReviewedError(LifecycleError):
    """Manual payment claim was already approved"""
    status_code = 200

    def __init__(self, message: str = "", claim=None):
        super().__init__(message)
        self.claim = claim


class NotFoundError(LifecycleError):
    """Experience not found"""
    status_code = 404


class UnknownAttemptError(NotFoundError):
    """Payment attempt not found"""


class NotPayableStateError(LifecycleError):
    """Experience is not in PAID state"""
    status_code = 409


class GatewayError(LifecycleError):
    """Payment gateway unreachable or rejected the request"""
    status_code = 502


class EmailDeliveryError(LifecycleError):
    """Outbound email API failed"""
    status_code = 502
