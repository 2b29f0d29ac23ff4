from typing import Optional


class MarketplaceError(ValueError):
    """Base class for user-visible marketplace errors."""

    code = "error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, *, redirect_to: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.redirect_to = redirect_to


class ValidationError(MarketplaceError):
    code = "validation_error"


class NotFoundError(MarketplaceError):
    code = "not_found"
    status_code = 404


class UnauthorizedError(MarketplaceError):
    code = "unauthorized"
    status_code = 403


class UnauthenticatedError(UnauthorizedError):
    code = "unauthenticated"
    status_code = 401


class InvalidTransitionError(MarketplaceError):
    code = "invalid_transition"
    status_code = 409


class InvalidFeeError(MarketplaceError):
    code = "invalid_fee"


class ConflictError(MarketplaceError):
    code = "conflict"
    status_code = 409
    retryable = True


class SessionMismatchError(MarketplaceError):
    code = "session_mismatch"


class PaymentIncompleteError(MarketplaceError):
    code = "payment_incomplete"
    status_code = 402
    retryable = True


class GatewayUnavailableError(MarketplaceError):
    code = "gateway_unavailable"
    status_code = 503
    retryable = True


class RoleVerdictPendingError(MarketplaceError):
    code = "role_pending"
    status_code = 503
    retryable = True


class DuplicateReviewError(MarketplaceError):
    code = "already_reviewed"
    status_code = 409
