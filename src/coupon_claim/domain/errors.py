"""Typed error taxonomy for the coupon claim core.

Every failure the core can report is one of the classes below. Each carries
an ``ErrorKind`` and a machine-readable ``code``; the API layer maps kinds to
transport status codes and never inspects message text.
"""

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from coupon_claim.domain.claims import ActiveClaim


class ErrorKind(str, Enum):
    """Closed set of error categories."""

    AUTHENTICATION = "authentication"
    FORBIDDEN = "forbidden"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INFRASTRUCTURE = "infrastructure"


class CouponClaimError(Exception):
    """Base exception for all coupon claim errors."""

    kind: ErrorKind = ErrorKind.INFRASTRUCTURE
    code: str = "INTERNAL_ERROR"
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def details(self) -> dict[str, Any] | None:
        """Extra structured payload for the response body, if any."""
        return None


# Authentication


class AuthenticationError(CouponClaimError):
    kind = ErrorKind.AUTHENTICATION
    code = "UNAUTHORIZED"
    default_message = "Authentication failed"


class MissingSession(AuthenticationError):
    code = "MISSING_SESSION"
    default_message = "Unauthorized: widget session token required"


class InvalidToken(AuthenticationError):
    code = "INVALID_TOKEN"
    default_message = "Invalid token"


class ExpiredToken(AuthenticationError):
    code = "TOKEN_EXPIRED"
    default_message = "Token has expired"


class InvalidApiKey(AuthenticationError):
    code = "INVALID_API_KEY"
    default_message = "Invalid API key"


class AuthenticationRequired(AuthenticationError):
    """An anonymous identity reached a path that needs an authenticated one."""

    code = "AUTHENTICATION_REQUIRED"
    default_message = "Authenticated user required"


class VendorMismatch(CouponClaimError):
    kind = ErrorKind.FORBIDDEN
    code = "VENDOR_MISMATCH"
    default_message = "Vendor ID mismatch"


# Validation / configuration


class ValidationFailed(CouponClaimError):
    kind = ErrorKind.VALIDATION
    code = "VALIDATION_ERROR"
    default_message = "Validation error"

    def __init__(self, message: str | None = None, issues: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.issues = issues or []

    def details(self) -> dict[str, Any] | None:
        if not self.issues:
            return None
        return {"details": self.issues}


class CredentialNotConfigured(CouponClaimError):
    kind = ErrorKind.CONFIGURATION
    code = "CREDENTIAL_NOT_CONFIGURED"
    default_message = "Vendor does not have this credential configured"


# Not found


class NotFoundError(CouponClaimError):
    kind = ErrorKind.NOT_FOUND
    code = "NOT_FOUND"
    default_message = "Not found"


class CouponNotFound(NotFoundError):
    code = "COUPON_NOT_FOUND"
    default_message = "Coupon not found"


class VendorNotFound(NotFoundError):
    code = "VENDOR_NOT_FOUND"
    default_message = "Vendor not found"


class UserNotFound(NotFoundError):
    code = "USER_NOT_FOUND"
    default_message = "User not found"


# Conflicts (expected outcomes under contention)


class ConflictError(CouponClaimError):
    kind = ErrorKind.CONFLICT
    code = "CONFLICT"
    default_message = "Conflict"


class CouponAlreadyClaimed(ConflictError):
    code = "COUPON_ALREADY_CLAIMED"
    default_message = "Coupon has already been claimed"


class UserAlreadyClaimed(ConflictError):
    code = "USER_ALREADY_CLAIMED"
    default_message = "User already claimed a coupon from this vendor in this period"


class ActiveClaimExists(ConflictError):
    code = "ACTIVE_CLAIM_EXISTS"
    default_message = "An active claim already exists for this vendor"

    def __init__(self, existing: "ActiveClaim | None" = None, message: str | None = None):
        super().__init__(message)
        self.existing = existing

    def details(self) -> dict[str, Any] | None:
        if self.existing is None:
            return None
        return {"existing_claim": self.existing.to_dict()}


class JtiReplay(ConflictError):
    code = "JTI_REPLAY"
    default_message = "Partner token has already been used"


class NoAvailableCoupons(ConflictError):
    code = "NO_AVAILABLE_COUPONS"
    default_message = "No coupons available for this vendor"


# Infrastructure


class InfrastructureError(CouponClaimError):
    kind = ErrorKind.INFRASTRUCTURE
    code = "INTERNAL_ERROR"
    default_message = "Internal server error"


class ReplayStoreUnavailable(InfrastructureError):
    code = "REPLAY_STORE_UNAVAILABLE"
    default_message = "Replay protection store unavailable"


class SigningSecretMissing(InfrastructureError):
    code = "SIGNING_SECRET_MISSING"
    default_message = "Widget session signing secret is not configured"


class DataStoreUnavailable(InfrastructureError):
    code = "DATA_STORE_UNAVAILABLE"
    default_message = "Data store unavailable"
