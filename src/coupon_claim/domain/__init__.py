"""Coupon claim domain layer.

Token issue and verification, identity resolution, the claim engine and the
session exchange service. Nothing in this package talks to a database or
Redis directly; storage is reached through the repository interfaces below.
"""

from coupon_claim.domain.claims import (
    ActiveClaim,
    ClaimedCoupon,
    ClaimEngine,
    ClaimModel,
    CouponRecord,
    ICouponClaimRepository,
    period_key,
)
from coupon_claim.domain.credentials import VendorCredentials, VendorProfile
from coupon_claim.domain.errors import CouponClaimError, ErrorKind
from coupon_claim.domain.identity import IExternalIdentityRepository, IdentityResolver
from coupon_claim.domain.services import (
    IReplayGuard,
    IVendorDirectory,
    SessionExchangeService,
    SessionGrant,
)
from coupon_claim.domain.tokens import PartnerTokenClaims, TokenService, WidgetSession

__all__ = [
    # Claims
    "ActiveClaim",
    "ClaimedCoupon",
    "ClaimEngine",
    "ClaimModel",
    "CouponRecord",
    "period_key",
    # Credentials
    "VendorCredentials",
    "VendorProfile",
    # Errors
    "CouponClaimError",
    "ErrorKind",
    # Services
    "IdentityResolver",
    "SessionExchangeService",
    "SessionGrant",
    "TokenService",
    "PartnerTokenClaims",
    "WidgetSession",
    # Repository interfaces
    "ICouponClaimRepository",
    "IExternalIdentityRepository",
    "IReplayGuard",
    "IVendorDirectory",
]
