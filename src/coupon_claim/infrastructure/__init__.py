"""Infrastructure layer exports."""

from coupon_claim.infrastructure.audit import ClaimEventRecorder
from coupon_claim.infrastructure.replay_guard import ReplayGuard, create_redis_client
from coupon_claim.infrastructure.repository import (
    CouponClaimRepository,
    ExternalIdentityRepository,
    VendorRepository,
)
from coupon_claim.infrastructure.resources import AppResources

__all__ = [
    "AppResources",
    "ClaimEventRecorder",
    "CouponClaimRepository",
    "ExternalIdentityRepository",
    "ReplayGuard",
    "VendorRepository",
    "create_redis_client",
]
