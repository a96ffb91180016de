"""Public widget routes.

The widget runs on partner pages without a session. Callers identify the
user with one of:

- ``user_email``: a registered user, looked up by email
- ``user_id`` with an anonymous prefix: a guest, used as-is
- ``user_id`` shaped like a UUID: a registered user, looked up by id
- any other ``user_id``: a partner reference, mapped through the identity
  resolver scoped to the coupon's vendor
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Query, Response, status

from coupon_claim.api.dependencies import Claims, DBSession, EventRecorder, Resolver, VendorRepo
from coupon_claim.api.errors import CLAIM_HEADERS, CORS_GET_HEADERS, storage_errors
from coupon_claim.api.models import (
    CouponSummaryModel,
    VendorModel,
    WidgetClaimRequest,
    WidgetClaimResponse,
    WidgetCouponsResponse,
)
from coupon_claim.domain.claims import ActiveClaim, ClaimedCoupon, ClaimEngine
from coupon_claim.domain.errors import UserNotFound, ValidationFailed, VendorNotFound
from coupon_claim.domain.identity import IdentityResolver, is_anonymous_ref, is_uuid_shaped
from coupon_claim.infrastructure.repository import VendorRepository
from coupon_claim.logging_config import redact

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/widget", tags=["widget"])


def resolve_claimant(
    vendor_id: str,
    vendors: VendorRepository,
    resolver: IdentityResolver,
    user_id: Optional[str] = None,
    user_email: Optional[str] = None,
    create: bool = True,
) -> Optional[str]:
    """Turn widget-supplied identity fields into a claimant id.

    Args:
        vendor_id: Vendor scoping partner references
        create: Map unseen partner references to new users; when False an
            unseen reference resolves to None

    Raises:
        UserNotFound: Unknown email or UUID-shaped id
        ValidationFailed: Neither field given
    """
    if user_email and user_email.strip():
        found = vendors.find_user_id_by_email(user_email.strip().lower())
        if found is None:
            raise UserNotFound("User not found. Please ensure you have an account.")
        return found

    ref = (user_id or "").strip()
    if not ref:
        raise ValidationFailed("User identification required (user_id or user_email)")

    if is_anonymous_ref(ref):
        return ref

    if is_uuid_shaped(ref):
        if not vendors.user_exists(ref):
            raise UserNotFound()
        return ref

    if create:
        return resolver.resolve(vendor_id, ref)
    return resolver.lookup(vendor_id, ref)


@router.post("/claim", response_model=WidgetClaimResponse)
def widget_claim(
    body: WidgetClaimRequest,
    engine: Claims,
    vendors: VendorRepo,
    resolver: Resolver,
    db: DBSession,
    events: EventRecorder,
    response: Response,
) -> WidgetClaimResponse:
    """Claim a coupon from the public widget.

    With ``coupon_id`` that coupon is claimed; with only ``vendor_id`` any
    available coupon of the vendor is. Either way the claimant may hold at
    most one unexpired claim per vendor.

    Responses:
        200 OK: Claimed coupon summary including its code
        400 Bad Request: Missing target or identity
        404 Not Found: Unknown user, coupon or vendor
        409 Conflict: Active claim exists (with its details), coupon taken,
            period limit reached or nothing left to claim
    """
    with storage_errors("widget_claim", coupon_id=body.coupon_id, vendor_id=body.vendor_id):
        claim = _claim(body, engine, vendors, resolver)
        db.commit()

    events.record(claim, claim_mode="vendor")
    logger.info(
        "claim_succeeded",
        mode="vendor",
        coupon_id=claim.coupon.id,
        vendor_id=claim.coupon.vendor_id,
        claimant=redact(claim.claimant_id),
    )

    response.headers.update(CLAIM_HEADERS)
    return WidgetClaimResponse(data=claim.to_dict())


def _claim(
    body: WidgetClaimRequest,
    engine: ClaimEngine,
    vendors: VendorRepository,
    resolver: IdentityResolver,
) -> ClaimedCoupon:
    if body.coupon_id:
        coupon = engine.get_coupon(body.coupon_id)
        vendor_id = coupon.vendor_id
        if body.vendor_id and body.vendor_id != vendor_id:
            raise ValidationFailed("coupon_id does not belong to vendor_id")
    else:
        vendor_id = body.vendor_id
        if vendors.get_profile(vendor_id) is None:
            raise VendorNotFound()

    claimant_id = resolve_claimant(
        vendor_id,
        vendors,
        resolver,
        user_id=body.user_id,
        user_email=body.user_email,
    )

    # Public claims of any identity are vendor claims, bound by the active-claim rule.
    return engine.claim_for_vendor(claimant_id, vendor_id, preferred_coupon_id=body.coupon_id)


@router.get("/coupons", response_model=WidgetCouponsResponse)
def widget_coupons(
    engine: Claims,
    vendors: VendorRepo,
    resolver: Resolver,
    response: Response,
    vendor_id: str = Query(..., description="Vendor UUID"),
    user_id: Optional[str] = Query(None, description="User id, partner reference or anonymous marker"),
) -> WidgetCouponsResponse:
    """List a vendor's claimable coupons, without codes.

    When ``user_id`` is given the response also says whether that identity
    already holds an active claim for the vendor. Listing never creates users.

    Responses:
        200 OK: Vendor and coupon listing
        400 Bad Request: Malformed vendor id
        404 Not Found: Unknown vendor or user
    """
    if not is_uuid_shaped(vendor_id):
        raise ValidationFailed(
            "Invalid vendor ID",
            issues=[{"loc": ["query", "vendor_id"], "msg": "must be a UUID", "type": "value_error"}],
        )

    with storage_errors("widget_coupons", vendor_id=vendor_id):
        profile = vendors.get_profile(vendor_id)
        if profile is None:
            raise VendorNotFound()

        coupons = engine.list_available(vendor_id)

        active: Optional[ActiveClaim] = None
        if user_id:
            claimant_id = resolve_claimant(vendor_id, vendors, resolver, user_id=user_id, create=False)
            if claimant_id is not None:
                active = engine.find_active_claim(vendor_id, claimant_id)

    response.headers.update(CORS_GET_HEADERS)
    return WidgetCouponsResponse(
        vendor=VendorModel(**profile.to_dict()),
        coupons=[CouponSummaryModel(**coupon.summary()) for coupon in coupons],
        has_active_claim=active is not None,
        active_claim_expiry=active.to_dict()["expires_at"] if active else None,
    )


@router.options("/claim", include_in_schema=False)
def widget_claim_preflight() -> Response:
    return Response(status_code=status.HTTP_200_OK, headers=CLAIM_HEADERS)


@router.options("/coupons", include_in_schema=False)
def widget_coupons_preflight() -> Response:
    return Response(status_code=status.HTTP_200_OK, headers=CORS_GET_HEADERS)
