"""Widget-session authenticated claim routes.

- POST /api/claim: claim a specific coupon (Mode A)
- GET /api/available-coupons?vendor=: coupons the session user can claim
"""

import structlog
from fastapi import APIRouter, Query, Response, status

from coupon_claim.api.dependencies import Claims, CurrentSession, DBSession, EventRecorder
from coupon_claim.api.errors import CLAIM_HEADERS, CORS_GET_HEADERS, storage_errors
from coupon_claim.api.models import (
    AvailableCouponsResponse,
    ClaimRequest,
    ClaimResponse,
    CouponSummaryModel,
)
from coupon_claim.domain.errors import AuthenticationRequired, VendorMismatch
from coupon_claim.domain.identity import is_anonymous_ref
from coupon_claim.logging_config import redact

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api", tags=["claims"])


@router.post("/claim", response_model=ClaimResponse)
def claim_coupon(
    body: ClaimRequest,
    session: CurrentSession,
    engine: Claims,
    db: DBSession,
    events: EventRecorder,
    response: Response,
) -> ClaimResponse:
    """Claim a specific coupon for the session user.

    Responses:
        200 OK: Coupon claimed, code returned
        400 Bad Request: Malformed body
        401 Unauthorized: Missing, invalid or expired session; guest session
        404 Not Found: Coupon missing, deleted or of another vendor
        409 Conflict: Coupon already claimed, or user already claimed this period
    """
    if is_anonymous_ref(session.user_id):
        logger.info("anonymous_claim_rejected", vendor_id=session.vendor_id)
        raise AuthenticationRequired("Please sign in to claim this coupon")

    with storage_errors("claim_coupon", coupon_id=body.coupon_id, vendor_id=session.vendor_id):
        claim = engine.claim_coupon(session.user_id, body.coupon_id, vendor_id=session.vendor_id)
        db.commit()

    events.record(claim, claim_mode="coupon")
    logger.info(
        "claim_succeeded",
        coupon_id=claim.coupon.id,
        vendor_id=claim.coupon.vendor_id,
        claimant=redact(session.user_id),
    )

    response.headers.update(CLAIM_HEADERS)
    return ClaimResponse(coupon_code=claim.coupon_code)


@router.get("/available-coupons", response_model=AvailableCouponsResponse)
def available_coupons(
    session: CurrentSession,
    engine: Claims,
    response: Response,
    vendor: str = Query(..., min_length=1, description="Vendor UUID"),
) -> AvailableCouponsResponse:
    """List coupons the session user can still claim from a vendor.

    Responses:
        200 OK: Listing (empty when the user already claimed this period)
        401 Unauthorized: Missing, invalid or expired session
        403 Forbidden: Vendor differs from the session's vendor
    """
    if vendor != session.vendor_id:
        logger.warning("vendor_mismatch", session_vendor_id=session.vendor_id, requested_vendor_id=vendor)
        raise VendorMismatch()

    with storage_errors("available_coupons", vendor_id=vendor):
        already_claimed = engine.has_claimed_this_period(vendor, session.user_id)
        coupons = [] if already_claimed else engine.list_available(vendor)
        period = engine.current_period()

    response.headers.update(CORS_GET_HEADERS)
    return AvailableCouponsResponse(
        coupons=[CouponSummaryModel(**coupon.summary()) for coupon in coupons],
        user_already_claimed=already_claimed,
        claim_month=period,
    )


@router.options("/claim", include_in_schema=False)
def claim_preflight() -> Response:
    return Response(status_code=status.HTTP_200_OK, headers=CLAIM_HEADERS)


@router.options("/available-coupons", include_in_schema=False)
def available_coupons_preflight() -> Response:
    return Response(status_code=status.HTTP_200_OK, headers=CORS_GET_HEADERS)
