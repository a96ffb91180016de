"""Internal API routes for vendor credential management.

These endpoints are only accessible by allowlisted services (the admin
dashboard backend) and require service authentication. Regenerating a
credential overwrites the old value immediately; there is no grace period.
"""

import structlog
from fastapi import APIRouter

from coupon_claim.api.auth import ServiceAuth
from coupon_claim.api.dependencies import DBSession, VendorRepo
from coupon_claim.api.errors import storage_errors
from coupon_claim.api.models import ApiKeyResponse, CredentialStatusResponse, PartnerSecretResponse
from coupon_claim.domain.credentials import generate_api_key, generate_partner_secret, mask_secret
from coupon_claim.domain.errors import VendorNotFound

logger = structlog.get_logger(__name__)

# Create router for internal API endpoints
router = APIRouter(prefix="/internal/v1", tags=["internal"])


@router.get("/vendors/{vendor_id}/credentials", response_model=CredentialStatusResponse)
def get_vendor_credentials(
    vendor_id: str,
    auth_info: ServiceAuth,
    vendors: VendorRepo,
) -> CredentialStatusResponse:
    """Show which credentials a vendor has, masked."""
    requesting_service, request_id = auth_info

    with storage_errors("get_vendor_credentials", vendor_id=vendor_id):
        credentials = vendors.get_credentials(vendor_id)
    if credentials is None:
        raise VendorNotFound()

    logger.info(
        "vendor_credentials_viewed",
        vendor_id=vendor_id,
        service=requesting_service,
        request_id=request_id,
    )
    return CredentialStatusResponse(
        vendor_id=vendor_id,
        has_partner_secret=credentials.has_partner_secret,
        partner_secret_masked=mask_secret(credentials.partner_secret),
        has_api_key=credentials.has_api_key,
        api_key_masked=mask_secret(credentials.api_key),
    )


@router.post("/vendors/{vendor_id}/partner-secret", response_model=PartnerSecretResponse)
def regenerate_partner_secret(
    vendor_id: str,
    auth_info: ServiceAuth,
    vendors: VendorRepo,
    db: DBSession,
) -> PartnerSecretResponse:
    """Generate a new partner secret. The value is returned only here."""
    requesting_service, request_id = auth_info

    secret = generate_partner_secret()
    with storage_errors("regenerate_partner_secret", vendor_id=vendor_id):
        vendors.set_partner_secret(vendor_id, secret)
        db.commit()

    logger.info(
        "partner_secret_regenerated",
        vendor_id=vendor_id,
        service=requesting_service,
        request_id=request_id,
    )
    return PartnerSecretResponse(vendor_id=vendor_id, partner_secret=secret)


@router.post("/vendors/{vendor_id}/api-key", response_model=ApiKeyResponse)
def regenerate_api_key(
    vendor_id: str,
    auth_info: ServiceAuth,
    vendors: VendorRepo,
    db: DBSession,
) -> ApiKeyResponse:
    """Generate a new API key. The value is returned only here."""
    requesting_service, request_id = auth_info

    api_key = generate_api_key()
    with storage_errors("regenerate_api_key", vendor_id=vendor_id):
        vendors.set_api_key(vendor_id, api_key)
        db.commit()

    logger.info(
        "api_key_regenerated",
        vendor_id=vendor_id,
        service=requesting_service,
        request_id=request_id,
    )
    return ApiKeyResponse(vendor_id=vendor_id, api_key=api_key)
