"""Pydantic models for JSON API requests/responses."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Request models


class SessionFromTokenRequest(BaseModel):
    """Partner token exchange request."""

    token: str = Field(..., min_length=1, description="Partner-signed JWT")

    model_config = ConfigDict(
        json_schema_extra={"example": {"token": "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9..."}}
    )


class WidgetSessionRequest(BaseModel):
    """API key exchange request.

    Exactly one of ``user_id`` (partner reference or anonymous marker) and
    ``user_email`` (registered user) identifies the user; ``user_email`` wins
    when both are given.
    """

    api_key: str = Field(..., min_length=1, description="Vendor API key")
    vendor_id: str = Field(..., min_length=1, description="Vendor UUID")
    user_id: Optional[str] = Field(None, max_length=255, description="Partner user reference")
    user_email: Optional[str] = Field(None, max_length=255, description="Registered user email")

    @model_validator(mode="after")
    def require_identity(self) -> "WidgetSessionRequest":
        if not (self.user_id and self.user_id.strip()) and not (self.user_email and self.user_email.strip()):
            raise ValueError("Either user_id or user_email must be provided")
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "api_key": "ak_3q2-7wE...",
                "vendor_id": "12345678-1234-5678-1234-567812345678",
                "user_id": "wp_1042",
            }
        }
    )


class ClaimRequest(BaseModel):
    """Claim a specific coupon with a widget session."""

    coupon_id: str = Field(..., min_length=1, description="Coupon UUID")


class WidgetClaimRequest(BaseModel):
    """Public widget claim.

    ``coupon_id`` claims that coupon; ``vendor_id`` alone claims any
    available coupon of the vendor.
    """

    coupon_id: Optional[str] = Field(None, description="Coupon UUID")
    vendor_id: Optional[str] = Field(None, description="Vendor UUID")
    user_id: Optional[str] = Field(None, max_length=255, description="User id, partner reference or anonymous marker")
    user_email: Optional[str] = Field(None, max_length=255, description="Registered user email")

    @model_validator(mode="after")
    def require_target_and_identity(self) -> "WidgetClaimRequest":
        if not self.coupon_id and not self.vendor_id:
            raise ValueError("Either coupon_id or vendor_id must be provided")
        if not (self.user_id and self.user_id.strip()) and not (self.user_email and self.user_email.strip()):
            raise ValueError("User identification required (user_id or user_email)")
        return self


# Response models


class SessionGrantData(BaseModel):
    session_token: str = Field(..., description="Widget session JWT")
    user_id: str = Field(..., description="Internal user id (or anonymous marker)")
    vendor_id: str = Field(..., description="Vendor the session is scoped to")


class SessionResponse(BaseModel):
    success: bool = True
    data: SessionGrantData


class ClaimResponse(BaseModel):
    success: bool = True
    coupon_code: str = Field(..., description="Reward code of the claimed coupon")


class WidgetClaimResponse(BaseModel):
    success: bool = True
    data: dict[str, Any] = Field(..., description="Claimed coupon summary including its code")


class CouponSummaryModel(BaseModel):
    id: str
    vendor_id: str
    description: Optional[str] = None
    discount_value: Optional[str] = None
    expiry_date: Optional[str] = None


class VendorModel(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    website: Optional[str] = None
    logo_url: Optional[str] = None


class WidgetCouponsResponse(BaseModel):
    vendor: VendorModel
    coupons: list[CouponSummaryModel]
    has_active_claim: bool = False
    active_claim_expiry: Optional[str] = None


class AvailableCouponsResponse(BaseModel):
    coupons: list[CouponSummaryModel]
    user_already_claimed: bool = False
    claim_month: str = Field(..., description="Current claim period key")


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    code: str


# Internal API models


class CredentialStatusResponse(BaseModel):
    vendor_id: str
    has_partner_secret: bool
    partner_secret_masked: Optional[str] = None
    has_api_key: bool
    api_key_masked: Optional[str] = None


class PartnerSecretResponse(BaseModel):
    vendor_id: str
    partner_secret: str = Field(..., description="New secret; shown once")
    message: str = "Partner secret regenerated. The previous secret no longer verifies tokens."


class ApiKeyResponse(BaseModel):
    vendor_id: str
    api_key: str = Field(..., description="New API key; shown once")
    message: str = "API key regenerated. The previous key no longer authenticates."
