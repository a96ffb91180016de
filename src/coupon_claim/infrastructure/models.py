"""SQLAlchemy ORM models for Coupon Claim Service."""

from datetime import datetime

from sqlalchemy import (
    TIMESTAMP,
    BigInteger,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from coupon_claim.domain.claims import utcnow
from coupon_claim.infrastructure.database import Base

# BIGSERIAL on PostgreSQL, INTEGER PRIMARY KEY (rowid alias) on SQLite
AutoIncrementId = BigInteger().with_variant(Integer, "sqlite")


class User(Base):
    """
    Registered or partner-provisioned user.

    Users created by the identity resolver have no email; they are known
    only through their external identity mappings.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, comment="Internal user UUID")

    email: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True, comment="Login email (null for partner users)"
    )

    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    role: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="user",
        comment="super_admin, partner_admin or user",
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    deleted_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)


class ExternalIdentityMapping(Base):
    """
    (vendor, external reference) -> internal user.

    The composite primary key is the uniqueness guarantee the identity
    resolver relies on. Rows are never updated.
    """

    __tablename__ = "external_identity_mappings"

    vendor_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("vendors.id"), primary_key=True, comment="Scoping vendor"
    )

    external_ref: Mapped[str] = mapped_column(
        String(255), primary_key=True, comment="Partner-side user reference"
    )

    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False, index=True, comment="Internal user"
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


class Vendor(Base):
    """
    Coupon-issuing partner.

    Credentials are nullable and independently regenerated; a new value
    overwrites the old one immediately.
    """

    __tablename__ = "vendors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, comment="Vendor UUID")

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    website: Mapped[str | None] = mapped_column(String(500), nullable=True)
    logo_url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    partner_secret: Mapped[str | None] = mapped_column(
        String(255), nullable=True, comment="HMAC secret for partner-signed tokens"
    )

    api_key: Mapped[str | None] = mapped_column(
        String(255), nullable=True, comment="Key for the API key session exchange"
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    deleted_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)


class Coupon(Base):
    """
    A single redeemable coupon code.

    ``is_claimed``/``claimed_by``/``claimed_at`` are the claim gate in the
    one-shot model. ``claimed_by`` is a plain string because guest claims
    store an anonymous marker rather than a user id.
    """

    __tablename__ = "coupons"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, comment="Coupon UUID")

    vendor_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("vendors.id"), nullable=False, comment="Owning vendor"
    )

    code: Mapped[str] = mapped_column(String(255), nullable=False, comment="Reward code")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    discount_value: Mapped[str | None] = mapped_column(String(100), nullable=True)

    expiry_date: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    is_claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    claimed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    deleted_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_coupons_vendor_claimed", "vendor_id", "is_claimed"),
        Index("idx_coupons_claimed_by", "vendor_id", "claimed_by"),
    )


class ClaimHistory(Base):
    """
    One row per claim in the period model.

    Both unique constraints are load-bearing: one winner per coupon per
    period, one claim per identity per vendor per period.
    """

    __tablename__ = "claim_history"

    id: Mapped[int] = mapped_column(AutoIncrementId, primary_key=True, autoincrement=True)

    coupon_id: Mapped[str] = mapped_column(String(36), ForeignKey("coupons.id"), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(36), ForeignKey("vendors.id"), nullable=False)

    user_id: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="Internal user id or anonymous marker"
    )

    period: Mapped[str] = mapped_column(String(16), nullable=False, comment="Claim period key")

    claimed_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("coupon_id", "period", name="uq_claim_history_coupon_period"),
        UniqueConstraint("vendor_id", "user_id", "period", name="uq_claim_history_vendor_user_period"),
    )


class ActiveVendorClaim(Base):
    """
    Active-claim slot per (vendor, claimant) used by vendor claims in both models.

    The primary key serialises concurrent vendor claims by the same
    identity; a slot whose hold expired may be taken over.
    """

    __tablename__ = "active_vendor_claims"

    vendor_id: Mapped[str] = mapped_column(String(36), ForeignKey("vendors.id"), primary_key=True)

    claimant_id: Mapped[str] = mapped_column(
        String(255), primary_key=True, comment="Internal user id or anonymous marker"
    )

    coupon_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("coupons.id"), nullable=True
    )

    expires_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, comment="Slot is free again after this"
    )


class ClaimEvent(Base):
    """
    Insert-only log of successful claims.

    Carries redacted claimant references only.
    """

    __tablename__ = "claim_events"

    id: Mapped[int] = mapped_column(AutoIncrementId, primary_key=True, autoincrement=True)

    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(36), nullable=False)
    coupon_id: Mapped[str] = mapped_column(String(36), nullable=False)
    claimant_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    claim_mode: Mapped[str] = mapped_column(String(16), nullable=False, comment="coupon or vendor")

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        index=True,
    )

    __table_args__ = (Index("idx_claim_events_vendor_created", "vendor_id", "created_at"),)
