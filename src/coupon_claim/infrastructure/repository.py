"""Repository layer for coupon claim database operations.

Uniqueness is never checked in Python before a write. Inserts that can race
run inside a savepoint and treat ``IntegrityError`` as the losing outcome;
state transitions are conditional UPDATEs whose row count says who won.
"""

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Optional

import structlog
from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coupon_claim.domain.claims import (
    CouponRecord,
    HistoryInsertOutcome,
    ICouponClaimRepository,
    PeriodClaim,
    ensure_utc,
)
from coupon_claim.domain.credentials import VendorCredentials, VendorProfile
from coupon_claim.domain.errors import VendorNotFound
from coupon_claim.domain.identity import IExternalIdentityRepository
from coupon_claim.domain.services import IVendorDirectory
from coupon_claim.infrastructure.models import (
    ActiveVendorClaim,
    ClaimHistory,
    Coupon,
    ExternalIdentityMapping,
    User,
    Vendor,
)
from coupon_claim.logging_config import redact

logger = structlog.get_logger(__name__)


class ExternalIdentityRepository(IExternalIdentityRepository):
    """Repository for external identity mappings."""

    def __init__(self, session: Session):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy database session
        """
        self.session = session

    def get_mapped_user_id(self, vendor_id: str, external_ref: str) -> Optional[str]:
        return self.session.execute(
            select(ExternalIdentityMapping.user_id).where(
                ExternalIdentityMapping.vendor_id == vendor_id,
                ExternalIdentityMapping.external_ref == external_ref,
            )
        ).scalar_one_or_none()

    def create_user_with_mapping(self, vendor_id: str, external_ref: str, user_id: str) -> str:
        """Create a user plus its mapping, or return the concurrent winner's user id.

        Raises:
            IntegrityError: If the insert failed for a reason other than an
                existing mapping (e.g. unknown vendor)
        """
        try:
            with self.session.begin_nested():
                self.session.add(User(id=user_id, role="user"))
                self.session.flush()
                self.session.add(
                    ExternalIdentityMapping(
                        vendor_id=vendor_id,
                        external_ref=external_ref,
                        user_id=user_id,
                    )
                )
                self.session.flush()
            return user_id
        except IntegrityError:
            # Another transaction mapped the pair first; the savepoint rollback
            # discarded our user row as well.
            winner = self.get_mapped_user_id(vendor_id, external_ref)
            if winner is None:
                raise
            logger.debug("identity_mapping_conflict", vendor_id=vendor_id, external_ref=redact(external_ref))
            return winner


class VendorRepository(IVendorDirectory):
    """Repository for vendors, their credentials and registered users."""

    def __init__(self, session: Session):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy database session
        """
        self.session = session

    def _get_vendor(self, vendor_id: str) -> Optional[Vendor]:
        return self.session.execute(
            select(Vendor).where(
                Vendor.id == vendor_id,
                Vendor.deleted_at.is_(None),
                Vendor.active.is_(True),
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def get_credentials(self, vendor_id: str) -> Optional[VendorCredentials]:
        vendor = self._get_vendor(vendor_id)
        if vendor is None:
            return None
        return VendorCredentials(
            vendor_id=vendor.id,
            partner_secret=vendor.partner_secret,
            api_key=vendor.api_key,
        )

    def get_profile(self, vendor_id: str) -> Optional[VendorProfile]:
        vendor = self._get_vendor(vendor_id)
        if vendor is None:
            return None
        return VendorProfile(
            id=vendor.id,
            name=vendor.name,
            description=vendor.description,
            website=vendor.website,
            logo_url=vendor.logo_url,
        )

    def find_user_id_by_email(self, email: str) -> Optional[str]:
        return self.session.execute(
            select(User.id).where(User.email == email, User.deleted_at.is_(None))
        ).scalar_one_or_none()

    def user_exists(self, user_id: str) -> bool:
        return self.session.execute(
            select(exists().where(User.id == user_id, User.deleted_at.is_(None)))
        ).scalar()

    def set_partner_secret(self, vendor_id: str, secret: str) -> None:
        """Overwrite a vendor's partner secret.

        Raises:
            VendorNotFound: If the vendor does not exist
        """
        self._set_credential(vendor_id, partner_secret=secret)
        logger.info("vendor_partner_secret_rotated", vendor_id=vendor_id)

    def set_api_key(self, vendor_id: str, api_key: str) -> None:
        """Overwrite a vendor's API key.

        Raises:
            VendorNotFound: If the vendor does not exist
        """
        self._set_credential(vendor_id, api_key=api_key)
        logger.info("vendor_api_key_rotated", vendor_id=vendor_id)

    def _set_credential(self, vendor_id: str, **values: Any) -> None:
        result = self.session.execute(
            update(Vendor)
            .where(Vendor.id == vendor_id, Vendor.deleted_at.is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise VendorNotFound()


class CouponClaimRepository(ICouponClaimRepository):
    """Repository backing the claim engine."""

    def __init__(self, session: Session):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy database session
        """
        self.session = session

    def atomic(self) -> AbstractContextManager[Any]:
        return self.session.begin_nested()

    def get_coupon(self, coupon_id: str) -> Optional[CouponRecord]:
        coupon = self.session.execute(
            select(Coupon)
            .where(Coupon.id == coupon_id, Coupon.deleted_at.is_(None))
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if coupon is None:
            return None
        return self._to_domain_entity(coupon)

    def list_available_coupons(
        self,
        vendor_id: str,
        now: datetime,
        period: str | None = None,
        exclude_ids: set[str] | None = None,
        limit: int | None = None,
    ) -> list[CouponRecord]:
        stmt = select(Coupon).where(
            Coupon.vendor_id == vendor_id,
            Coupon.deleted_at.is_(None),
            or_(Coupon.expiry_date.is_(None), Coupon.expiry_date > now),
        )
        if period is not None:
            stmt = stmt.where(
                ~exists().where(
                    ClaimHistory.coupon_id == Coupon.id,
                    ClaimHistory.period == period,
                )
            )
        else:
            stmt = stmt.where(Coupon.is_claimed.is_(False))
        if exclude_ids:
            stmt = stmt.where(Coupon.id.not_in(exclude_ids))
        stmt = stmt.order_by(Coupon.created_at, Coupon.id)
        if limit is not None:
            stmt = stmt.limit(limit)

        # Conditional updates bypass the identity map; always load current rows.
        stmt = stmt.execution_options(populate_existing=True)
        return [self._to_domain_entity(coupon) for coupon in self.session.execute(stmt).scalars()]

    def mark_coupon_claimed(
        self,
        coupon_id: str,
        claimant_id: str,
        claimed_at: datetime,
        vendor_id: str | None = None,
    ) -> bool:
        stmt = update(Coupon).where(
            Coupon.id == coupon_id,
            Coupon.is_claimed.is_(False),
            Coupon.deleted_at.is_(None),
            or_(Coupon.expiry_date.is_(None), Coupon.expiry_date > claimed_at),
        )
        if vendor_id is not None:
            stmt = stmt.where(Coupon.vendor_id == vendor_id)

        result = self.session.execute(
            stmt.values(is_claimed=True, claimed_by=claimant_id, claimed_at=claimed_at).execution_options(
                synchronize_session=False
            )
        )
        return result.rowcount == 1

    def find_claimed_coupons(self, vendor_id: str, claimant_id: str) -> list[CouponRecord]:
        coupons = self.session.execute(
            select(Coupon)
            .where(
                Coupon.vendor_id == vendor_id,
                Coupon.claimed_by == claimant_id,
                Coupon.is_claimed.is_(True),
                Coupon.deleted_at.is_(None),
            )
            .order_by(Coupon.claimed_at.desc())
            .limit(10)
            .execution_options(populate_existing=True)
        ).scalars()
        return [self._to_domain_entity(coupon) for coupon in coupons]

    def acquire_claim_slot(
        self,
        vendor_id: str,
        claimant_id: str,
        hold_until: datetime,
        now: datetime,
    ) -> bool:
        try:
            with self.session.begin_nested():
                self.session.add(
                    ActiveVendorClaim(
                        vendor_id=vendor_id,
                        claimant_id=claimant_id,
                        coupon_id=None,
                        expires_at=hold_until,
                    )
                )
                self.session.flush()
            return True
        except IntegrityError:
            logger.debug("claim_slot_occupied", vendor_id=vendor_id, claimant=redact(claimant_id))

        # Take over the slot only if its previous holder's claim has lapsed.
        result = self.session.execute(
            update(ActiveVendorClaim)
            .where(
                ActiveVendorClaim.vendor_id == vendor_id,
                ActiveVendorClaim.claimant_id == claimant_id,
                ActiveVendorClaim.expires_at <= now,
            )
            .values(coupon_id=None, expires_at=hold_until)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def assign_claim_slot(
        self,
        vendor_id: str,
        claimant_id: str,
        coupon_id: str,
        expires_at: datetime,
    ) -> None:
        self.session.execute(
            update(ActiveVendorClaim)
            .where(
                ActiveVendorClaim.vendor_id == vendor_id,
                ActiveVendorClaim.claimant_id == claimant_id,
            )
            .values(coupon_id=coupon_id, expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )

    def insert_claim_history(
        self,
        coupon_id: str,
        vendor_id: str,
        user_id: str,
        period: str,
        claimed_at: datetime,
    ) -> HistoryInsertOutcome:
        try:
            with self.session.begin_nested():
                self.session.add(
                    ClaimHistory(
                        coupon_id=coupon_id,
                        vendor_id=vendor_id,
                        user_id=user_id,
                        period=period,
                        claimed_at=claimed_at,
                    )
                )
                self.session.flush()
            return HistoryInsertOutcome.INSERTED
        except IntegrityError:
            # Which unique index fired is read back from committed state,
            # never parsed out of the driver's error message.
            coupon_taken = self.session.execute(
                select(
                    exists().where(
                        ClaimHistory.coupon_id == coupon_id,
                        ClaimHistory.period == period,
                    )
                )
            ).scalar()
            if coupon_taken:
                return HistoryInsertOutcome.COUPON_TAKEN
            return HistoryInsertOutcome.USER_LIMIT_REACHED

    def get_period_claim(self, vendor_id: str, user_id: str, period: str) -> Optional[PeriodClaim]:
        row = self.session.execute(
            select(ClaimHistory, Coupon)
            .join(Coupon, Coupon.id == ClaimHistory.coupon_id)
            .where(
                ClaimHistory.vendor_id == vendor_id,
                ClaimHistory.user_id == user_id,
                ClaimHistory.period == period,
            )
            .execution_options(populate_existing=True)
        ).first()
        if row is None:
            return None
        history, coupon = row
        return PeriodClaim(
            coupon=self._to_domain_entity(coupon),
            user_id=history.user_id,
            period=history.period,
            claimed_at=ensure_utc(history.claimed_at),
        )

    def find_unexpired_claim(
        self,
        vendor_id: str,
        user_id: str,
        now: datetime,
        undated_claimed_after: datetime,
    ) -> Optional[PeriodClaim]:
        row = self.session.execute(
            select(ClaimHistory, Coupon)
            .join(Coupon, Coupon.id == ClaimHistory.coupon_id)
            .where(
                ClaimHistory.vendor_id == vendor_id,
                ClaimHistory.user_id == user_id,
                or_(
                    Coupon.expiry_date > now,
                    and_(Coupon.expiry_date.is_(None), ClaimHistory.claimed_at > undated_claimed_after),
                ),
            )
            .order_by(ClaimHistory.claimed_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        ).first()
        if row is None:
            return None
        history, coupon = row
        return PeriodClaim(
            coupon=self._to_domain_entity(coupon),
            user_id=history.user_id,
            period=history.period,
            claimed_at=ensure_utc(history.claimed_at),
        )

    def _to_domain_entity(self, model: Coupon) -> CouponRecord:
        """Convert ORM model to domain entity."""
        return CouponRecord(
            id=model.id,
            vendor_id=model.vendor_id,
            code=model.code,
            description=model.description,
            discount_value=model.discount_value,
            expiry_date=ensure_utc(model.expiry_date),
            is_claimed=model.is_claimed,
            claimed_by=model.claimed_by,
            claimed_at=ensure_utc(model.claimed_at),
        )
