"""Claim engine: exactly-once coupon assignment under concurrency.

Two claim models exist and a deployment picks one:

- ``period``: claim facts live in a claim-history relation with two unique
  indexes, (coupon, period) and (vendor, user, period). A coupon can be
  claimed by different users in different periods, never by two users in
  the same period.
- ``one_shot``: the coupon's own ``is_claimed`` flag is the gate and
  Unclaimed -> Claimed is terminal.

Two claim modes run against either model:

- Mode A, ``claim_coupon``: claim a specific coupon for an authenticated user.
- Mode B, ``claim_for_vendor``: claim any available coupon of a vendor for a
  registered or anonymous identity, at most one active claim per vendor.
  Claims can outlive the period they were made in, so the active-claim check
  spans periods, and concurrent requests of one identity are serialised by a
  per-(vendor, claimant) slot row.

The engine never checks-then-acts. Every decision about who wins is made by
a single conditional update or a unique-index insert in the repository; the
engine only interprets the outcome.
"""

import random
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from coupon_claim.domain.errors import (
    ActiveClaimExists,
    AuthenticationRequired,
    CouponAlreadyClaimed,
    CouponNotFound,
    NoAvailableCoupons,
    UserAlreadyClaimed,
)
from coupon_claim.domain.identity import is_anonymous_ref
from coupon_claim.logging_config import redact

logger = structlog.get_logger(__name__)


class ClaimModel(str, Enum):
    PERIOD = "period"
    ONE_SHOT = "one_shot"


class HistoryInsertOutcome(Enum):
    """Result of inserting a claim-history row."""

    INSERTED = "inserted"
    COUPON_TAKEN = "coupon_taken"
    USER_LIMIT_REACHED = "user_limit_reached"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def period_key(moment: datetime, granularity: str = "month") -> str:
    """Compute the claim period key for a moment in time.

    Args:
        moment: Timestamp (naive values are treated as UTC)
        granularity: ``month`` (YYYYMM), ``week`` (ISO YYYYWww) or ``day`` (YYYYMMDD)

    Raises:
        ValueError: For an unknown granularity
    """
    moment = ensure_utc(moment)
    if granularity == "month":
        return f"{moment.year:04d}{moment.month:02d}"
    if granularity == "week":
        iso_year, iso_week, _ = moment.isocalendar()
        return f"{iso_year:04d}W{iso_week:02d}"
    if granularity == "day":
        return moment.strftime("%Y%m%d")
    raise ValueError(f"Unknown claim period granularity: {granularity}")


def _iso(value: datetime | None) -> str | None:
    value = ensure_utc(value)
    return value.isoformat() if value else None


@dataclass(frozen=True)
class CouponRecord:
    """Coupon as seen by the claim core."""

    id: str
    vendor_id: str
    code: str
    description: str | None = None
    discount_value: str | None = None
    expiry_date: datetime | None = None
    is_claimed: bool = False
    claimed_by: str | None = None
    claimed_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        expiry = ensure_utc(self.expiry_date)
        return expiry is not None and expiry <= now

    def summary(self, include_code: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "vendor_id": self.vendor_id,
            "description": self.description,
            "discount_value": self.discount_value,
            "expiry_date": _iso(self.expiry_date),
        }
        if include_code:
            data["code"] = self.code
        return data


@dataclass(frozen=True)
class ClaimedCoupon:
    """Successful claim result."""

    coupon: CouponRecord
    claimant_id: str
    claimed_at: datetime
    expires_at: datetime
    period: str | None = None

    @property
    def coupon_code(self) -> str:
        return self.coupon.code

    def to_dict(self) -> dict[str, Any]:
        data = self.coupon.summary(include_code=True)
        data.update(
            {
                "claimed_at": _iso(self.claimed_at),
                "claim_expires_at": _iso(self.expires_at),
            }
        )
        if self.period:
            data["claim_period"] = self.period
        return data


@dataclass(frozen=True)
class ActiveClaim:
    """A claim an identity currently holds for a vendor."""

    vendor_id: str
    claimant_id: str
    coupon: CouponRecord
    claimed_at: datetime | None
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        return ensure_utc(self.expires_at) > now

    def to_dict(self) -> dict[str, Any]:
        # Sent to unauthenticated callers, so the reward code stays out.
        data = self.coupon.summary()
        data.update(
            {
                "coupon_id": self.coupon.id,
                "claimed_at": _iso(self.claimed_at),
                "expires_at": _iso(self.expires_at),
            }
        )
        return data


@dataclass(frozen=True)
class PeriodClaim:
    """Claim-history row joined with its coupon."""

    coupon: CouponRecord
    user_id: str
    period: str
    claimed_at: datetime


class ICouponClaimRepository(ABC):
    """Storage operations the claim engine relies on.

    Every write method is a single atomic statement (or a savepoint-wrapped
    insert) whose success or failure is decided by the database.
    """

    @abstractmethod
    def atomic(self) -> AbstractContextManager[Any]:
        """Savepoint scope: everything inside is undone if an exception escapes."""

    @abstractmethod
    def get_coupon(self, coupon_id: str) -> Optional[CouponRecord]:
        """Return a non-deleted coupon by id."""

    @abstractmethod
    def list_available_coupons(
        self,
        vendor_id: str,
        now: datetime,
        period: str | None = None,
        exclude_ids: set[str] | None = None,
        limit: int | None = None,
    ) -> list[CouponRecord]:
        """Non-deleted, unexpired coupons that are free to claim.

        With ``period`` given, free means no claim-history row for that period;
        otherwise free means ``is_claimed`` is false.
        """

    # One-shot model

    @abstractmethod
    def mark_coupon_claimed(
        self,
        coupon_id: str,
        claimant_id: str,
        claimed_at: datetime,
        vendor_id: str | None = None,
    ) -> bool:
        """Conditionally flip an unclaimed, unexpired, non-deleted coupon to claimed.

        Returns:
            True if this call won the coupon
        """

    @abstractmethod
    def find_claimed_coupons(self, vendor_id: str, claimant_id: str) -> list[CouponRecord]:
        """Coupons of a vendor claimed by an identity, newest first."""

    @abstractmethod
    def acquire_claim_slot(
        self,
        vendor_id: str,
        claimant_id: str,
        hold_until: datetime,
        now: datetime,
    ) -> bool:
        """Take the per-(vendor, claimant) active-claim slot.

        Inserts the slot, or takes over an existing one whose hold expired.

        Returns:
            True if the slot now belongs to this transaction
        """

    @abstractmethod
    def assign_claim_slot(
        self,
        vendor_id: str,
        claimant_id: str,
        coupon_id: str,
        expires_at: datetime,
    ) -> None:
        """Record the coupon and expiry on a slot this transaction holds."""

    # Period model

    @abstractmethod
    def insert_claim_history(
        self,
        coupon_id: str,
        vendor_id: str,
        user_id: str,
        period: str,
        claimed_at: datetime,
    ) -> HistoryInsertOutcome:
        """Insert a claim-history row guarded by both unique indexes."""

    @abstractmethod
    def get_period_claim(self, vendor_id: str, user_id: str, period: str) -> Optional[PeriodClaim]:
        """The claim an identity made for a vendor in a period, if any."""

    @abstractmethod
    def find_unexpired_claim(
        self,
        vendor_id: str,
        user_id: str,
        now: datetime,
        undated_claimed_after: datetime,
    ) -> Optional[PeriodClaim]:
        """Newest claim of an identity for a vendor, in any period, that has not lapsed.

        A claim lapses at its coupon's expiry date. Claims on coupons without
        one lapse once ``claimed_at`` is at or before ``undated_claimed_after``.
        """


class ClaimEngine:
    """Transactional core of the coupon claim service."""

    def __init__(
        self,
        repository: ICouponClaimRepository,
        model: ClaimModel = ClaimModel.PERIOD,
        period_granularity: str = "month",
        active_claim_ttl: timedelta = timedelta(hours=720),
        max_selection_attempts: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.model = ClaimModel(model)
        self.period_granularity = period_granularity
        self.active_claim_ttl = active_claim_ttl
        self.max_selection_attempts = max(1, max_selection_attempts)
        self._clock = clock

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    def current_period(self) -> str:
        return period_key(self.now(), self.period_granularity)

    def claim_expiry(self, coupon: CouponRecord, claimed_at: datetime) -> datetime:
        """When a claim on this coupon stops blocking further claims."""
        return ensure_utc(coupon.expiry_date) or claimed_at + self.active_claim_ttl

    # Mode A

    def claim_coupon(
        self,
        user_id: str,
        coupon_id: str,
        vendor_id: str | None = None,
    ) -> ClaimedCoupon:
        """Claim a specific coupon for an authenticated user.

        Args:
            user_id: Internal user id
            coupon_id: Coupon to claim
            vendor_id: If given, the coupon must belong to this vendor

        Returns:
            ClaimedCoupon carrying the reward code

        Raises:
            AuthenticationRequired: If user_id is an anonymous marker
            CouponNotFound: Coupon missing, soft-deleted or of another vendor
            CouponAlreadyClaimed: The coupon was taken by anyone
            UserAlreadyClaimed: User already holds a claim for this vendor this period
        """
        if is_anonymous_ref(user_id):
            raise AuthenticationRequired("Anonymous identities cannot claim by coupon id")

        now = self.now()

        if self.model is ClaimModel.ONE_SHOT:
            if self.repository.mark_coupon_claimed(coupon_id, user_id, now, vendor_id=vendor_id):
                coupon = self.repository.get_coupon(coupon_id)
                if coupon is None:
                    raise CouponNotFound()
                logger.info(
                    "coupon_claimed",
                    mode="coupon",
                    model=self.model.value,
                    coupon_id=coupon_id,
                    vendor_id=coupon.vendor_id,
                    claimant=redact(user_id),
                )
                return ClaimedCoupon(
                    coupon=coupon,
                    claimant_id=user_id,
                    claimed_at=now,
                    expires_at=self.claim_expiry(coupon, now),
                )

            coupon = self.repository.get_coupon(coupon_id)
            if coupon is None or (vendor_id and coupon.vendor_id != vendor_id):
                raise CouponNotFound()
            if not coupon.is_claimed and coupon.is_expired(now):
                raise CouponNotFound("Coupon has expired")
            logger.info("claim_conflict", reason="coupon_already_claimed", coupon_id=coupon_id)
            raise CouponAlreadyClaimed()

        coupon = self.repository.get_coupon(coupon_id)
        if coupon is None or (vendor_id and coupon.vendor_id != vendor_id):
            raise CouponNotFound()
        if coupon.is_expired(now):
            raise CouponNotFound("Coupon has expired")

        period = period_key(now, self.period_granularity)
        outcome = self.repository.insert_claim_history(
            coupon_id=coupon.id,
            vendor_id=coupon.vendor_id,
            user_id=user_id,
            period=period,
            claimed_at=now,
        )
        if outcome is HistoryInsertOutcome.COUPON_TAKEN:
            logger.info("claim_conflict", reason="coupon_already_claimed", coupon_id=coupon_id, period=period)
            raise CouponAlreadyClaimed()
        if outcome is HistoryInsertOutcome.USER_LIMIT_REACHED:
            logger.info(
                "claim_conflict",
                reason="user_already_claimed",
                vendor_id=coupon.vendor_id,
                claimant=redact(user_id),
                period=period,
            )
            raise UserAlreadyClaimed()

        logger.info(
            "coupon_claimed",
            mode="coupon",
            model=self.model.value,
            coupon_id=coupon.id,
            vendor_id=coupon.vendor_id,
            claimant=redact(user_id),
            period=period,
        )
        return ClaimedCoupon(
            coupon=coupon,
            claimant_id=user_id,
            claimed_at=now,
            expires_at=self.claim_expiry(coupon, now),
            period=period,
        )

    # Mode B

    def claim_for_vendor(
        self,
        claimant_id: str,
        vendor_id: str,
        preferred_coupon_id: str | None = None,
    ) -> ClaimedCoupon:
        """Claim an available coupon of a vendor.

        Anonymous identities are allowed here. An identity may hold at most one
        unexpired claim per vendor; a second request is rejected with the
        existing claim's details.

        Args:
            claimant_id: Internal user id or anonymous marker
            vendor_id: Vendor to claim from
            preferred_coupon_id: Claim this coupon instead of picking one

        Raises:
            ActiveClaimExists: The identity already holds an unexpired claim
            UserAlreadyClaimed: Period limit reached with an expired claim (period model)
            CouponNotFound: Preferred coupon missing or of another vendor
            CouponAlreadyClaimed: Preferred coupon was taken
            NoAvailableCoupons: Nothing left to claim
        """
        if self.model is ClaimModel.ONE_SHOT:
            return self._claim_for_vendor_one_shot(claimant_id, vendor_id, preferred_coupon_id)
        return self._claim_for_vendor_period(claimant_id, vendor_id, preferred_coupon_id)

    def _claim_for_vendor_one_shot(
        self,
        claimant_id: str,
        vendor_id: str,
        preferred_coupon_id: str | None,
    ) -> ClaimedCoupon:
        now = self.now()

        existing = self.find_active_claim(vendor_id, claimant_id)
        if existing is not None:
            self._log_active_claim(vendor_id, claimant_id)
            raise ActiveClaimExists(existing)

        with self.repository.atomic():
            self._hold_claim_slot(vendor_id, claimant_id, now)

            def attempt(coupon: CouponRecord) -> bool:
                return self.repository.mark_coupon_claimed(
                    coupon.id, claimant_id, now, vendor_id=vendor_id
                )

            coupon = self._select_and_claim(vendor_id, now, None, preferred_coupon_id, attempt)
            expires_at = self.claim_expiry(coupon, now)
            self.repository.assign_claim_slot(vendor_id, claimant_id, coupon.id, expires_at)

        logger.info(
            "coupon_claimed",
            mode="vendor",
            model=self.model.value,
            coupon_id=coupon.id,
            vendor_id=vendor_id,
            claimant=redact(claimant_id),
        )
        return ClaimedCoupon(coupon=coupon, claimant_id=claimant_id, claimed_at=now, expires_at=expires_at)

    def _claim_for_vendor_period(
        self,
        claimant_id: str,
        vendor_id: str,
        preferred_coupon_id: str | None,
    ) -> ClaimedCoupon:
        now = self.now()
        period = period_key(now, self.period_granularity)

        self._raise_for_period_claim(vendor_id, claimant_id, period, now)

        def attempt(coupon: CouponRecord) -> bool:
            outcome = self.repository.insert_claim_history(
                coupon_id=coupon.id,
                vendor_id=vendor_id,
                user_id=claimant_id,
                period=period,
                claimed_at=now,
            )
            if outcome is HistoryInsertOutcome.USER_LIMIT_REACHED:
                # A concurrent request for the same identity won.
                self._raise_for_period_claim(vendor_id, claimant_id, period, now)
                raise ActiveClaimExists()
            return outcome is HistoryInsertOutcome.INSERTED

        with self.repository.atomic():
            self._hold_claim_slot(vendor_id, claimant_id, now)
            coupon = self._select_and_claim(vendor_id, now, period, preferred_coupon_id, attempt)
            expires_at = self.claim_expiry(coupon, now)
            self.repository.assign_claim_slot(vendor_id, claimant_id, coupon.id, expires_at)

        logger.info(
            "coupon_claimed",
            mode="vendor",
            model=self.model.value,
            coupon_id=coupon.id,
            vendor_id=vendor_id,
            claimant=redact(claimant_id),
            period=period,
        )
        return ClaimedCoupon(
            coupon=coupon,
            claimant_id=claimant_id,
            claimed_at=now,
            expires_at=expires_at,
            period=period,
        )

    def _raise_for_period_claim(self, vendor_id: str, claimant_id: str, period: str, now: datetime) -> None:
        # A claim from an earlier period can still be running.
        active = self._find_active_period_claim(vendor_id, claimant_id, now)
        if active is not None:
            self._log_active_claim(vendor_id, claimant_id)
            raise ActiveClaimExists(active)
        if self.repository.get_period_claim(vendor_id, claimant_id, period) is not None:
            logger.info(
                "claim_conflict",
                reason="user_already_claimed",
                vendor_id=vendor_id,
                claimant=redact(claimant_id),
                period=period,
            )
            raise UserAlreadyClaimed()

    def _hold_claim_slot(self, vendor_id: str, claimant_id: str, now: datetime) -> None:
        """Take the (vendor, claimant) slot for the rest of the enclosing savepoint."""
        if not self.repository.acquire_claim_slot(
            vendor_id, claimant_id, hold_until=now + self.active_claim_ttl, now=now
        ):
            self._log_active_claim(vendor_id, claimant_id)
            raise ActiveClaimExists(self.find_active_claim(vendor_id, claimant_id))

    def _select_and_claim(
        self,
        vendor_id: str,
        now: datetime,
        period: str | None,
        preferred_coupon_id: str | None,
        attempt: Callable[[CouponRecord], bool],
    ) -> CouponRecord:
        if preferred_coupon_id:
            coupon = self.repository.get_coupon(preferred_coupon_id)
            if coupon is None or coupon.vendor_id != vendor_id:
                raise CouponNotFound()
            if coupon.is_expired(now):
                raise CouponNotFound("Coupon has expired")
            if not attempt(coupon):
                raise CouponAlreadyClaimed()
            return coupon

        tried: set[str] = set()
        attempts = 0
        while attempts < self.max_selection_attempts:
            candidates = self.repository.list_available_coupons(
                vendor_id,
                now,
                period=period,
                exclude_ids=tried,
                limit=self.max_selection_attempts * 4,
            )
            if not candidates:
                break
            # Spread concurrent requests over the available set.
            random.shuffle(candidates)
            for coupon in candidates:
                if attempts >= self.max_selection_attempts:
                    break
                attempts += 1
                tried.add(coupon.id)
                if attempt(coupon):
                    return coupon
                logger.debug("claim_selection_lost_race", coupon_id=coupon.id, attempt=attempts)

        logger.info("claim_conflict", reason="no_available_coupons", vendor_id=vendor_id, attempts=attempts)
        raise NoAvailableCoupons()

    # Reads

    def get_coupon(self, coupon_id: str) -> CouponRecord:
        """Raises CouponNotFound for missing or soft-deleted coupons."""
        coupon = self.repository.get_coupon(coupon_id)
        if coupon is None:
            raise CouponNotFound()
        return coupon

    def find_active_claim(self, vendor_id: str, claimant_id: str) -> Optional[ActiveClaim]:
        """The unexpired claim an identity holds for a vendor, if any."""
        now = self.now()

        if self.model is ClaimModel.PERIOD:
            return self._find_active_period_claim(vendor_id, claimant_id, now)

        for coupon in self.repository.find_claimed_coupons(vendor_id, claimant_id):
            claimed_at = ensure_utc(coupon.claimed_at) or now
            active = ActiveClaim(
                vendor_id=vendor_id,
                claimant_id=claimant_id,
                coupon=coupon,
                claimed_at=claimed_at,
                expires_at=self.claim_expiry(coupon, claimed_at),
            )
            if active.is_active(now):
                return active
        return None

    def has_claimed_this_period(self, vendor_id: str, claimant_id: str) -> bool:
        """Whether the identity already used its claim for the current period."""
        if self.model is ClaimModel.PERIOD:
            return self.repository.get_period_claim(vendor_id, claimant_id, self.current_period()) is not None
        return self.find_active_claim(vendor_id, claimant_id) is not None

    def list_available(self, vendor_id: str) -> list[CouponRecord]:
        """Coupons of a vendor that can currently be claimed."""
        now = self.now()
        period = period_key(now, self.period_granularity) if self.model is ClaimModel.PERIOD else None
        return self.repository.list_available_coupons(vendor_id, now, period=period)

    def _find_active_period_claim(self, vendor_id: str, claimant_id: str, now: datetime) -> Optional[ActiveClaim]:
        claim = self.repository.find_unexpired_claim(
            vendor_id, claimant_id, now=now, undated_claimed_after=now - self.active_claim_ttl
        )
        if claim is None:
            return None
        active = self._period_active_claim(vendor_id, claimant_id, claim)
        return active if active.is_active(now) else None

    def _period_active_claim(self, vendor_id: str, claimant_id: str, claim: PeriodClaim) -> ActiveClaim:
        claimed_at = ensure_utc(claim.claimed_at)
        return ActiveClaim(
            vendor_id=vendor_id,
            claimant_id=claimant_id,
            coupon=claim.coupon,
            claimed_at=claimed_at,
            expires_at=self.claim_expiry(claim.coupon, claimed_at),
        )

    def _log_active_claim(self, vendor_id: str, claimant_id: str) -> None:
        logger.info("claim_conflict", reason="active_claim_exists", vendor_id=vendor_id, claimant=redact(claimant_id))
