"""Claim event log.

Successful claims are appended to an insert-only ``claim_events`` table for
reporting. Recording happens after the claim transaction has committed, in
its own session, so a failure here can never undo or fail a claim.
"""

from dataclasses import dataclass

import structlog
from sqlalchemy.orm import Session, sessionmaker

from coupon_claim.domain.claims import ClaimedCoupon
from coupon_claim.infrastructure.database import session_scope
from coupon_claim.infrastructure.models import ClaimEvent
from coupon_claim.logging_config import redact

logger = structlog.get_logger(__name__)


@dataclass
class ClaimEventRecord:
    """A single successful claim.

    Attributes:
        vendor_id: Vendor the coupon belongs to
        coupon_id: Claimed coupon
        claimant_ref: Redacted claimant identifier
        claim_mode: ``coupon`` (by coupon id) or ``vendor`` (any coupon of a vendor)
        event_type: Event name
    """

    vendor_id: str
    coupon_id: str
    claimant_ref: str
    claim_mode: str
    event_type: str = "coupon_claimed"

    @classmethod
    def from_claim(cls, claim: ClaimedCoupon, claim_mode: str) -> "ClaimEventRecord":
        return cls(
            vendor_id=claim.coupon.vendor_id,
            coupon_id=claim.coupon.id,
            claimant_ref=redact(claim.claimant_id),
            claim_mode=claim_mode,
        )


class ClaimEventRecorder:
    """Insert-only writer for claim events."""

    def __init__(self, session_factory: sessionmaker[Session], enabled: bool = True):
        """Initialize recorder.

        Args:
            session_factory: Factory for the recorder's own sessions
            enabled: Turn recording off entirely
        """
        self.session_factory = session_factory
        self.enabled = enabled

    def record(self, claim: ClaimedCoupon, claim_mode: str) -> None:
        """Append an event for a committed claim.

        Failures are logged and swallowed.
        """
        if not self.enabled:
            return

        event = ClaimEventRecord.from_claim(claim, claim_mode)
        try:
            with session_scope(self.session_factory) as session:
                session.add(
                    ClaimEvent(
                        event_type=event.event_type,
                        vendor_id=event.vendor_id,
                        coupon_id=event.coupon_id,
                        claimant_ref=event.claimant_ref,
                        claim_mode=event.claim_mode,
                    )
                )
        except Exception as e:
            # A lost event must not turn a successful claim into an error.
            logger.error(
                "claim_event_record_failed",
                vendor_id=event.vendor_id,
                coupon_id=event.coupon_id,
                error=str(e),
            )
