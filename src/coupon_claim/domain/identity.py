"""External identity resolution.

Partners and widget callers identify users with references that are not
internal ids: a WordPress user id, an email, an anonymous session marker.
The resolver maps a (vendor, external reference) pair to a stable internal
user id, creating the user on first sight.

The repository interface below follows the same rule as the rest of the
domain layer: the database enforces uniqueness, callers never read-then-write.
"""

import uuid
from abc import ABC, abstractmethod
from typing import Optional

import structlog

from coupon_claim.domain.errors import ValidationFailed
from coupon_claim.logging_config import redact

logger = structlog.get_logger(__name__)

# Reserved prefixes for guest / anonymous widget identities.
ANONYMOUS_PREFIXES = ("anon_", "anonymous-")

MAX_EXTERNAL_REF_LENGTH = 255


def is_anonymous_ref(ref: str | None) -> bool:
    """Check whether an identifier uses the anonymous marker convention."""
    if not ref:
        return False
    return ref.startswith(ANONYMOUS_PREFIXES)


def is_uuid_shaped(value: str | None) -> bool:
    """Check whether a value parses as a canonical UUID string."""
    if not value:
        return False
    try:
        return str(uuid.UUID(value)) == value.lower()
    except (ValueError, AttributeError, TypeError):
        return False


def normalize_external_ref(ref: str | None) -> str:
    """Normalize an externally supplied user reference.

    Raises:
        ValidationFailed: If the reference is empty or too long
    """
    normalized = (ref or "").strip()
    if not normalized:
        raise ValidationFailed(
            "External user reference is required",
            issues=[{"loc": ["user_id"], "msg": "must not be empty", "type": "value_error"}],
        )
    if len(normalized) > MAX_EXTERNAL_REF_LENGTH:
        raise ValidationFailed(
            "External user reference is too long",
            issues=[
                {
                    "loc": ["user_id"],
                    "msg": f"must be at most {MAX_EXTERNAL_REF_LENGTH} characters",
                    "type": "value_error",
                }
            ],
        )
    return normalized


class IExternalIdentityRepository(ABC):
    """Abstract repository for external identity mappings."""

    @abstractmethod
    def get_mapped_user_id(self, vendor_id: str, external_ref: str) -> Optional[str]:
        """Return the internal user id mapped to (vendor_id, external_ref), if any."""

    @abstractmethod
    def create_user_with_mapping(self, vendor_id: str, external_ref: str, user_id: str) -> str:
        """Create an internal user and its mapping atomically.

        Implementations must not check for an existing mapping first. When
        the (vendor_id, external_ref) pair already exists the whole insert is
        undone and the winner's user id is returned instead.

        Returns:
            The internal user id now mapped to the pair
        """


class IdentityResolver:
    """Deterministic, idempotent external id -> internal id mapping."""

    def __init__(self, repository: IExternalIdentityRepository):
        self.repository = repository

    def resolve(self, vendor_id: str, external_ref: str) -> str:
        """Resolve (vendor_id, external_ref) to an internal user id.

        Creates the internal user and mapping on first sight. Concurrent
        first-sight calls converge on the same id; exactly one user is created.

        Args:
            vendor_id: Vendor that scopes the external reference
            external_ref: Partner-supplied user reference

        Returns:
            Internal user id
        """
        ref = normalize_external_ref(external_ref)

        existing = self.repository.get_mapped_user_id(vendor_id, ref)
        if existing:
            return existing

        candidate_id = str(uuid.uuid4())
        user_id = self.repository.create_user_with_mapping(vendor_id, ref, candidate_id)

        if user_id == candidate_id:
            logger.info("external_identity_mapped", vendor_id=vendor_id, external_ref=redact(ref))
        else:
            logger.debug("external_identity_mapping_race", vendor_id=vendor_id, external_ref=redact(ref))

        return user_id

    def lookup(self, vendor_id: str, external_ref: str) -> Optional[str]:
        """Read-only variant of resolve that never creates a user."""
        ref = normalize_external_ref(external_ref)
        return self.repository.get_mapped_user_id(vendor_id, ref)
