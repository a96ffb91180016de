"""Domain services for session exchange.

Two ways turn a partner-side user into a widget session:

1. Partner token exchange: the vendor's backend signs a short-lived token
   with its partner secret; this service verifies it, burns its ``jti``,
   maps the external user and issues a session.
2. API key exchange: the caller presents the vendor's API key plus a user
   reference; the key is compared in constant time and a session is issued.

Both flows end in the same ``SessionGrant``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import structlog

from coupon_claim.domain.credentials import VendorCredentials
from coupon_claim.domain.errors import (
    AuthenticationRequired,
    InvalidApiKey,
    UserNotFound,
    VendorNotFound,
)
from coupon_claim.domain.identity import IdentityResolver, is_anonymous_ref
from coupon_claim.domain.tokens import TokenService
from coupon_claim.logging_config import redact

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SessionGrant:
    """Issued widget session and the identity it was issued for."""

    session_token: str
    user_id: str
    vendor_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "session_token": self.session_token,
            "user_id": self.user_id,
            "vendor_id": self.vendor_id,
        }


class IReplayGuard(ABC):
    """One-time-use check for partner token identifiers."""

    @abstractmethod
    def check_and_record(self, jti: str, ttl_seconds: int) -> None:
        """Record a jti, failing if it was already recorded.

        Raises:
            JtiReplay: If the jti was seen within its TTL
            ReplayStoreUnavailable: If the store cannot be reached
        """


class IVendorDirectory(ABC):
    """Read access to vendors, their credentials and registered users."""

    @abstractmethod
    def get_credentials(self, vendor_id: str) -> Optional[VendorCredentials]:
        """Credentials of an active, non-deleted vendor, or None."""

    @abstractmethod
    def find_user_id_by_email(self, email: str) -> Optional[str]:
        """Registered user id for an email address, or None."""


class SessionExchangeService:
    """Turns partner tokens and API keys into widget sessions."""

    def __init__(
        self,
        token_service: TokenService,
        replay_guard: IReplayGuard,
        identity_resolver: IdentityResolver,
        vendors: IVendorDirectory,
        default_replay_ttl_seconds: int = 86400,
    ):
        self.token_service = token_service
        self.replay_guard = replay_guard
        self.identity_resolver = identity_resolver
        self.vendors = vendors
        self.default_replay_ttl_seconds = default_replay_ttl_seconds

    def exchange_partner_token(self, token: str) -> SessionGrant:
        """Exchange a partner-signed token for a widget session.

        Order matters: the token is fully verified before its jti is burned,
        and the jti is burned before any user is created.

        Raises:
            InvalidToken: Bad signature, unknown vendor or missing claims
            ExpiredToken: Token past its exp
            AuthenticationRequired: Token names an anonymous identity
            JtiReplay: Token was already exchanged
            ReplayStoreUnavailable: Replay store unreachable
        """
        claims = self.token_service.verify_partner_token(token, self.vendors.get_credentials)

        if is_anonymous_ref(claims.external_user_id):
            logger.info("partner_token_anonymous_rejected", vendor_id=claims.vendor)
            raise AuthenticationRequired("Partner tokens must identify an authenticated user")

        ttl = claims.remaining_lifetime()
        self.replay_guard.check_and_record(
            claims.jti,
            ttl if ttl is not None else self.default_replay_ttl_seconds,
        )

        user_id = self.identity_resolver.resolve(claims.vendor, claims.external_user_id)
        session_token = self.token_service.issue_widget_session(user_id, claims.vendor)

        logger.info(
            "partner_token_exchanged",
            vendor_id=claims.vendor,
            external_ref=redact(claims.external_user_id),
        )
        return SessionGrant(session_token=session_token, user_id=user_id, vendor_id=claims.vendor)

    def exchange_api_key(
        self,
        vendor_id: str,
        api_key: str,
        user_ref: str | None = None,
        user_email: str | None = None,
    ) -> SessionGrant:
        """Exchange a vendor API key plus a user reference for a widget session.

        Args:
            vendor_id: Vendor the key belongs to
            api_key: Presented API key
            user_ref: Partner user reference or anonymous marker
            user_email: Email of a registered user, used instead of user_ref

        Raises:
            VendorNotFound: Unknown or inactive vendor
            CredentialNotConfigured: Vendor has no API key
            InvalidApiKey: Key does not match
            UserNotFound: No registered user with that email
        """
        credentials = self.vendors.get_credentials(vendor_id)
        if credentials is None:
            raise VendorNotFound()

        if not credentials.api_key_matches(api_key):
            logger.warning("api_key_mismatch", vendor_id=vendor_id)
            raise InvalidApiKey()

        if user_email:
            user_id = self.vendors.find_user_id_by_email(user_email.strip().lower())
            if user_id is None:
                raise UserNotFound("User not found with this email")
        elif is_anonymous_ref(user_ref):
            # Guest sessions keep the marker; they can only claim in vendor mode.
            user_id = user_ref
        else:
            user_id = self.identity_resolver.resolve(vendor_id, user_ref)

        session_token = self.token_service.issue_widget_session(user_id, vendor_id)
        logger.info("api_key_exchanged", vendor_id=vendor_id, user=redact(user_id))
        return SessionGrant(session_token=session_token, user_id=user_id, vendor_id=vendor_id)
