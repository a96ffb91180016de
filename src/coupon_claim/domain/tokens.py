"""Bearer token issue and verification.

Two token kinds are handled here, both compact HMAC-signed JWTs:

- Widget session tokens are issued by this service and signed with one
  process-wide secret. They carry the internal user id and vendor id.
- Partner tokens are minted by a vendor's backend and signed with that
  vendor's own partner secret. They carry the vendor id, the partner's
  external user reference and a ``jti`` used for replay protection.

The algorithm is pinned at verification time; tokens using ``none`` or any
other algorithm are rejected.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import jwt
import structlog

from coupon_claim.domain.credentials import VendorCredentials
from coupon_claim.domain.errors import ExpiredToken, InvalidToken, SigningSecretMissing

logger = structlog.get_logger(__name__)

WIDGET_SESSION_CLAIMS = ["user_id", "vendor_id", "iat", "exp"]
PARTNER_TOKEN_CLAIMS = ["vendor", "external_user_id", "jti"]

CredentialsLookup = Callable[[str], Optional[VendorCredentials]]


@dataclass(frozen=True)
class WidgetSession:
    """Verified widget session claims."""

    user_id: str
    vendor_id: str
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class PartnerTokenClaims:
    """Verified partner token claims.

    Attributes:
        vendor: Vendor id the partner signed for
        external_user_id: Partner-side user reference (not an internal id)
        jti: Unique token identifier, only used for replay detection
        issued_at: ``iat`` claim if present
        expires_at: ``exp`` claim if present
    """

    vendor: str
    external_user_id: str
    jti: str
    issued_at: int | None = None
    expires_at: int | None = None

    def remaining_lifetime(self, now: datetime | None = None) -> int | None:
        """Seconds until expiry, rounded up; None when the token has no exp."""
        if self.expires_at is None:
            return None
        current = (now or datetime.now(timezone.utc)).timestamp()
        return max(1, math.ceil(self.expires_at - current))


class TokenService:
    """Issues and verifies widget session tokens and partner tokens.

    Stateless: nothing is stored server-side, validity is purely
    cryptographic plus expiry.
    """

    def __init__(
        self,
        widget_secret: str,
        widget_ttl_seconds: int = 604800,
        algorithm: str = "HS256",
    ):
        self._widget_secret = widget_secret
        self._widget_ttl_seconds = widget_ttl_seconds
        self._algorithm = algorithm

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def _require_widget_secret(self) -> str:
        if not self._widget_secret:
            logger.error("widget_session_secret_missing")
            raise SigningSecretMissing()
        return self._widget_secret

    def issue_widget_session(
        self,
        user_id: str,
        vendor_id: str,
        now: datetime | None = None,
    ) -> str:
        """Sign a widget session token for an internal identity.

        Args:
            user_id: Internal user id (or anonymous marker for guest sessions)
            vendor_id: Vendor the session is scoped to
            now: Issue time override (tests)

        Returns:
            Encoded JWT string

        Raises:
            SigningSecretMissing: If no widget secret is configured
        """
        secret = self._require_widget_secret()
        issued = now or datetime.now(timezone.utc)
        payload = {
            "user_id": user_id,
            "vendor_id": vendor_id,
            "iat": int(issued.timestamp()),
            "exp": int((issued + timedelta(seconds=self._widget_ttl_seconds)).timestamp()),
        }
        return jwt.encode(payload, secret, algorithm=self._algorithm)

    def verify_widget_session(self, token: str) -> WidgetSession:
        """Verify a widget session token.

        Raises:
            InvalidToken: Bad signature, algorithm, shape or missing claims
            ExpiredToken: Token is past its exp
            SigningSecretMissing: If no widget secret is configured
        """
        secret = self._require_widget_secret()
        payload = self._decode(token, secret, WIDGET_SESSION_CLAIMS, label="widget session")

        user_id = payload.get("user_id")
        vendor_id = payload.get("vendor_id")
        if not isinstance(user_id, str) or not user_id or not isinstance(vendor_id, str) or not vendor_id:
            raise InvalidToken("Invalid widget session token")

        return WidgetSession(
            user_id=user_id,
            vendor_id=vendor_id,
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
        )

    def verify_partner_token(
        self,
        token: str,
        credentials_lookup: CredentialsLookup,
    ) -> PartnerTokenClaims:
        """Verify a partner-signed token against its vendor's own secret.

        Verification is two-phase: the vendor claim is read from the unverified
        payload only to pick the secret, then the whole token is verified with
        that secret. A token whose vendor claim was rewritten no longer matches
        its signature under the new vendor's secret.

        Args:
            token: Encoded partner JWT
            credentials_lookup: Resolves a vendor id to its credentials

        Returns:
            Verified partner token claims

        Raises:
            InvalidToken: Missing vendor claim, unknown vendor, vendor without a
                partner secret, signature/algorithm failure or missing claims
            ExpiredToken: Token is past its exp
        """
        try:
            unverified = jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError:
            raise InvalidToken("Invalid token: malformed partner token")

        vendor_id = unverified.get("vendor")
        if not isinstance(vendor_id, str) or not vendor_id:
            raise InvalidToken("Invalid token: missing vendor claim")

        credentials = credentials_lookup(vendor_id)
        if credentials is None:
            logger.warning("partner_token_unknown_vendor", vendor_id=vendor_id)
            raise InvalidToken("Invalid token: vendor not found")
        if not credentials.has_partner_secret:
            logger.warning("partner_secret_not_configured", vendor_id=vendor_id)
            raise InvalidToken("Invalid token: vendor has no partner secret configured")

        payload = self._decode(
            token,
            credentials.partner_secret,
            PARTNER_TOKEN_CLAIMS,
            label="partner token",
        )

        for claim in PARTNER_TOKEN_CLAIMS:
            value = payload.get(claim)
            if not isinstance(value, str) or not value:
                raise InvalidToken(f"Invalid token: missing {claim} claim")

        return PartnerTokenClaims(
            vendor=payload["vendor"],
            external_user_id=payload["external_user_id"],
            jti=payload["jti"],
            issued_at=_optional_int(payload.get("iat")),
            expires_at=_optional_int(payload.get("exp")),
        )

    def _decode(
        self,
        token: str,
        secret: str,
        required: list[str],
        label: str,
    ) -> dict[str, Any]:
        try:
            return jwt.decode(
                token,
                secret,
                algorithms=[self._algorithm],
                options={"require": required},
            )
        except jwt.ExpiredSignatureError:
            raise ExpiredToken(f"{label.capitalize()} expired")
        except jwt.MissingRequiredClaimError as e:
            raise InvalidToken(f"Invalid {label}: missing {e.claim} claim")
        except jwt.InvalidTokenError:
            raise InvalidToken(f"Invalid {label} signature")


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
