"""Unit tests for widget session and partner token handling."""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import jwt
import pytest

from coupon_claim.domain.credentials import VendorCredentials
from coupon_claim.domain.errors import ExpiredToken, InvalidToken, SigningSecretMissing
from coupon_claim.domain.tokens import PartnerTokenClaims, TokenService

WIDGET_SECRET = "unit-widget-secret-0123456789abcdef0123456789"
VENDOR_SECRET = "unit-vendor-secret-abcdef0123456789abcdef012345"
OTHER_SECRET = "unit-other-secret-9876543210fedcba9876543210fe"
VENDOR_ID = "7d2c1a52-3f0e-4a51-9c43-5d8d1f6b2e10"


def partner_payload(**overrides):
    now = datetime.now(timezone.utc)
    payload = {
        "vendor": VENDOR_ID,
        "external_user_id": "wp_1042",
        "jti": str(uuid.uuid4()),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=5)).timestamp()),
    }
    payload.update(overrides)
    return {k: v for k, v in payload.items() if v is not None}


def credentials_lookup(secret=VENDOR_SECRET):
    return Mock(return_value=VendorCredentials(vendor_id=VENDOR_ID, partner_secret=secret))


class TestWidgetSession:
    """Tests for widget session issue and verification."""

    def test_issue_and_verify_round_trip(self):
        """A freshly issued session verifies to the same identity."""
        service = TokenService(WIDGET_SECRET)

        token = service.issue_widget_session("user-1", VENDOR_ID)
        session = service.verify_widget_session(token)

        assert session.user_id == "user-1"
        assert session.vendor_id == VENDOR_ID
        assert session.expires_at - session.issued_at == 604800

    def test_custom_ttl(self):
        """Session lifetime follows the configured TTL."""
        service = TokenService(WIDGET_SECRET, widget_ttl_seconds=60)

        session = service.verify_widget_session(service.issue_widget_session("user-1", VENDOR_ID))

        assert session.expires_at - session.issued_at == 60

    def test_expired_session_rejected(self):
        """Sessions past their exp raise ExpiredToken."""
        # Arrange
        service = TokenService(WIDGET_SECRET)
        issued = datetime.now(timezone.utc) - timedelta(days=8)
        token = service.issue_widget_session("user-1", VENDOR_ID, now=issued)

        # Act & Assert
        with pytest.raises(ExpiredToken) as exc_info:
            service.verify_widget_session(token)
        assert exc_info.value.code == "TOKEN_EXPIRED"

    def test_tampered_signature_rejected(self):
        """Changing the signature invalidates the token."""
        service = TokenService(WIDGET_SECRET)
        token = service.issue_widget_session("user-1", VENDOR_ID)
        header, payload, signature = token.split(".")
        tampered = ".".join([header, payload, signature[::-1]])

        with pytest.raises(InvalidToken):
            service.verify_widget_session(tampered)

    def test_token_signed_with_other_secret_rejected(self):
        """Sessions from another deployment's secret do not verify."""
        token = TokenService(OTHER_SECRET).issue_widget_session("user-1", VENDOR_ID)

        with pytest.raises(InvalidToken):
            TokenService(WIDGET_SECRET).verify_widget_session(token)

    def test_alg_none_rejected(self):
        """Unsigned tokens are never accepted."""
        now = int(datetime.now(timezone.utc).timestamp())
        token = jwt.encode(
            {"user_id": "user-1", "vendor_id": VENDOR_ID, "iat": now, "exp": now + 600},
            "",
            algorithm="none",
        )

        with pytest.raises(InvalidToken):
            TokenService(WIDGET_SECRET).verify_widget_session(token)

    def test_other_hmac_algorithm_rejected(self):
        """The algorithm is pinned; HS512 with the right secret still fails."""
        now = int(datetime.now(timezone.utc).timestamp())
        token = jwt.encode(
            {"user_id": "user-1", "vendor_id": VENDOR_ID, "iat": now, "exp": now + 600},
            WIDGET_SECRET,
            algorithm="HS512",
        )

        with pytest.raises(InvalidToken):
            TokenService(WIDGET_SECRET).verify_widget_session(token)

    def test_missing_vendor_claim_rejected(self):
        """Sessions must carry both user_id and vendor_id."""
        now = int(datetime.now(timezone.utc).timestamp())
        token = jwt.encode({"user_id": "user-1", "iat": now, "exp": now + 600}, WIDGET_SECRET, algorithm="HS256")

        with pytest.raises(InvalidToken, match="vendor_id"):
            TokenService(WIDGET_SECRET).verify_widget_session(token)

    def test_garbage_rejected(self):
        with pytest.raises(InvalidToken):
            TokenService(WIDGET_SECRET).verify_widget_session("not-a-jwt")

    def test_missing_secret(self):
        """Without a configured secret nothing can be issued or verified."""
        service = TokenService("")

        with pytest.raises(SigningSecretMissing):
            service.issue_widget_session("user-1", VENDOR_ID)
        with pytest.raises(SigningSecretMissing):
            service.verify_widget_session("anything")


class TestPartnerToken:
    """Tests for verifying partner-signed tokens."""

    def test_valid_partner_token(self):
        """A token signed with the vendor's secret verifies."""
        # Arrange
        payload = partner_payload()
        token = jwt.encode(payload, VENDOR_SECRET, algorithm="HS256")
        lookup = credentials_lookup()

        # Act
        claims = TokenService(WIDGET_SECRET).verify_partner_token(token, lookup)

        # Assert
        lookup.assert_called_once_with(VENDOR_ID)
        assert claims.vendor == VENDOR_ID
        assert claims.external_user_id == "wp_1042"
        assert claims.jti == payload["jti"]
        assert claims.expires_at == payload["exp"]

    def test_unknown_vendor(self):
        token = jwt.encode(partner_payload(), VENDOR_SECRET, algorithm="HS256")

        with pytest.raises(InvalidToken, match="vendor not found"):
            TokenService(WIDGET_SECRET).verify_partner_token(token, Mock(return_value=None))

    def test_vendor_without_partner_secret(self):
        token = jwt.encode(partner_payload(), VENDOR_SECRET, algorithm="HS256")

        with pytest.raises(InvalidToken, match="no partner secret"):
            TokenService(WIDGET_SECRET).verify_partner_token(token, credentials_lookup(secret=None))

    def test_signed_with_another_vendors_secret(self):
        """Rewriting the vendor claim does not help: the signature must match that vendor's secret."""
        token = jwt.encode(partner_payload(), OTHER_SECRET, algorithm="HS256")

        with pytest.raises(InvalidToken):
            TokenService(WIDGET_SECRET).verify_partner_token(token, credentials_lookup())

    def test_missing_vendor_claim(self):
        token = jwt.encode(partner_payload(vendor=None), VENDOR_SECRET, algorithm="HS256")
        lookup = credentials_lookup()

        with pytest.raises(InvalidToken, match="missing vendor claim"):
            TokenService(WIDGET_SECRET).verify_partner_token(token, lookup)
        lookup.assert_not_called()

    def test_missing_jti(self):
        token = jwt.encode(partner_payload(jti=None), VENDOR_SECRET, algorithm="HS256")

        with pytest.raises(InvalidToken, match="jti"):
            TokenService(WIDGET_SECRET).verify_partner_token(token, credentials_lookup())

    def test_empty_external_user_id(self):
        token = jwt.encode(partner_payload(external_user_id=""), VENDOR_SECRET, algorithm="HS256")

        with pytest.raises(InvalidToken, match="external_user_id"):
            TokenService(WIDGET_SECRET).verify_partner_token(token, credentials_lookup())

    def test_expired_partner_token(self):
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        token = jwt.encode(
            partner_payload(iat=int(past.timestamp()), exp=int((past + timedelta(minutes=5)).timestamp())),
            VENDOR_SECRET,
            algorithm="HS256",
        )

        with pytest.raises(ExpiredToken):
            TokenService(WIDGET_SECRET).verify_partner_token(token, credentials_lookup())

    def test_token_without_exp(self):
        """exp is optional for partner tokens."""
        token = jwt.encode(partner_payload(exp=None), VENDOR_SECRET, algorithm="HS256")

        claims = TokenService(WIDGET_SECRET).verify_partner_token(token, credentials_lookup())

        assert claims.expires_at is None
        assert claims.remaining_lifetime() is None

    def test_alg_none_partner_token(self):
        token = jwt.encode(partner_payload(), "", algorithm="none")

        with pytest.raises(InvalidToken):
            TokenService(WIDGET_SECRET).verify_partner_token(token, credentials_lookup())

    def test_malformed_token(self):
        lookup = credentials_lookup()

        with pytest.raises(InvalidToken, match="malformed"):
            TokenService(WIDGET_SECRET).verify_partner_token("abc.def", lookup)
        lookup.assert_not_called()


class TestRemainingLifetime:
    """Tests for PartnerTokenClaims.remaining_lifetime."""

    def test_rounds_up(self):
        now = datetime.fromtimestamp(900.5, tz=timezone.utc)
        claims = PartnerTokenClaims(vendor=VENDOR_ID, external_user_id="u", jti="j", expires_at=1000)

        assert claims.remaining_lifetime(now) == 100

    def test_floors_at_one_second(self):
        now = datetime.fromtimestamp(2000, tz=timezone.utc)
        claims = PartnerTokenClaims(vendor=VENDOR_ID, external_user_id="u", jti="j", expires_at=1000)

        assert claims.remaining_lifetime(now) == 1
