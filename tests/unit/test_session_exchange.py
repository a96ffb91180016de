"""Unit tests for SessionExchangeService."""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import jwt
import pytest

from coupon_claim.domain.credentials import VendorCredentials
from coupon_claim.domain.errors import (
    AuthenticationRequired,
    CredentialNotConfigured,
    InvalidApiKey,
    InvalidToken,
    JtiReplay,
    UserNotFound,
    VendorNotFound,
)
from coupon_claim.domain.identity import IdentityResolver
from coupon_claim.domain.services import IReplayGuard, IVendorDirectory, SessionExchangeService
from coupon_claim.domain.tokens import TokenService

WIDGET_SECRET = "unit-widget-secret-0123456789abcdef0123456789"
VENDOR_SECRET = "unit-vendor-secret-abcdef0123456789abcdef012345"
VENDOR_ID = "3c9a0d7e-8b1f-4f2a-a6d4-1e5b7c9d0f21"
API_KEY = "ak_unit_test_key_0123456789abcdefghijkl"
RESOLVED_USER_ID = "9b1d2c3e-4f5a-4b6c-8d7e-0f1a2b3c4d5e"


@pytest.fixture
def vendors():
    directory = Mock(spec=IVendorDirectory)
    directory.get_credentials.return_value = VendorCredentials(
        vendor_id=VENDOR_ID, partner_secret=VENDOR_SECRET, api_key=API_KEY
    )
    directory.find_user_id_by_email.return_value = None
    return directory


@pytest.fixture
def guard():
    return Mock(spec=IReplayGuard)


@pytest.fixture
def resolver():
    identity_resolver = Mock(spec=IdentityResolver)
    identity_resolver.resolve.return_value = RESOLVED_USER_ID
    return identity_resolver


@pytest.fixture
def token_service():
    return TokenService(WIDGET_SECRET)


@pytest.fixture
def exchange(token_service, guard, resolver, vendors):
    return SessionExchangeService(
        token_service=token_service,
        replay_guard=guard,
        identity_resolver=resolver,
        vendors=vendors,
        default_replay_ttl_seconds=86400,
    )


def sign(external_user_id="wp_1042", jti=None, expires_in=300):
    now = datetime.now(timezone.utc)
    payload = {
        "vendor": VENDOR_ID,
        "external_user_id": external_user_id,
        "jti": jti or str(uuid.uuid4()),
        "iat": int(now.timestamp()),
    }
    if expires_in is not None:
        payload["exp"] = int((now + timedelta(seconds=expires_in)).timestamp())
    return jwt.encode(payload, VENDOR_SECRET, algorithm="HS256")


class TestPartnerTokenExchange:
    """Tests for exchange_partner_token."""

    def test_successful_exchange(self, exchange, guard, resolver, token_service):
        """Verify, burn the jti, map the user, issue a session."""
        # Arrange
        token = sign(jti="jti-1")

        # Act
        grant = exchange.exchange_partner_token(token)

        # Assert
        jti, ttl = guard.check_and_record.call_args.args
        assert jti == "jti-1"
        assert 0 < ttl <= 300
        resolver.resolve.assert_called_once_with(VENDOR_ID, "wp_1042")
        assert grant.user_id == RESOLVED_USER_ID
        assert grant.vendor_id == VENDOR_ID

        session = token_service.verify_widget_session(grant.session_token)
        assert session.user_id == RESOLVED_USER_ID
        assert session.vendor_id == VENDOR_ID

    def test_default_ttl_without_exp(self, exchange, guard):
        exchange.exchange_partner_token(sign(jti="jti-2", expires_in=None))

        guard.check_and_record.assert_called_once_with("jti-2", 86400)

    def test_replay_stops_before_identity_resolution(self, exchange, guard, resolver):
        """A replayed token never creates or resolves a user."""
        guard.check_and_record.side_effect = JtiReplay()

        with pytest.raises(JtiReplay):
            exchange.exchange_partner_token(sign())

        resolver.resolve.assert_not_called()

    def test_anonymous_identity_rejected_before_replay_guard(self, exchange, guard, resolver):
        with pytest.raises(AuthenticationRequired):
            exchange.exchange_partner_token(sign(external_user_id="anon_visitor"))

        guard.check_and_record.assert_not_called()
        resolver.resolve.assert_not_called()

    def test_invalid_signature_never_burns_jti(self, exchange, guard, vendors):
        vendors.get_credentials.return_value = VendorCredentials(
            vendor_id=VENDOR_ID, partner_secret="a-completely-different-secret-value-0123"
        )

        with pytest.raises(InvalidToken):
            exchange.exchange_partner_token(sign())

        guard.check_and_record.assert_not_called()


class TestApiKeyExchange:
    """Tests for exchange_api_key."""

    def test_partner_reference_is_resolved(self, exchange, resolver, token_service):
        # Act
        grant = exchange.exchange_api_key(VENDOR_ID, API_KEY, user_ref="wp_1042")

        # Assert
        resolver.resolve.assert_called_once_with(VENDOR_ID, "wp_1042")
        assert grant.user_id == RESOLVED_USER_ID
        assert token_service.verify_widget_session(grant.session_token).user_id == RESOLVED_USER_ID

    def test_anonymous_marker_passes_through(self, exchange, resolver):
        grant = exchange.exchange_api_key(VENDOR_ID, API_KEY, user_ref="anon_guest_77")

        assert grant.user_id == "anon_guest_77"
        resolver.resolve.assert_not_called()

    def test_email_lookup(self, exchange, vendors, resolver):
        vendors.find_user_id_by_email.return_value = "registered-user"

        grant = exchange.exchange_api_key(VENDOR_ID, API_KEY, user_email="  Jane@Example.COM ")

        vendors.find_user_id_by_email.assert_called_once_with("jane@example.com")
        assert grant.user_id == "registered-user"
        resolver.resolve.assert_not_called()

    def test_email_wins_over_reference(self, exchange, vendors, resolver):
        vendors.find_user_id_by_email.return_value = "registered-user"

        grant = exchange.exchange_api_key(VENDOR_ID, API_KEY, user_ref="wp_1042", user_email="jane@example.com")

        assert grant.user_id == "registered-user"
        resolver.resolve.assert_not_called()

    def test_unknown_email(self, exchange):
        with pytest.raises(UserNotFound, match="email"):
            exchange.exchange_api_key(VENDOR_ID, API_KEY, user_email="nobody@example.com")

    def test_wrong_key(self, exchange, resolver):
        with pytest.raises(InvalidApiKey):
            exchange.exchange_api_key(VENDOR_ID, "ak_wrong", user_ref="wp_1042")

        resolver.resolve.assert_not_called()

    def test_vendor_without_api_key(self, exchange, vendors):
        vendors.get_credentials.return_value = VendorCredentials(vendor_id=VENDOR_ID, partner_secret=VENDOR_SECRET)

        with pytest.raises(CredentialNotConfigured):
            exchange.exchange_api_key(VENDOR_ID, API_KEY, user_ref="wp_1042")

    def test_unknown_vendor(self, exchange, vendors):
        vendors.get_credentials.return_value = None

        with pytest.raises(VendorNotFound):
            exchange.exchange_api_key(VENDOR_ID, API_KEY, user_ref="wp_1042")
