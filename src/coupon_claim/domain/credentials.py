"""Vendor credential configuration.

A vendor may hold a partner signing secret and an API key. Both are optional
and independently rotatable. They are resolved once per request into a
``VendorCredentials`` value and passed down, so handlers never poke at
nullable columns directly.
"""

import base64
import hmac
import secrets
from dataclasses import dataclass

from coupon_claim.domain.errors import CredentialNotConfigured

SECRET_BYTES = 32
API_KEY_PREFIX = "ak_"


@dataclass(frozen=True)
class VendorCredentials:
    """Credential configuration for a single vendor.

    Attributes:
        vendor_id: Vendor the credentials belong to
        partner_secret: Symmetric secret partners sign tokens with, or None
        api_key: Key for the simple key-based exchange, or None
    """

    vendor_id: str
    partner_secret: str | None = None
    api_key: str | None = None

    @property
    def has_partner_secret(self) -> bool:
        return bool(self.partner_secret)

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key)

    def require_partner_secret(self) -> str:
        if not self.partner_secret:
            raise CredentialNotConfigured("Vendor does not have a partner secret configured")
        return self.partner_secret

    def require_api_key(self) -> str:
        if not self.api_key:
            raise CredentialNotConfigured(
                "Vendor does not have an API key configured. Please generate an API key first."
            )
        return self.api_key

    def api_key_matches(self, candidate: str) -> bool:
        """Constant-time comparison against the configured API key.

        Raises:
            CredentialNotConfigured: If the vendor has no API key
        """
        expected = self.require_api_key()
        return hmac.compare_digest(expected.encode("utf-8"), candidate.encode("utf-8"))


def generate_partner_secret() -> str:
    """Generate a new partner signing secret (64 hex characters)."""
    return secrets.token_hex(SECRET_BYTES)


def generate_api_key() -> str:
    """Generate a new vendor API key."""
    raw = base64.urlsafe_b64encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")
    return f"{API_KEY_PREFIX}{raw}"


def mask_secret(secret: str | None) -> str | None:
    """Mask a secret for display, keeping only the last 4 characters."""
    if not secret:
        return None
    return "*" * max(0, len(secret) - 4) + secret[-4:]


@dataclass(frozen=True)
class VendorProfile:
    """Public vendor details shown by the widget."""

    id: str
    name: str
    description: str | None = None
    website: str | None = None
    logo_url: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "website": self.website,
            "logo_url": self.logo_url,
        }
