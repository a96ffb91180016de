"""Pytest configuration and shared fixtures for all tests.

This module provides shared test fixtures including:
- File-backed SQLite database built from the ORM models
- Session factory and per-test session
- Vendor, user and coupon factories
- In-memory stand-ins for the replay store
- A FastAPI TestClient wired to the test resources
"""

import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import jwt
import pytest
from fastapi.testclient import TestClient

from coupon_claim.api.auth import issue_service_token
from coupon_claim.api.main import create_app
from coupon_claim.config import Settings
from coupon_claim.domain.errors import JtiReplay
from coupon_claim.domain.services import IReplayGuard
from coupon_claim.domain.tokens import TokenService
from coupon_claim.infrastructure.database import (
    create_db_engine,
    create_session_factory,
    init_db,
    session_scope,
)
from coupon_claim.infrastructure.models import Coupon, User, Vendor
from coupon_claim.infrastructure.resources import AppResources

WIDGET_SECRET = "test-widget-session-secret-0123456789abcdef"
PARTNER_SECRET = "test-partner-secret-0123456789abcdef0123456789"
OTHER_PARTNER_SECRET = "other-partner-secret-fedcba9876543210fedcba98"
API_KEY = "ak_test_api_key_0123456789abcdefghijklmnop"
INTERNAL_SERVICE_SECRET = "test-internal-service-secret-0123456789abcdef"


class InMemoryReplayGuard(IReplayGuard):
    """Thread-safe replay guard for domain tests."""

    def __init__(self):
        self._seen: dict[str, float] = {}
        self._lock = threading.Lock()
        self.calls: list[tuple[str, int]] = []

    def check_and_record(self, jti: str, ttl_seconds: int) -> None:
        with self._lock:
            self.calls.append((jti, ttl_seconds))
            now = time.monotonic()
            expires = self._seen.get(jti)
            if expires is not None and expires > now:
                raise JtiReplay()
            self._seen[jti] = now + max(1, ttl_seconds)


class InMemoryRedis:
    """Minimal thread-safe stand-in for the Redis commands the service issues."""

    def __init__(self):
        self.store: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def set(self, name: str, value: str, ex: Optional[int] = None, nx: bool = False) -> Optional[bool]:
        with self._lock:
            now = time.monotonic()
            current = self.store.get(name)
            if nx and current is not None and current[1] > now:
                return None
            self.store[name] = (value, now + (ex if ex is not None else 10**9))
            return True

    def ttl(self, name: str) -> int:
        _, expires = self.store[name]
        return int(expires - time.monotonic())

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass


@pytest.fixture
def db_engine(tmp_path):
    """File-backed SQLite engine with the schema created from the ORM models."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'coupon_claims.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def session(session_factory):
    """Create a database session for a test."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@pytest.fixture
def make_vendor(session_factory) -> Callable[..., str]:
    def _make_vendor(
        partner_secret: Optional[str] = PARTNER_SECRET,
        api_key: Optional[str] = API_KEY,
        name: str = "Test Vendor",
        active: bool = True,
    ) -> str:
        vendor_id = str(uuid.uuid4())
        with session_scope(session_factory) as s:
            s.add(
                Vendor(
                    id=vendor_id,
                    name=name,
                    active=active,
                    partner_secret=partner_secret,
                    api_key=api_key,
                )
            )
        return vendor_id

    return _make_vendor


@pytest.fixture
def make_user(session_factory) -> Callable[..., str]:
    def _make_user(email: Optional[str] = None) -> str:
        user_id = str(uuid.uuid4())
        with session_scope(session_factory) as s:
            s.add(User(id=user_id, email=email, role="user"))
        return user_id

    return _make_user


@pytest.fixture
def make_coupon(session_factory) -> Callable[..., str]:
    def _make_coupon(
        vendor_id: str,
        code: Optional[str] = None,
        expiry_date: Optional[datetime] = None,
        deleted: bool = False,
        created_at: Optional[datetime] = None,
    ) -> str:
        coupon_id = str(uuid.uuid4())
        values: dict[str, Any] = {}
        if created_at is not None:
            values["created_at"] = created_at
        with session_scope(session_factory) as s:
            s.add(
                Coupon(
                    id=coupon_id,
                    vendor_id=vendor_id,
                    code=code or f"CODE-{coupon_id[:8].upper()}",
                    description="Test coupon",
                    discount_value="15%",
                    expiry_date=expiry_date,
                    deleted_at=datetime.now(timezone.utc) if deleted else None,
                    **values,
                )
            )
        return coupon_id

    return _make_coupon


def _sign_partner_token(
    vendor_id: str,
    external_user_id: str = "wp_1042",
    secret: str = PARTNER_SECRET,
    jti: Optional[str] = None,
    expires_in: Optional[int] = 300,
    algorithm: str = "HS256",
    **extra: Any,
) -> str:
    """Sign a partner token the way a vendor backend would."""
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "vendor": vendor_id,
        "external_user_id": external_user_id,
        "jti": jti or str(uuid.uuid4()),
        "iat": int(now.timestamp()),
    }
    if expires_in is not None:
        payload["exp"] = int((now + timedelta(seconds=expires_in)).timestamp())
    payload.update(extra)
    return jwt.encode(payload, secret, algorithm=algorithm)


@pytest.fixture
def sign_partner_token() -> Callable[..., str]:
    return _sign_partner_token


@pytest.fixture
def partner_secret() -> str:
    return PARTNER_SECRET


@pytest.fixture
def other_partner_secret() -> str:
    return OTHER_PARTNER_SECRET


@pytest.fixture
def vendor_api_key() -> str:
    return API_KEY


@pytest.fixture
def replay_guard() -> InMemoryReplayGuard:
    return InMemoryReplayGuard()

@pytest.fixture
def app_settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'coupon_claims.db'}",
        widget_session_secret=WIDGET_SECRET,
        log_json=False,
        log_level="WARNING",
        claim_model="period",
        allowed_services=["coupon-admin"],
        internal_service_secret=INTERNAL_SERVICE_SECRET,
    )


@pytest.fixture
def redis_client() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def resources(db_engine, session_factory, redis_client) -> AppResources:
    return AppResources(engine=db_engine, session_factory=session_factory, redis_client=redis_client)


@pytest.fixture
def client(resources, app_settings):
    """TestClient against the real app with test resources injected."""
    app = create_app(resources=resources, app_settings=app_settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def widget_session_for(app_settings) -> Callable[[str, str], str]:
    """Issue widget session tokens directly, bypassing the exchange endpoints."""
    service = TokenService(app_settings.widget_session_secret)

    def _issue(user_id: str, vendor_id: str) -> str:
        return service.issue_widget_session(user_id, vendor_id)

    return _issue


@pytest.fixture
def service_headers(app_settings) -> Callable[..., dict[str, str]]:
    """Internal API headers carrying a signed service token."""

    def _headers(
        service_name: str = "coupon-admin",
        secret: Optional[str] = None,
        **token_kwargs: Any,
    ) -> dict[str, str]:
        token = issue_service_token(
            service_name,
            secret or app_settings.internal_service_secret,
            algorithm=app_settings.token_algorithm,
            **token_kwargs,
        )
        return {"X-Service-Auth": token, "X-Request-ID": "req-123"}

    return _headers
