"""FastAPI dependencies for authentication and dependency injection.

This module provides reusable dependencies for the API routes including:
- Application resources and settings
- Database session management
- Widget session authentication
- Domain service injection
"""

from datetime import timedelta
from typing import Annotated, Generator

import structlog
from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from coupon_claim.config import Settings
from coupon_claim.domain.claims import ClaimEngine, ClaimModel
from coupon_claim.domain.errors import MissingSession
from coupon_claim.domain.identity import IdentityResolver
from coupon_claim.domain.services import SessionExchangeService
from coupon_claim.domain.tokens import TokenService, WidgetSession
from coupon_claim.infrastructure.audit import ClaimEventRecorder
from coupon_claim.infrastructure.replay_guard import ReplayGuard
from coupon_claim.infrastructure.repository import (
    CouponClaimRepository,
    ExternalIdentityRepository,
    VendorRepository,
)
from coupon_claim.infrastructure.resources import AppResources

logger = structlog.get_logger(__name__)


def get_resources(request: Request) -> AppResources:
    return request.app.state.resources


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


Resources = Annotated[AppResources, Depends(get_resources)]
AppSettings = Annotated[Settings, Depends(get_settings)]


# Database session dependency
def get_db(resources: Resources) -> Generator[Session, None, None]:
    """Provide database session for request.

    Routes commit explicitly before building their response; anything left
    uncommitted is rolled back when the session closes.

    Yields:
        SQLAlchemy session
    """
    session = resources.session_factory()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# Type alias for database session dependency
DBSession = Annotated[Session, Depends(get_db)]


def get_token_service(app_settings: AppSettings) -> TokenService:
    return TokenService(
        widget_secret=app_settings.widget_session_secret,
        widget_ttl_seconds=app_settings.widget_session_ttl_seconds,
        algorithm=app_settings.token_algorithm,
    )


TokenSvc = Annotated[TokenService, Depends(get_token_service)]


def get_replay_guard(resources: Resources, app_settings: AppSettings) -> ReplayGuard:
    return ReplayGuard(resources.redis_client, key_prefix=app_settings.replay_key_prefix)


def get_vendor_repository(session: DBSession) -> VendorRepository:
    return VendorRepository(session)


VendorRepo = Annotated[VendorRepository, Depends(get_vendor_repository)]


def get_identity_resolver(session: DBSession) -> IdentityResolver:
    return IdentityResolver(ExternalIdentityRepository(session))


Resolver = Annotated[IdentityResolver, Depends(get_identity_resolver)]


def get_session_exchange(
    token_service: TokenSvc,
    replay_guard: Annotated[ReplayGuard, Depends(get_replay_guard)],
    resolver: Resolver,
    vendors: VendorRepo,
    app_settings: AppSettings,
) -> SessionExchangeService:
    return SessionExchangeService(
        token_service=token_service,
        replay_guard=replay_guard,
        identity_resolver=resolver,
        vendors=vendors,
        default_replay_ttl_seconds=app_settings.partner_token_default_replay_ttl_seconds,
    )


SessionExchange = Annotated[SessionExchangeService, Depends(get_session_exchange)]


def get_claim_engine(session: DBSession, app_settings: AppSettings) -> ClaimEngine:
    return ClaimEngine(
        CouponClaimRepository(session),
        model=ClaimModel(app_settings.claim_model),
        period_granularity=app_settings.claim_period,
        active_claim_ttl=timedelta(hours=app_settings.active_claim_ttl_hours),
        max_selection_attempts=app_settings.claim_selection_max_attempts,
    )


Claims = Annotated[ClaimEngine, Depends(get_claim_engine)]


def get_event_recorder(resources: Resources, app_settings: AppSettings) -> ClaimEventRecorder:
    return ClaimEventRecorder(resources.session_factory, enabled=app_settings.claim_events_enabled)


EventRecorder = Annotated[ClaimEventRecorder, Depends(get_event_recorder)]


# Authentication dependency
def require_widget_session(
    token_service: TokenSvc,
    authorization: Annotated[str | None, Header()] = None,
) -> WidgetSession:
    """Verify the widget session from the Authorization header.

    Args:
        authorization: Authorization header value (Bearer <token>)

    Returns:
        Verified widget session

    Raises:
        MissingSession: Header missing or not a Bearer token
        InvalidToken: Signature, algorithm or claim check failed
        ExpiredToken: Session expired
    """
    if not authorization:
        raise MissingSession()

    # Parse "Bearer <token>" format
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        logger.warning("invalid_authorization_header_format")
        raise MissingSession()

    return token_service.verify_widget_session(parts[1])


# Type alias for widget session dependency
CurrentSession = Annotated[WidgetSession, Depends(require_widget_session)]
