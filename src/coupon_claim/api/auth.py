"""Service authentication for internal API endpoints.

Only services on the allowlist (the admin dashboard backend by default) can
read or rotate vendor credentials. Callers prove who they are with a
short-lived service token in ``X-Service-Auth``: an HMAC-signed JWT whose
``sub`` is the service name, signed with the shared internal service secret.
"""

from datetime import datetime, timedelta, timezone
from typing import Annotated

import jwt
import structlog
from fastapi import Depends, Header, HTTPException, status

from coupon_claim.api.dependencies import AppSettings

logger = structlog.get_logger(__name__)

SERVICE_TOKEN_AUDIENCE = "coupon-claim-internal"
SERVICE_TOKEN_CLAIMS = ["sub", "aud", "iat", "exp"]


def issue_service_token(
    service_name: str,
    secret: str,
    algorithm: str = "HS256",
    ttl_seconds: int = 300,
    now: datetime | None = None,
) -> str:
    """Sign a service token for calling the internal API.

    Args:
        service_name: Calling service, must be on the allowlist
        secret: Shared internal service secret
        algorithm: Must match the service's pinned algorithm
        ttl_seconds: Token lifetime
        now: Issue time override (tests)
    """
    issued = now or datetime.now(timezone.utc)
    payload = {
        "sub": service_name,
        "aud": SERVICE_TOKEN_AUDIENCE,
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(seconds=ttl_seconds)).timestamp()),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


def verify_service_authorization(
    app_settings: AppSettings,
    x_service_auth: Annotated[str | None, Header()] = None,
    x_request_id: Annotated[str | None, Header()] = None,
) -> tuple[str, str]:
    """Verify that the requesting service is authorized.

    Args:
        x_service_auth: Service token from X-Service-Auth header
        x_request_id: Request/correlation ID from X-Request-ID header

    Returns:
        Tuple of (requesting_service, request_id)

    Raises:
        HTTPException: If X-Request-ID is missing (400)
        HTTPException: If the service token is missing, invalid or expired (401)
        HTTPException: If service is not authorized (403)
        HTTPException: If no internal service secret is configured (503)
    """
    # Validate X-Request-ID header (required for audit logging)
    if not x_request_id:
        logger.warning("internal_request_missing_request_id")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Request-ID header is required",
        )

    if not x_service_auth:
        logger.warning("internal_request_missing_service_auth", request_id=x_request_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Service-Auth header is required",
        )

    if not app_settings.internal_service_secret:
        logger.error("internal_service_secret_missing", request_id=x_request_id)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal API authentication is not configured",
        )

    try:
        claims = jwt.decode(
            x_service_auth,
            app_settings.internal_service_secret,
            algorithms=[app_settings.token_algorithm],
            audience=SERVICE_TOKEN_AUDIENCE,
            options={"require": SERVICE_TOKEN_CLAIMS},
        )
    except jwt.ExpiredSignatureError:
        logger.warning("internal_request_service_token_expired", request_id=x_request_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Service token expired",
        ) from None
    except jwt.InvalidTokenError:
        logger.warning("internal_request_invalid_service_auth", request_id=x_request_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid service token",
        ) from None

    requesting_service = str(claims["sub"])

    if requesting_service not in app_settings.allowed_services:
        logger.warning(
            "internal_request_service_not_allowed",
            service=requesting_service,
            request_id=x_request_id,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Service '{requesting_service}' is not authorized to access this endpoint",
        )

    logger.info("service_authenticated", service=requesting_service, request_id=x_request_id)
    return requesting_service, x_request_id


# Type alias for dependency injection
ServiceAuth = Annotated[tuple[str, str], Depends(verify_service_authorization)]
