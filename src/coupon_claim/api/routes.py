"""Session exchange routes.

- POST /api/session-from-token: partner-signed token -> widget session
- POST /api/widget-session: vendor API key + user reference -> widget session
"""

from fastapi import APIRouter, Response, status

from coupon_claim.api.dependencies import DBSession, SessionExchange
from coupon_claim.api.errors import CORS_POST_HEADERS, storage_errors
from coupon_claim.api.models import (
    SessionFromTokenRequest,
    SessionGrantData,
    SessionResponse,
    WidgetSessionRequest,
)
from coupon_claim.domain.services import SessionGrant

router = APIRouter(prefix="/api", tags=["sessions"])


def _session_response(grant: SessionGrant, response: Response) -> SessionResponse:
    response.headers.update(CORS_POST_HEADERS)
    return SessionResponse(data=SessionGrantData(**grant.to_dict()))


@router.post("/session-from-token", response_model=SessionResponse)
def session_from_token(
    body: SessionFromTokenRequest,
    exchange: SessionExchange,
    db: DBSession,
    response: Response,
) -> SessionResponse:
    """Exchange a partner-signed token for a widget session.

    Responses:
        200 OK: Session issued
        400 Bad Request: Malformed body
        401 Unauthorized: Invalid or expired token, anonymous identity
        409 Conflict: Token already used
        500 Internal Server Error: Replay store or database unavailable
    """
    with storage_errors("session_from_token"):
        grant = exchange.exchange_partner_token(body.token)
        db.commit()
    return _session_response(grant, response)


@router.post("/widget-session", response_model=SessionResponse)
def widget_session(
    body: WidgetSessionRequest,
    exchange: SessionExchange,
    db: DBSession,
    response: Response,
) -> SessionResponse:
    """Exchange a vendor API key plus user reference for a widget session.

    Responses:
        200 OK: Session issued
        400 Bad Request: Malformed body, vendor has no API key
        401 Unauthorized: API key mismatch
        404 Not Found: Unknown vendor or user email
    """
    with storage_errors("widget_session", vendor_id=body.vendor_id):
        grant = exchange.exchange_api_key(
            vendor_id=body.vendor_id,
            api_key=body.api_key,
            user_ref=body.user_id,
            user_email=body.user_email,
        )
        db.commit()
    return _session_response(grant, response)


@router.options("/session-from-token", include_in_schema=False)
@router.options("/widget-session", include_in_schema=False)
def session_preflight() -> Response:
    return Response(status_code=status.HTTP_200_OK, headers=CORS_POST_HEADERS)
