"""FastAPI application entry point for Coupon Claim Service."""

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from coupon_claim import __version__
from coupon_claim.api.claim_routes import router as claim_router
from coupon_claim.api.errors import register_error_handlers
from coupon_claim.api.internal_routes import router as internal_router
from coupon_claim.api.routes import router as session_router
from coupon_claim.api.widget_routes import router as widget_router
from coupon_claim.config import Settings, settings
from coupon_claim.infrastructure.resources import AppResources
from coupon_claim.logging_config import configure_logging

logger = structlog.get_logger()


def create_app(resources: AppResources | None = None, app_settings: Settings | None = None) -> FastAPI:
    """Build the application.

    Args:
        resources: Pre-built resources (tests). When None, resources are
            created from settings at startup and closed at shutdown.
        app_settings: Settings override (tests). Defaults to the global settings.
    """
    app_settings = app_settings or settings
    configure_logging(app_settings.log_level, format_as_json=app_settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan manager.

        Handles startup and shutdown:
        - Build database engine, session factory and Redis client
        - Close them on shutdown
        """
        logger.info(
            "starting_coupon_claim",
            environment=app_settings.environment,
            claim_model=app_settings.claim_model,
            claim_period=app_settings.claim_period,
        )
        if not app_settings.widget_session_secret:
            logger.warning("widget_session_secret_not_configured")

        owned = resources is None
        app.state.resources = resources or AppResources.from_settings(app_settings)
        logger.info("coupon_claim_started")

        yield

        logger.info("shutting_down_coupon_claim")
        if owned:
            app.state.resources.close()
        logger.info("coupon_claim_shutdown_complete")

    app = FastAPI(
        title="Coupon Claim Service",
        description="Multi-tenant coupon claim engine with partner session exchange",
        version=__version__,
        docs_url="/docs" if app_settings.debug else None,  # Disable docs in production
        redoc_url="/redoc" if app_settings.debug else None,
        lifespan=lifespan,
    )
    app.state.settings = app_settings
    if resources is not None:
        # Usable without running the lifespan (TestClient outside a with block)
        app.state.resources = resources

    register_error_handlers(app)

    app.include_router(session_router)  # POST /api/session-from-token, POST /api/widget-session
    app.include_router(claim_router)  # POST /api/claim, GET /api/available-coupons
    app.include_router(widget_router)  # POST /api/widget/claim, GET /api/widget/coupons
    app.include_router(internal_router)  # /internal/v1/vendors/{id}/...

    @app.get("/health")
    def health_check(request: Request) -> Response:
        """Health check endpoint.

        Returns:
            200 OK if database and Redis are reachable
            503 Service Unavailable otherwise
        """
        current: AppResources = request.app.state.resources
        checks = {
            "database": current.check_database(),
            "redis": current.check_redis(),
        }
        healthy = all(checks.values())
        if not healthy:
            logger.error("health_check_failed", **checks)

        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "service": app_settings.service_name,
                "environment": app_settings.environment,
                "checks": checks,
            },
        )

    @app.get("/")
    def root() -> dict[str, str]:
        """Root endpoint."""
        return {
            "service": app_settings.service_name,
            "version": __version__,
            "environment": app_settings.environment,
        }

    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(
        "coupon_claim.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    main()
