"""
FastAPI application entry point for Gatekeeper.

Subscriber entitlement is enforced on every request via AccessGateMiddleware.
Only allow-listed routes (auth pages, billing webhooks, license verification,
the entitlement endpoint, health, static assets) are reachable without an
entitled session.
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from gatekeeper import __version__
from gatekeeper.config.settings import GateSettings, get_settings
from gatekeeper.entitlements.middleware import AccessGateMiddleware
from gatekeeper.api.routes import health
from gatekeeper.api.routes import webhooks_billing
from gatekeeper.api.routes import license
from gatekeeper.api.routes import entitlement

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting Gatekeeper API", extra={"version": __version__})

    settings = get_settings()
    logger.info(
        "Access gate configuration loaded",
        extra={
            "environment": settings.environment,
            "public_paths": list(settings.public_paths),
            "webhook_token": "set" if settings.webhook_token else "missing",
            "session_jwt_secret": "set" if settings.session_jwt_secret else "missing",
        },
    )

    if not settings.webhook_token:
        logger.warning(
            "BILLING_WEBHOOK_TOKEN is not set. Billing webhooks are accepted without "
            "authentication; set it in production."
        )
    if not settings.session_jwt_secret:
        logger.error(
            "SESSION_JWT_SECRET is not set. Every request carrying a session will be "
            "redirected away (fail closed)."
        )

    # Database connectivity check: surface misconfigurations in deploy logs
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error(
            "DATABASE_URL is not set. Entitled routes will be denied and "
            "license verification will return 503."
        )
        app.state.database_configured = False
    else:
        # Mask credentials for safe logging
        masked = database_url.split("@")[-1] if "@" in database_url else "(local)"
        logger.info("DATABASE_URL configured", extra={"host_db": masked})
        app.state.database_configured = True

    yield

    # Shutdown
    logger.info("Shutting down Gatekeeper API")


def create_app(
    settings: Optional[GateSettings] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Gate settings for the middleware (defaults to config on each request)
        session_factory: Session opener for the middleware (defaults to DATABASE_URL)
    """
    app = FastAPI(
        title="Gatekeeper API",
        description="Subscriber entitlement verification and access gating",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware (configure for your frontend domain)
    cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # CRITICAL: entitlement enforcement on every request
    app.add_middleware(
        AccessGateMiddleware,
        settings=settings,
        session_factory=session_factory,
    )

    # Allow-listed routes
    app.include_router(health.router)
    app.include_router(webhooks_billing.router)
    app.include_router(license.router)
    app.include_router(entitlement.router)

    app.add_exception_handler(Exception, global_exception_handler)
    return app


async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    logger.error(
        "Unhandled exception",
        extra={
            "account_id": getattr(request.state, "account_id", "unknown"),
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred"
        }
    )


app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
