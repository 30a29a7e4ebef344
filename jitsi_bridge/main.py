"""
FastAPI Application Factory
===========================

Entry point for the Jitsi OIDC bridge.

Architecture:
    Browser → Bridge (this service) → OIDC Provider → Bridge → Jitsi Meet

Routers:
    - /auth/*       : OIDC login and callback
    - /room/{name}  : Login straight into a meeting room
    - /health       : Health check endpoint

Running the Service:
    Development:
        uvicorn jitsi_bridge.main:app --reload --host 0.0.0.0 --port 8080

    Production:
        uvicorn jitsi_bridge.main:app --host 0.0.0.0 --port 8080

    With custom log level:
        LOG_LEVEL=DEBUG uvicorn jitsi_bridge.main:app

Handshakes live in process memory, so run a single worker per store.
"""

import asyncio
import contextlib
import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from jitsi_bridge.auth import auth_router, room_router
from jitsi_bridge.auth.correlator import (
    HandshakeStore,
    InMemoryHandshakeStore,
    SessionCorrelator,
)
from jitsi_bridge.auth.exceptions import ConfigurationError
from jitsi_bridge.auth.flow import FlowController
from jitsi_bridge.auth.oidc import OIDCClient
from jitsi_bridge.auth.tokens import SessionTokenMinter
from jitsi_bridge.config import Settings, get_settings, validate_configuration
from jitsi_bridge.models import ErrorResponse, HealthResponse

SERVICE_NAME = "jitsi-oidc-bridge"
SERVICE_VERSION = "1.0.0"


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def check_configuration(settings: Settings) -> None:
    """
    Refuse to start with a configuration that cannot issue tokens.

    Raises:
        ConfigurationError: If validate_configuration reports errors
    """
    logger = logging.getLogger("jitsi_bridge.main")
    status = validate_configuration(settings)

    for warning in status["warnings"]:
        logger.warning(f"Configuration warning: {warning}")

    if not status["valid"]:
        raise ConfigurationError("; ".join(status["errors"]))


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Configure logging
        - Validate configuration
        - Load identity provider metadata (discovery)
        - Start the expired-handshake sweeper

    Shutdown tasks:
        - Stop the sweeper
        - Close the provider HTTP client
    """
    settings: Settings = app.state.settings
    flow: FlowController = app.state.flow

    setup_logging(settings.LOG_LEVEL)
    logger = logging.getLogger("jitsi_bridge.main")

    check_configuration(settings)

    if flow.oidc_client.metadata is None:
        await flow.oidc_client.discover()

    sweeper = asyncio.create_task(
        flow.correlator.run_sweeper(settings.HANDSHAKE_SWEEP_INTERVAL_SECONDS)
    )

    logger.info(
        "Jitsi OIDC bridge started",
        extra={
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "issuer": settings.issuer_url_str,
            "jitsi_url": settings.jitsi_url_str,
            "room_scope": settings.JITSI_ROOM_SCOPE,
        }
    )

    yield

    logger.info("Shutting down Jitsi OIDC bridge")

    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper

    await flow.oidc_client.aclose()

    logger.info("Jitsi OIDC bridge shutdown complete")


# Create FastAPI application
def create_app(
    settings: Optional[Settings] = None,
    store: Optional[HandshakeStore] = None,
    oidc_client: Optional[OIDCClient] = None,
    minter: Optional[SessionTokenMinter] = None,
) -> FastAPI:
    """
    Application factory function.

    Every collaborator can be injected; anything not given is built from
    settings.

    Returns:
        FastAPI: Configured application instance

    Raises:
        ConfigurationError: If no token signer can be built from settings
    """
    settings = settings or get_settings()
    store = store or InMemoryHandshakeStore(
        ttl_seconds=settings.HANDSHAKE_TTL_SECONDS,
        max_entries=settings.MAX_PENDING_HANDSHAKES,
    )
    oidc_client = oidc_client or OIDCClient(settings)
    minter = minter or SessionTokenMinter.from_settings(settings)

    flow = FlowController(
        settings=settings,
        correlator=SessionCorrelator(store, use_pkce=settings.OIDC_USE_PKCE),
        oidc_client=oidc_client,
        minter=minter,
    )

    app = FastAPI(
        title="Jitsi OIDC Bridge",
        description="OpenID Connect login for Jitsi Meet with signed session tokens",
        version=SERVICE_VERSION,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )
    app.state.settings = settings
    app.state.flow = flow

    app.include_router(auth_router)
    app.include_router(room_router)

    # Health check endpoint
    @app.get("/health", tags=["System"], response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """
        Health check endpoint.

        Returns:
            Service status and the number of handshakes awaiting callback
        """
        return HealthResponse(
            status="ok",
            service=SERVICE_NAME,
            pending_handshakes=await store.count(),
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Log unhandled errors and return a standardized error response.
        """
        logger = logging.getLogger("jitsi_bridge.main")
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="internal_server_error",
                message="An unexpected error occurred",
            ).model_dump(exclude_none=True),
        )

    return app


def __getattr__(name: str) -> Any:
    # `uvicorn jitsi_bridge.main:app` builds the app from the environment on first access
    if name == "app":
        global app
        app = create_app()
        return app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        create_app(settings),
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
