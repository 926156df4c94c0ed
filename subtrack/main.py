from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from subtrack.config import settings
from subtrack.routers import access, categories, feedback, health, preferences, spend, subscriptions, webhooks
from subtrack.routers.changes import ws_router as changes_ws_router
from subtrack.auth.session_auth import close_http_client, get_current_user
from subtrack.core.database import init_db, close_db
from subtrack.core.structured_logging import setup_logging
from subtrack.core.errors import SubtrackError
from subtrack.core.errors.registry import error_registry
from subtrack.core.errors.middleware import subtrack_error_handler
from subtrack.core.log_middleware import CorrelationMiddleware
from subtrack.services.change_feed import change_feed
from subtrack.services.currency_service import close_http_client as close_rates_client
from subtrack.services.entitlement_service import get_entitlement_monitor

# Initialize structured logging before any logger calls
setup_logging()

logger = logging.getLogger(__name__)

API_TITLE = "subtrack API"
API_VERSION = "1.2.0"

API_DESCRIPTION = """
## subtrack - Subscription Tracker

Track recurring subscriptions, see monthly spend in any supported
currency, and unlock analytics with premium access.

### Authentication

All user endpoints require a session token from the auth platform.
Include in requests: `Authorization: Bearer <access token>`
"""

TAGS_METADATA = [
    {"name": "health", "description": "Health check. No authentication required."},
    {"name": "subscriptions", "description": "Subscription CRUD and dashboard filters."},
    {"name": "categories", "description": "Default and user-defined categories."},
    {"name": "preferences", "description": "Display currency."},
    {"name": "spend", "description": "Monthly spend totals in the display currency."},
    {"name": "access", "description": "Entitlements, first-sign-in provisioning and premium analytics."},
    {"name": "webhooks", "description": "Signed payment events. Authenticated by signature, not session."},
    {"name": "feedback", "description": "In-app feedback box."},
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting subtrack API v%s...", API_VERSION)

    error_registry.load()

    init_db()  # Alembic migrations + default categories
    logger.info("Database initialized")

    get_entitlement_monitor().start(change_feed)

    yield

    # Shutdown
    logger.info("Shutting down subtrack API...")
    await get_entitlement_monitor().stop()
    await close_http_client()
    await close_rates_client()
    close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        openapi_tags=TAGS_METADATA,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Correlation ID middleware (request_id + correlation_id in every log)
    app.add_middleware(CorrelationMiddleware)

    # Structured error handler for SubtrackError
    app.add_exception_handler(SubtrackError, subtrack_error_handler)

    # Catch-all handler so unhandled exceptions return JSON (not bare text)
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error"},
        )

    # Protected Routes Dependency
    protected_route_dependency = [Depends(get_current_user)]

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(
        subscriptions.router,
        prefix="/api/subscriptions",
        tags=["subscriptions"],
        dependencies=protected_route_dependency,
    )
    app.include_router(
        categories.router,
        prefix="/api/categories",
        tags=["categories"],
        dependencies=protected_route_dependency,
    )
    app.include_router(
        preferences.router,
        prefix="/api/preferences",
        tags=["preferences"],
        dependencies=protected_route_dependency,
    )
    app.include_router(
        spend.router,
        prefix="/api/spend",
        tags=["spend"],
        dependencies=protected_route_dependency,
    )
    app.include_router(
        access.router,
        prefix="/api",
        tags=["access"],
        dependencies=protected_route_dependency,
    )
    app.include_router(
        feedback.router,
        prefix="/api/feedback",
        tags=["feedback"],
        dependencies=protected_route_dependency,
    )
    app.include_router(webhooks.router, prefix="/api/webhooks", tags=["webhooks"])
    app.include_router(changes_ws_router)  # WebSocket at /ws/changes (no prefix)

    @app.get("/", tags=["health"], summary="API Root")
    async def root():
        return {
            "name": API_TITLE,
            "version": API_VERSION,
            "status": "running",
            "docs": {"swagger": "/docs", "redoc": "/redoc", "openapi": "/openapi.json"},
        }

    return app


app = create_app()
