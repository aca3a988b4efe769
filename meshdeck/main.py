"""FastAPI main application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from meshdeck.core.config import settings, validate_settings
from meshdeck.core.exceptions import MeshDeckError
from meshdeck.core.middleware import REQUEST_ID_HEADER, setup_middleware
from meshdeck.core.rbac import validate_catalog
from meshdeck.db.seeds.seed_rbac import seed_rbac
from meshdeck.db.session import Database
from meshdeck.gateway.client import HeadscaleClient

from meshdeck.api.auth import router as auth_router
from meshdeck.api.audit import router as audit_router
from meshdeck.api.nodes import router as nodes_router
from meshdeck.api.routes import router as routes_router
from meshdeck.api.policy import router as policy_router
from meshdeck.api.keys import router as keys_router
from meshdeck.api.apikeys import router as apikeys_router
from meshdeck.api.users import router as users_router
from meshdeck.api.dns import router as dns_router
from meshdeck.api.roles import router as roles_router

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("meshdeck")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the record store and the Headscale client; close whatever was opened here."""
    logger.info("Starting %s API", settings.APP_NAME)
    validate_settings(settings)
    # Unknown roles in the group table stop startup
    validate_catalog(settings.OIDC_GROUP_ROLE_MAP)

    owned_db = app.state.db is None
    if owned_db:
        app.state.db = Database()
    app.state.db.create_all()
    db = app.state.db.session()
    try:
        seed_rbac(db)
    finally:
        db.close()
    logger.info("Record store ready")

    owned_headscale = app.state.headscale is None
    if owned_headscale:
        app.state.headscale = HeadscaleClient()
    logger.info("Headscale client ready for %s", app.state.headscale.base_url)

    yield

    logger.info("Shutting down %s API", settings.APP_NAME)
    if owned_headscale:
        await app.state.headscale.aclose()
        app.state.headscale = None
    if owned_db:
        app.state.db.dispose()
        app.state.db = None


def _request_id(request: Request) -> dict:
    request_id = getattr(request.state, "request_id", None)
    return {REQUEST_ID_HEADER: request_id} if request_id else {}


async def meshdeck_exception_handler(request: Request, exc: MeshDeckError):
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_payload(),
        headers=_request_id(request),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid request",
            "details": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()],
        },
        headers=_request_id(request),
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
        headers=_request_id(request),
    )


def create_app(
    database: Optional[Database] = None,
    headscale: Optional[HeadscaleClient] = None,
) -> FastAPI:
    """Build the application. Handles passed in are used as-is and left open at shutdown."""
    app = FastAPI(
        title="MeshDeck API",
        description="Role-based access and audit in front of Headscale",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.db = database
    app.state.headscale = headscale

    # Middleware
    setup_middleware(app)

    app.add_exception_handler(MeshDeckError, meshdeck_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Register routers
    app.include_router(auth_router, prefix="/api")
    app.include_router(audit_router, prefix="/api")
    app.include_router(nodes_router, prefix="/api")
    app.include_router(routes_router, prefix="/api")
    app.include_router(policy_router, prefix="/api")
    app.include_router(keys_router, prefix="/api")
    app.include_router(apikeys_router, prefix="/api")
    app.include_router(users_router, prefix="/api")
    app.include_router(dns_router, prefix="/api")
    app.include_router(roles_router, prefix="/api")

    @app.get("/")
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": "0.1.0",
            "docs": "/docs",
        }

    @app.get("/api/health")
    async def health():
        """Liveness check."""
        return {"status": "ok"}

    return app


app = create_app()
