"""
api/main.py -- FastAPI application entry point for CredGuard.

Exposes the credential hygiene layer over HTTP: authentication, the
enforcement gate in front of every route, and the admin endpoints that drive
bulk reverification / password-change requests and expiry reports.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- signed cookie session; carries the gate's flash
                              messages across the redirect to the notice page

The enforcement gate is NOT middleware: it is an app-level dependency
(api.enforcement.enforce_credential_policy), so it runs after routing and
sees the matched route name.

Lifespan builds the engine, principal registry, audit ledger, notifier,
security service and gate, then checks every configured route name exists.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse, Response
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from api.enforcement import enforce_credential_policy, validate_route_names, verification_required_response
from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.security import router as security_router
from auth.dependencies import get_current_principal
from auth.models import Principal
from auth.registry import PrincipalRegistry
from core.clock import Clock, utc_now
from core.config import Settings, get_settings
from core.database import make_engine
from ledger.store import AuditLedger
from security.gate import EnforcementGate, VerificationRequired
from security.notifier import Notifier, build_notifier
from security.policy import PolicyConfig
from security.service import CredentialSecurityService

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("credguard.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Application state
# ---------------------------------------------------------------------------


def init_app_state(
    app: FastAPI,
    settings: Settings,
    engine: Engine | None = None,
    notifier: Notifier | None = None,
    clock: Clock = utc_now,
) -> None:
    """Build every long-lived collaborator and attach it to app.state.

    Shared by the real lifespan and the test lifespan so both wire the app
    the same way; tests pass their own engine, notifier and clock.
    """
    engine = engine or make_engine(settings.database_url)
    config = PolicyConfig.from_settings(settings)
    registry = PrincipalRegistry(engine, settings.principal_types, default=settings.default_principal_type, clock=clock)
    ledger = AuditLedger(engine, clock=clock)
    notifier = notifier or build_notifier(settings)

    validate_route_names(app, config)

    app.state.engine = engine
    app.state.registry = registry
    app.state.ledger = ledger
    app.state.notifier = notifier
    app.state.service = CredentialSecurityService(registry, ledger, notifier, config, clock=clock)
    app.state.gate = EnforcementGate(ledger, notifier, config, clock=clock)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. A ConfigurationError raised here aborts startup, so a missing
    route name or principal type never reaches request time.
    """
    logger.info("CredGuard API starting up")
    init_app_state(app, _settings)
    logger.info(
        "Policy initialized (verification=%dd, password=%dd, principal types=%s)",
        _settings.verification_expiry_days,
        _settings.password_expiry_days,
        ", ".join(app.state.registry.keys()),
    )

    yield

    close = getattr(app.state.notifier, "close", None)
    if close is not None:
        close()
    app.state.engine.dispose()
    logger.info("CredGuard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="CredGuard API",
    description="Credential hygiene: email re-verification and password expiry enforcement.",
    version=__version__,
    lifespan=lifespan,
    dependencies=[Depends(enforce_credential_policy)],
    # Disable built-in /docs and /redoc so we can add auth protection.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Each add_middleware() call wraps the stack built so far, so the LAST call is
# the outermost layer. Registered innermost-first: Session -> SlowAPI -> CORS
# -> TrustedHost.
# ---------------------------------------------------------------------------

app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.secret_key,
    session_cookie="credguard_session",
    same_site="lax",
    https_only=_settings.secure_cookies,
)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost"],
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(security_router, prefix="/api/v1", tags=["Security"])
# Web UI router is mounted by asgi.py, not here.
# api/ and web/ are independent layers -- only the top-level asgi.py imports both.


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(principal: Principal = Depends(get_current_principal)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="CredGuard API")


@app.get("/redoc", include_in_schema=False)
async def redoc(principal: Principal = Depends(get_current_principal)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="CredGuard API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All JSON handlers return the same ErrorResponse envelope so API clients can
# parse errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(VerificationRequired)
async def verification_required_handler(request: Request, exc: VerificationRequired) -> Response:
    """403 JSON for API callers, redirect to the notice page for browsers."""
    return verification_required_response(request, exc)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail={"code": ..., "message": ...}.
    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    A storage failure inside the gate lands here as a 500 -- never an allow.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit and exempt from the gate: load balancers and monitoring must
# never be throttled or redirected.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"], name="health")
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    database = "ok"
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=__version__,
        components={"app": "ok", "database": database},
    )
