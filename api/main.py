"""
api/main.py -- FastAPI application factory for StaffGate.

Exposes the identity and approval lifecycle (auth/facade.py) over HTTP.

Run with:      uvicorn asgi:app --reload

create_app(settings) builds a fully wired app. Tests pass their own store,
notifier and clock so every test module gets an isolated instance.

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- OAuth state storage for authlib

Lifespan handles startup (store, mail dispatcher, OAuth registry, facade) and
shutdown (drain the dispatcher, close the store) symmetrically.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.employees import router as employees_router
from auth.dependencies import get_current_account
from auth.errors import AuthError
from auth.facade import AuthFacade
from auth.models import Account
from auth.notifier import NotificationDispatcher, Notifier, build_notifier
from auth.oauth import build_oauth
from auth.store import SqlStore, Store
from auth.verification import utc_now
from core.config import Settings

VERSION = "0.3.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("staffgate.api")

# Domain error code -> HTTP status. Codes missing here fall back to 400.
_STATUS_BY_CODE: dict[str, int] = {
    "duplicate_email": 400,
    "invalid_credentials": 401,
    "email_not_verified": 400,
    "pending_approval": 403,
    "account_rejected": 403,
    "invalid_or_expired_token": 400,
    "invalid_refresh_token": 401,
    "validation_error": 400,
    "not_found": 404,
    "unauthorized": 401,
    "forbidden": 403,
    "invalid_status_transition": 409,
    "oauth_failed": 401,
    "internal_error": 500,
}


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map a domain error to its HTTP status.

    Internal errors never carry detail to the client; the cause was already
    logged where it was caught.
    """
    status_code = _STATUS_BY_CODE.get(exc.code, 400)
    detail = None if status_code >= 500 else exc.detail
    response = _error_response(status_code, exc.code, exc.message, detail)
    if status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
    Plain ``def``: SlowAPIMiddleware calls this handler directly, without awaiting.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc.detail))
    response.headers["Retry-After"] = str(retry_after)
    return response


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it -- str(dict) produces a Python repr,
    not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Settings,
    store: Store | None = None,
    notifier: Notifier | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    """Build the StaffGate API.

    ``store`` and ``notifier`` default to a SqlStore on settings.database_url
    and the notifier chosen by build_notifier(settings). A store passed in is
    owned by the caller and is not closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Manage application-level resources across the full server lifetime.

        Startup order matters: the store and dispatcher must exist before the
        facade that wraps them.
        """
        logger.info("StaffGate API starting up")
        owns_store = store is None
        app.state.store = store if store is not None else SqlStore(settings.database_url)
        app.state.dispatcher = NotificationDispatcher(
            notifier if notifier is not None else build_notifier(settings),
            max_workers=settings.mail_workers,
        )
        app.state.oauth = build_oauth(settings)
        app.state.facade = AuthFacade(app.state.store, settings, app.state.dispatcher, clock)
        logger.info(
            "Auth initialized (auto_activate=%s, oidc=%s, smtp=%s)",
            settings.auto_activate_employees,
            settings.oidc_configured,
            settings.smtp_configured,
        )

        yield

        app.state.dispatcher.close()
        if owns_store:
            app.state.store.close()
        logger.info("StaffGate API shutdown complete")

    app = FastAPI(
        title="StaffGate API",
        description="Identity, email verification and employee approval for the HR platform.",
        version=VERSION,
        lifespan=lifespan,
        # Built-in /docs and /redoc are replaced by auth-protected routes below.
        docs_url=None,
        redoc_url=None,
    )
    app.state.settings = settings

    # -----------------------------------------------------------------------
    # Middleware stack -- register in the order the request should meet them.
    # -----------------------------------------------------------------------

    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "PUT", "PATCH"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=3600,
    )
    app.add_middleware(SlowAPIMiddleware)
    # authlib keeps the OAuth state between the authorization redirect and the
    # callback in this session; that is the CSRF protection of the code flow.
    app.add_middleware(SessionMiddleware, secret_key=settings.secret_key, https_only=not settings.debug)

    # SlowAPI looks for app.state.limiter by convention.
    app.state.limiter = limiter

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

    app.add_exception_handler(AuthError, auth_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
    app.include_router(employees_router, prefix="/api/v1", tags=["Employees"])

    @app.get("/docs", include_in_schema=False)
    async def docs(account: Account = Depends(get_current_account)):
        """Swagger UI -- requires authentication."""
        return get_swagger_ui_html(openapi_url="/openapi.json", title="StaffGate API")

    @app.get("/redoc", include_in_schema=False)
    async def redoc(account: Account = Depends(get_current_account)):
        """ReDoc UI -- requires authentication."""
        return get_redoc_html(openapi_url="/openapi.json", title="StaffGate API")

    # No rate limit -- load balancers and monitors must not be throttled.
    @app.get("/api/v1/health", tags=["Health"])
    def health(request: Request) -> HealthResponse:
        """Return API liveness, version and database reachability."""
        components = {"app": "ok", "database": "ok"}
        try:
            request.app.state.store.ping()
        except SQLAlchemyError:
            logger.exception("Health check: database unreachable")
            components["database"] = "error"
        status = "healthy" if components["database"] == "ok" else "degraded"
        return HealthResponse(status=status, version=VERSION, components=components)

    return app
