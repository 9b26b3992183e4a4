"""
api/main.py -- FastAPI application entry point for directory sync.

Exposes login, token verification, directory sync and identity
administration over HTTP.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the service graph once (store -> connection manager -> sync
engine -> login service) and tears it down symmetrically.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.directory import router as directory_router
from api.routes.v1.identities import router as identities_router
from auth.login import LoginService
from auth.store import IdentityStore
from core.config import get_settings
from core.errors import BindExhaustedError, ConnectivityError, DirectoryQueryError, RecordPersistenceError
from directory.connection import DirectoryConnectionManager
from sync.engine import SyncEngine

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("dirsync.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Lifespan -- startup / shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the service graph on startup, release it on shutdown.

    Startup order matters:
      1. Identity store first -- every other service writes through it.
      2. Connection manager second -- resolves the active directory
         endpoint (probe + discovery) once, before any request arrives.
      3. Sync engine and login service last -- they compose the two above.
    """
    logger.info("Directory sync API starting up")
    store = IdentityStore()
    app.state.identity_store = store
    connections = DirectoryConnectionManager(_settings)
    app.state.connections = connections
    app.state.sync_engine = SyncEngine(store, connections)
    app.state.login_service = LoginService(connections, app.state.sync_engine)
    logger.info("Services initialized (directory=%s, identities=%d)", connections.endpoint.url, store.count_identities())

    yield

    store.close()
    logger.info("Directory sync API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Directory Sync API",
    description="Directory-backed login, identity synchronization and role administration.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() calls are applied outermost-first from the caller's
# perspective: TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

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
app.include_router(directory_router, prefix="/api/v1", tags=["Directory"])
app.include_router(identities_router, prefix="/api/v1", tags=["Identities"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(ConnectivityError)
async def connectivity_error_handler(request: Request, exc: ConnectivityError) -> JSONResponse:
    """503: the directory did not answer; retrying later may succeed."""
    logger.error("Directory unreachable on %s %s: %s", request.method, request.url.path, exc)
    return _error(503, "directory_unreachable", "The directory server is unreachable.", str(exc))


@app.exception_handler(BindExhaustedError)
async def bind_exhausted_handler(request: Request, exc: BindExhaustedError) -> JSONResponse:
    """502: the service account is misconfigured. The tried formats stay in the log."""
    return _error(502, "directory_bind_failed", "Administrative bind to the directory failed.")


@app.exception_handler(DirectoryQueryError)
async def directory_query_handler(request: Request, exc: DirectoryQueryError) -> JSONResponse:
    logger.error("Directory query failed on %s %s: %s", request.method, request.url.path, exc)
    return _error(502, "directory_query_failed", "The directory search failed.", str(exc))


@app.exception_handler(RecordPersistenceError)
async def persistence_error_handler(request: Request, exc: RecordPersistenceError) -> JSONResponse:
    logger.error("Identity store write failed on %s %s: %s", request.method, request.url.path, exc)
    return _error(500, "persistence_failed", "The identity store could not be updated.")


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    slowapi stores the wait on the exception as exc.retry_after (int seconds).
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail=ErrorDetail(...).model_dump()
    (a dict). A dict detail is used directly as the error field; str(dict)
    would produce a Python repr, not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit and no directory
# call: monitors must get an answer even while the directory is down.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and identity store reachability."""
    store: IdentityStore = request.app.state.identity_store
    database = "ok" if store.ping() else "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=__version__,
        components={"app": "ok", "database": database},
    )
