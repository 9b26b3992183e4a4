"""
api/routes/v1/directory.py -- Directory sync and diagnostics routes.

Routes (in registration order to avoid FastAPI path capture conflicts):
  POST /directory/sync                  -- full sync of every directory user
  POST /directory/sync/{account_name}   -- sync a single account
  GET  /directory/status                -- store freshness + role distribution
  GET  /directory/test                  -- probe / admin bind / sample search

Failure mapping:
  ConnectivityError and BindExhaustedError raised before a sync starts reach
  the exception handlers in api/main.py (503 / 502). Per-entry failures in a
  full sync never do; they are counted in the report body.
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from api.limiter import limiter
from api.models import ConnectionTestResponse, ErrorDetail, IdentityResponse, SyncReportResponse, SyncStatusResponse
from auth.dependencies import require_permission
from directory.diagnostics import run_connection_test
from sync.engine import SyncEngine

router = APIRouter()

_require_sync = require_permission("system", "sync_directory")
_require_stats = require_permission("system", "view_stats")


# ---------------------------------------------------------------------------
# POST /directory/sync -- full sync
# ---------------------------------------------------------------------------


@limiter.limit("5/minute")
@router.post("/directory/sync", response_model=SyncReportResponse, dependencies=[Depends(_require_sync)])
def sync_all(request: Request) -> SyncReportResponse:
    """Reconcile every directory user into the identity store."""
    engine: SyncEngine = request.app.state.sync_engine
    report = engine.sync_all()
    return SyncReportResponse(**report.to_dict())


# ---------------------------------------------------------------------------
# POST /directory/sync/{account_name} -- single account
# ---------------------------------------------------------------------------


@router.post(
    "/directory/sync/{account_name}",
    response_model=IdentityResponse,
    dependencies=[Depends(_require_sync)],
)
def sync_account(request: Request, account_name: str) -> IdentityResponse:
    """Fetch one account from the directory and sync it. 404 if the directory has no such account."""
    engine: SyncEngine = request.app.state.sync_engine
    identity = engine.sync_account(account_name)
    if identity is None:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(
                code="not_found",
                message=f"Account '{account_name}' was not found in the directory.",
            ).model_dump(),
        )
    return IdentityResponse.from_identity(identity)


# ---------------------------------------------------------------------------
# GET /directory/status
# ---------------------------------------------------------------------------


@router.get("/directory/status", response_model=SyncStatusResponse, dependencies=[Depends(_require_stats)])
def sync_status(request: Request) -> SyncStatusResponse:
    """Totals, 24h sync coverage, health flag and active identities per role."""
    engine: SyncEngine = request.app.state.sync_engine
    return SyncStatusResponse(**engine.status().to_dict())


# ---------------------------------------------------------------------------
# GET /directory/test
# ---------------------------------------------------------------------------


@router.get("/directory/test", response_model=ConnectionTestResponse, dependencies=[Depends(_require_sync)])
def connection_test(request: Request) -> ConnectionTestResponse:
    """Run the connection diagnostics. Always 200; failures are in the body."""
    report = run_connection_test(request.app.state.connections)
    return ConnectionTestResponse(**report.to_dict())
