"""
api/routes/v1/auth.py -- Login, logout, token verification and session info.

Routes:
  POST /api/v1/auth/login   -- directory login; sets JWT cookie
  POST /api/v1/auth/logout  -- clears cookie; 200
  POST /api/v1/auth/verify  -- check a token and return its claims
  GET  /api/v1/auth/me      -- current session claims (requires auth)

Security:
  POST /login is rate-limited per client IP (Settings.login_rate_limit).
  Every login failure is the same 401 "bad_credentials": wrong password,
  unknown account, disabled account and directory outage are not told apart.
  Cache-Control: no-store on login responses.

Handlers are plain `def`: FastAPI runs them in its threadpool, so blocking
directory binds and searches never stall the event loop.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import IdentityResponse, LoginRequest, LoginResponse, SessionInfo, VerifyRequest, VerifyResponse
from auth.dependencies import get_current_claims
from auth.login import LoginService
from auth.models import SessionClaims
from auth.tokens import decode_session_token, set_auth_cookie
from core.config import get_settings
from core.errors import TokenInvalidError

# Auth policy:
# - POST /api/v1/auth/login:   public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/logout:  public -- clearing a cookie needs no prior auth
# - POST /api/v1/auth/verify:  public -- the token in the body is the credential
# - GET  /api/v1/auth/me:      requires auth (get_current_claims)
router = APIRouter()


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate against the directory, sync the account and set the JWT cookie."""
    service: LoginService = request.app.state.login_service
    result = service.login(body.username, body.password)
    if result is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    expires_in = get_settings().token_expire_seconds
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=result.token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=expires_in,
            user=IdentityResponse.from_identity(result.identity),
        ).model_dump(),
    )
    set_auth_cookie(resp, result.token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout")
async def logout() -> JSONResponse:
    """Clear the JWT cookie and end the session."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("access_token")
    return resp


@router.post("/auth/verify", response_model=VerifyResponse)
async def verify(body: VerifyRequest) -> VerifyResponse:
    """Verify a session token. Invalid tokens yield valid=false, not an error status."""
    try:
        claims = decode_session_token(body.token)
    except TokenInvalidError:
        return VerifyResponse(valid=False)
    return VerifyResponse(valid=True, claims=SessionInfo.from_claims(claims))


@router.get("/auth/me", response_model=SessionInfo)
async def me(claims: SessionClaims = Depends(get_current_claims)) -> SessionInfo:
    """Return the claims of the current session."""
    return SessionInfo.from_claims(claims)
