"""
auth/dependencies.py -- FastAPI Depends() helpers for session authentication.

Two transports are checked in priority order:
  1. JWT cookie ("access_token") -- set by POST /auth/login.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on SessionClaims after verification. Claims are trusted as
issued: the permission matrix in the token is the one enforced, even if the
identity has been re-synced since.

try_get_current_claims() is the soft variant (returns None on failure).
get_current_claims() wraps it and raises HTTP 401 if unauthenticated.
require_permission(module, action) builds a dependency that raises HTTP 403
unless the claims grant module.action.

Layer rule: may import from fastapi (Depends/HTTPException/Request)
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.models import PermissionMatrix, SessionClaims
from auth.tokens import decode_session_token
from core.errors import TokenInvalidError


def extract_token(request: Request) -> str | None:
    """Return the raw session token from the cookie or Bearer header, if any."""
    token: str | None = request.cookies.get("access_token")
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def try_get_current_claims(request: Request) -> SessionClaims | None:
    """Authenticate the request. Returns None on any failure, never raises."""
    token = extract_token(request)
    if not token:
        return None
    try:
        claims = decode_session_token(token)
    except TokenInvalidError:
        return None
    return claims if claims.is_active else None


def get_current_claims(request: Request) -> SessionClaims:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: SessionClaims = Depends(get_current_claims)): ...
    """
    claims = try_get_current_claims(request)
    if claims is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return claims


def require_permission(module: str, action: str) -> Callable[[Request], SessionClaims]:
    """Build a dependency that requires module.action in the session's matrix.

    The pair is checked against the matrix shape here, at route declaration
    time, so a typo fails on import instead of silently denying every call.
    """
    if action not in PermissionMatrix.shape().get(module, []):
        raise KeyError(f"Unknown permission {module}.{action}")

    def dependency(request: Request) -> SessionClaims:
        claims = get_current_claims(request)
        if not claims.permissions.allows(module, action):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"Permission {module}.{action} required."},
            )
        return claims

    return dependency
