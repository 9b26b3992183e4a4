"""
auth/tokens.py -- Signed session tokens for synced identities.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       the identity id, account name, contact fields, role, the complete
       permission matrix, department, position and the active flag. The
       matrix is a snapshot: verifying a token reproduces exactly the
       permissions stored on the identity when the token was issued, even if
       the identity has been re-synced since.

  Validity: fixed window from issuance (Settings.token_expire_seconds,
       24h by default). Tokens are never mutated or refreshed in place.

  Issuer: every token carries `iss`, and decode rejects any other issuer so
       tokens minted by another service sharing the secret are not accepted.

  Verification: decode_session_token() raises TokenInvalidError on any
       failure (bad signature, expired, wrong issuer, malformed payload,
       missing claims). "No token at all" is the caller's concern -- see
       auth/dependencies.py.

  SECRET_KEY: sourced from core.config.get_settings(). The Settings class
       validates the key at startup.

Layer rule: no imports from api/, directory/ or sync/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.models import Identity, PermissionMatrix, SessionClaims
from core.config import get_settings
from core.errors import TokenInvalidError

logger = logging.getLogger("dirsync.auth.tokens")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

_REQUIRED_CLAIMS = ("sub", "user_id", "role", "permissions", "iat", "exp")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_session_token(identity: Identity, expire_seconds: int = 0) -> str:
    """Encode a signed session token for a persisted identity.

    Args:
        identity:       The identity as stored (must have an id).
        expire_seconds: Validity window in seconds. If 0 (default), uses
                        Settings.token_expire_seconds.
    """
    if identity.id is None:
        raise ValueError("Cannot issue a session token for an unsaved identity")
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    now = datetime.now(timezone.utc)
    payload = {
        "sub": identity.account_name,
        "user_id": identity.id,
        "email": identity.email,
        "display_name": identity.display_name,
        "role": getattr(identity.role, "value", identity.role),
        "permissions": identity.permissions.to_dict(),
        "department": identity.department,
        "position": identity.position,
        "is_active": identity.is_active,
        "iss": _settings.token_issuer,
        "iat": now,
        "exp": now + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_session_token(token: str) -> SessionClaims:
    """Verify a session token and return its claims.

    Raises TokenInvalidError on any failure. The reason is logged at DEBUG
    only; callers get the same error type whatever went wrong.
    """
    try:
        payload = jwt.decode(
            token,
            _settings.secret_key,
            algorithms=[_ALGORITHM],
            issuer=_settings.token_issuer,
        )
    except JWTError as exc:
        logger.debug("Session token rejected: %s", exc)
        raise TokenInvalidError("Invalid or expired session token") from exc

    missing = [claim for claim in _REQUIRED_CLAIMS if claim not in payload]
    if missing or not isinstance(payload.get("permissions"), dict):
        logger.debug("Session token rejected: missing claims %s", missing)
        raise TokenInvalidError("Session token payload is malformed")

    try:
        return SessionClaims(
            user_id=int(payload["user_id"]),
            account_name=str(payload["sub"]),
            email=payload.get("email") or "",
            display_name=payload.get("display_name") or "",
            role=str(payload["role"]),
            permissions=PermissionMatrix.from_dict(payload["permissions"]),
            department=payload.get("department"),
            position=payload.get("position"),
            is_active=bool(payload.get("is_active", False)),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
        )
    except (TypeError, ValueError) as exc:
        raise TokenInvalidError("Session token payload is malformed") from exc


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the token expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )
