"""
API request and response models for the directory sync REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
sync/engine.py, which own the internal domain representation. Route handlers
map between the two.

Separation of concerns: auth/ and sync/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Identity, Role, SessionClaims

# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=1024)


class VerifyRequest(BaseModel):
    """Request body for POST /api/v1/auth/verify."""

    token: str = Field(min_length=1)


class SessionInfo(BaseModel):
    """Claims carried by a session token, as returned to clients."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    account_name: str
    email: str
    display_name: str
    role: str
    permissions: dict[str, dict[str, bool]]
    department: Optional[str] = None
    position: Optional[str] = None
    is_active: bool
    expires_at: int

    @classmethod
    def from_claims(cls, claims: SessionClaims) -> "SessionInfo":
        return cls(
            user_id=claims.user_id,
            account_name=claims.account_name,
            email=claims.email,
            display_name=claims.display_name,
            role=claims.role,
            permissions=claims.permissions.to_dict(),
            department=claims.department,
            position=claims.position,
            is_active=claims.is_active,
            expires_at=claims.expires_at,
        )


class VerifyResponse(BaseModel):
    """Response for POST /api/v1/auth/verify."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    claims: Optional[SessionInfo] = None


# ---------------------------------------------------------------------------
# Identities
# ---------------------------------------------------------------------------


class IdentityResponse(BaseModel):
    """One synced identity. Directory group DNs are included for admins."""

    model_config = ConfigDict(frozen=True)

    id: int
    account_name: str
    email: str
    display_name: str
    role: str
    permissions: dict[str, dict[str, bool]]
    department: Optional[str] = None
    position: Optional[str] = None
    is_active: bool
    manual_override: bool
    directory_groups: list[str] = Field(default_factory=list)
    phone: Optional[str] = None
    office: Optional[str] = None
    last_sync: Optional[str] = None
    last_login: Optional[str] = None

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityResponse":
        """Factory Method: the domain -> transport mapping lives beside the transport model."""
        return cls(
            id=identity.id,
            account_name=identity.account_name,
            email=identity.email,
            display_name=identity.display_name,
            role=identity.role.value,
            permissions=identity.permissions.to_dict(),
            department=identity.department,
            position=identity.position,
            is_active=identity.is_active,
            manual_override=identity.manual_override,
            directory_groups=identity.directory_groups,
            phone=identity.phone,
            office=identity.office,
            last_sync=identity.last_sync,
            last_login=identity.last_login,
        )


class LoginResponse(BaseModel):
    """Response for a successful POST /api/v1/auth/login."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: IdentityResponse


class RoleAssignment(BaseModel):
    """Request body for PUT /api/v1/identities/{id}/role."""

    role: Role


# ---------------------------------------------------------------------------
# Directory sync
# ---------------------------------------------------------------------------


class SyncReportResponse(BaseModel):
    """Response for POST /api/v1/directory/sync."""

    model_config = ConfigDict(frozen=True)

    total_users: int
    new_users: int
    updated_users: int
    errors: int
    error_details: list[str] = Field(default_factory=list)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


class SyncStatusResponse(BaseModel):
    """Response for GET /api/v1/directory/status."""

    model_config = ConfigDict(frozen=True)

    total_users: int
    active_users: int
    recently_synced: int
    last_sync_time: Optional[str] = None
    sync_health: str
    role_distribution: dict[str, int]


class SampleUser(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_name: str
    display_name: Optional[str] = None
    mail: Optional[str] = None


class ConnectionTestResponse(BaseModel):
    """Response for GET /api/v1/directory/test."""

    model_config = ConfigDict(frozen=True)

    ok: bool
    endpoint: str
    base_dn: str
    reachable: bool
    bind_ok: bool
    bind_format: Optional[str] = None
    sample_users: list[SampleUser] = Field(default_factory=list)
    error: Optional[str] = None
