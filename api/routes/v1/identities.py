"""
api/routes/v1/identities.py -- Administrator view and role overrides of synced identities.

Routes:
  GET    /identities              -- list, most privileged role first
  PUT    /identities/{id}/role    -- assign a role and pin it against syncs
  DELETE /identities/{id}/role    -- drop the pin; next sync re-derives the role

Guards: users.view for listing, users.manage_roles for both role routes.
Demoting the last active admin is refused with 409.
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import ErrorDetail, IdentityResponse, RoleAssignment
from auth.dependencies import require_permission
from auth.roles import LastAdminError, assign_role, clear_role_override
from auth.store import IdentityStore

router = APIRouter()

_require_view = require_permission("users", "view")
_require_manage_roles = require_permission("users", "manage_roles")


def _not_found(identity_id: int) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail=ErrorDetail(code="not_found", message=f"Identity {identity_id} not found.").model_dump(),
    )


@router.get("/identities", response_model=list[IdentityResponse], dependencies=[Depends(_require_view)])
def list_identities(request: Request) -> list[IdentityResponse]:
    store: IdentityStore = request.app.state.identity_store
    return [IdentityResponse.from_identity(i) for i in store.list_identities()]


@router.put(
    "/identities/{identity_id}/role",
    response_model=IdentityResponse,
    dependencies=[Depends(_require_manage_roles)],
)
def put_role(request: Request, identity_id: int, body: RoleAssignment) -> IdentityResponse:
    """Assign a role manually. Directory syncs will no longer change it."""
    store: IdentityStore = request.app.state.identity_store
    try:
        identity = assign_role(store, identity_id, body.role)
    except LastAdminError as exc:
        raise HTTPException(
            status_code=409,
            detail=ErrorDetail(code="last_admin", message=str(exc)).model_dump(),
        ) from exc
    if identity is None:
        raise _not_found(identity_id)
    return IdentityResponse.from_identity(identity)


@router.delete(
    "/identities/{identity_id}/role",
    response_model=IdentityResponse,
    dependencies=[Depends(_require_manage_roles)],
)
def delete_role_override(request: Request, identity_id: int) -> IdentityResponse:
    """Release a manual role so the next sync follows directory groups again."""
    store: IdentityStore = request.app.state.identity_store
    identity = clear_role_override(store, identity_id)
    if identity is None:
        raise _not_found(identity_id)
    return IdentityResponse.from_identity(identity)
