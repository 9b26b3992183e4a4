"""
auth/permissions.py -- Role and permission resolution from directory groups.

resolve() is a pure function: same groups in, same (role, matrix) out. It
never looks at persisted state -- honoring manual overrides is the sync
engine's job, not this module's.

Group matching is a case-insensitive substring test against the full group
DN, evaluated in strict priority order; the first matching category wins:

  1. administrators / domain admins / admin      -> admin
  2. bibliothecaire / librarian / library staff  -> librarian
  3. enregistrement / cataloging / circulation   -> registration
  4. anything else                               -> enduser
"""

from __future__ import annotations

from collections.abc import Iterable

from auth.models import (
    AcademicDocumentPermissions,
    BookPermissions,
    LoanPermissions,
    PermissionMatrix,
    ReservationPermissions,
    Role,
    SystemPermissions,
    UserPermissions,
)

ADMIN_GROUP_MARKERS = ("administrators", "domain admins", "admin")
LIBRARY_STAFF_GROUP_MARKERS = ("bibliothecaire", "librarian", "library staff")
REGISTRATION_GROUP_MARKERS = ("enregistrement", "cataloging", "circulation")

ADMIN_PERMISSIONS = PermissionMatrix.full()

LIBRARIAN_PERMISSIONS = PermissionMatrix(
    books=BookPermissions(view=True, create=True, edit=True, delete=False, manage_copies=True),
    users=UserPermissions(view=True, create=False, edit=True, delete=False, manage_roles=False),
    loans=LoanPermissions(view=True, create=True, edit=True, delete=False, extend=True, force_return=True),
    reservations=ReservationPermissions(view=True, create=True, edit=True, delete=False, manage_queue=True),
    academic_documents=AcademicDocumentPermissions(view=True, create=True, edit=True, delete=False, upload=True),
    system=SystemPermissions(view_stats=True),
)

REGISTRATION_PERMISSIONS = PermissionMatrix(
    books=BookPermissions(view=True, create=True, edit=True, delete=False, manage_copies=True),
    users=UserPermissions(view=True, create=True, edit=True, delete=False, manage_roles=False),
    loans=LoanPermissions(view=True, create=True, edit=True, delete=False, extend=True, force_return=False),
    reservations=ReservationPermissions(view=True, create=True, edit=True, delete=False, manage_queue=False),
    academic_documents=AcademicDocumentPermissions(view=True, create=True, edit=True, delete=False, upload=True),
    system=SystemPermissions(),
)

ENDUSER_PERMISSIONS = PermissionMatrix(
    books=BookPermissions(view=True),
    users=UserPermissions(),
    loans=LoanPermissions(view=True),
    reservations=ReservationPermissions(view=True, create=True),
    academic_documents=AcademicDocumentPermissions(view=True),
    system=SystemPermissions(),
)

# circulation has no group category of its own; manual assignment gets the
# registration matrix.
_ROLE_PERMISSIONS: dict[Role, PermissionMatrix] = {
    Role.admin: ADMIN_PERMISSIONS,
    Role.librarian: LIBRARIAN_PERMISSIONS,
    Role.circulation: REGISTRATION_PERMISSIONS,
    Role.registration: REGISTRATION_PERMISSIONS,
    Role.enduser: ENDUSER_PERMISSIONS,
}

_GROUP_CATEGORIES: tuple[tuple[tuple[str, ...], Role], ...] = (
    (ADMIN_GROUP_MARKERS, Role.admin),
    (LIBRARY_STAFF_GROUP_MARKERS, Role.librarian),
    (REGISTRATION_GROUP_MARKERS, Role.registration),
)


def permissions_for_role(role: Role | str) -> PermissionMatrix:
    """Return the default matrix for a role. Raises ValueError for an unknown role."""
    return _ROLE_PERMISSIONS[Role(role)]


def resolve(groups: Iterable[str]) -> tuple[Role, PermissionMatrix]:
    """Map group memberships to (role, permission matrix)."""
    lowered = [g.lower() for g in groups if g]
    for markers, role in _GROUP_CATEGORIES:
        if any(marker in group for group in lowered for marker in markers):
            return role, _ROLE_PERMISSIONS[role]
    return Role.enduser, ENDUSER_PERMISSIONS


def has_permission(permissions: PermissionMatrix, module: str, action: str) -> bool:
    """Return True if the matrix grants module.action; unknown keys are a KeyError."""
    return permissions.allows(module, action)
