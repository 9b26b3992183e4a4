"""
auth/models.py -- Domain dataclasses for identities, roles and permissions.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; these classes own the domain shape.

PermissionMatrix is a typed value, not a JSON blob. It is serialized only at
the persistence boundary (auth/store.py) and the token boundary
(auth/tokens.py). from_dict() always materializes the complete shape --
every module and every action is present, missing keys read as False -- so
callers never have to treat "key absent" as "denied".

Layer rule: no imports from api/, directory/ or sync/.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any


class Role(str, Enum):
    admin = "admin"
    librarian = "librarian"
    circulation = "circulation"
    registration = "registration"
    enduser = "enduser"


# Display/listing order, most privileged first.
ROLE_RANK: dict[Role, int] = {role: rank for rank, role in enumerate(Role, start=1)}


# ---------------------------------------------------------------------------
# Permission modules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BookPermissions:
    view: bool = False
    create: bool = False
    edit: bool = False
    delete: bool = False
    manage_copies: bool = False


@dataclass(frozen=True)
class UserPermissions:
    view: bool = False
    create: bool = False
    edit: bool = False
    delete: bool = False
    manage_roles: bool = False


@dataclass(frozen=True)
class LoanPermissions:
    view: bool = False
    create: bool = False
    edit: bool = False
    delete: bool = False
    extend: bool = False
    force_return: bool = False


@dataclass(frozen=True)
class ReservationPermissions:
    view: bool = False
    create: bool = False
    edit: bool = False
    delete: bool = False
    manage_queue: bool = False


@dataclass(frozen=True)
class AcademicDocumentPermissions:
    view: bool = False
    create: bool = False
    edit: bool = False
    delete: bool = False
    upload: bool = False


@dataclass(frozen=True)
class SystemPermissions:
    view_stats: bool = False
    manage_settings: bool = False
    sync_directory: bool = False
    manage_backups: bool = False
    view_logs: bool = False


@dataclass(frozen=True)
class PermissionMatrix:
    """Complete capability matrix: six modules, each with a fixed action set."""

    books: BookPermissions = field(default_factory=BookPermissions)
    users: UserPermissions = field(default_factory=UserPermissions)
    loans: LoanPermissions = field(default_factory=LoanPermissions)
    reservations: ReservationPermissions = field(default_factory=ReservationPermissions)
    academic_documents: AcademicDocumentPermissions = field(default_factory=AcademicDocumentPermissions)
    system: SystemPermissions = field(default_factory=SystemPermissions)

    @classmethod
    def module_types(cls) -> dict[str, type]:
        return {f.name: f.default_factory for f in fields(cls)}  # type: ignore[misc]

    @classmethod
    def shape(cls) -> dict[str, list[str]]:
        """Return {module: [action, ...]} for every module in the matrix."""
        return {name: [f.name for f in fields(module)] for name, module in cls.module_types().items()}

    @classmethod
    def full(cls) -> PermissionMatrix:
        """A matrix with every action granted."""
        return cls(**{name: module(**{f.name: True for f in fields(module)}) for name, module in cls.module_types().items()})

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PermissionMatrix:
        """Materialize a matrix from serialized data. Unknown keys are dropped, missing ones are False."""
        data = data or {}
        modules = {}
        for name, module in cls.module_types().items():
            raw = data.get(name) or {}
            modules[name] = module(**{f.name: raw.get(f.name) is True for f in fields(module)})
        return cls(**modules)

    def to_dict(self) -> dict[str, dict[str, bool]]:
        return asdict(self)

    def allows(self, module: str, action: str) -> bool:
        """Return the flag for module.action. Raises KeyError for an unknown module or action."""
        shape = self.shape()
        if module not in shape or action not in shape[module]:
            raise KeyError(f"Unknown permission {module}.{action}")
        return getattr(getattr(self, module), action)


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@dataclass
class Identity:
    """A directory account reconciled into the local identity store.

    manual_override: once set (by an administrator assigning a role), sync
    never again overwrites role or permissions from directory data. Every
    other field keeps following the directory.

    Timestamps are ISO 8601 UTC strings, None until first set.
    """

    account_name: str
    email: str
    display_name: str
    role: Role
    permissions: PermissionMatrix
    id: int | None = None
    department: str | None = None
    position: str | None = None
    is_active: bool = True
    manual_override: bool = False
    directory_groups: list[str] = field(default_factory=list)
    distinguished_name: str | None = None
    account_control: int | None = None
    phone: str | None = None
    office: str | None = None
    manager: str | None = None
    last_sync: str | None = None
    last_login: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class SessionClaims:
    """Decoded contents of a valid session token.

    permissions is the snapshot taken at issuance, not re-derived.
    """

    user_id: int
    account_name: str
    email: str
    display_name: str
    role: str
    permissions: PermissionMatrix
    department: str | None
    position: str | None
    is_active: bool
    issued_at: int
    expires_at: int
