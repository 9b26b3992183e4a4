"""
auth/roles.py -- Administrator role assignment with sync-proof overrides.

assign_role() is the only way an identity's role departs from what its
directory groups imply. It writes the role's default permission matrix and
sets manual_override, after which directory syncs leave role and
permissions alone until clear_role_override() is called.

Guard: the last active admin cannot be demoted, otherwise nobody would be
left holding users.manage_roles to undo it.
"""

from __future__ import annotations

import logging

from auth.models import Identity, Role
from auth.permissions import permissions_for_role
from auth.store import IdentityStore

logger = logging.getLogger("dirsync.auth.roles")


class LastAdminError(ValueError):
    """Demoting this identity would leave no active admin."""


def assign_role(store: IdentityStore, identity_id: int, role: Role | str) -> Identity | None:
    """Pin `role` (and its default permissions) on an identity.

    Returns the updated identity, or None if identity_id does not exist.
    Raises ValueError for an unknown role and LastAdminError when the
    change would demote the last active admin.
    """
    new_role = Role(role)
    identity = store.get_by_id(identity_id)
    if identity is None:
        return None

    if (
        identity.role == Role.admin
        and new_role != Role.admin
        and identity.is_active
        and store.count_active_admins() <= 1
    ):
        raise LastAdminError("Cannot demote the last active admin.")

    store.set_role_override(identity_id, new_role, permissions_for_role(new_role))
    logger.info("Role of %s set to %s (manual override)", identity.account_name, new_role.value)
    return store.get_by_id(identity_id)


def clear_role_override(store: IdentityStore, identity_id: int) -> Identity | None:
    """Let the next sync re-derive role/permissions from directory groups."""
    if not store.clear_role_override(identity_id):
        return None
    identity = store.get_by_id(identity_id)
    if identity is not None:
        logger.info("Manual role override cleared for %s", identity.account_name)
    return identity
