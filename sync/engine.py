"""
sync/engine.py -- Reconcile directory users into the local identity store.

Pattern: Service over a Repository. SyncEngine owns the merge rules; the
IdentityStore owns SQL; the directory layer owns sessions and searches.

Merge rules for one directory entry (sync_one):
  - role/permissions come from auth.permissions.resolve(groups), unless the
    stored identity has manual_override set, in which case the stored
    role/permissions are kept verbatim.
  - every other field (email, display name, department, position, active
    flag, group snapshot, DN, contact fields) always follows the directory.
  - a sync never writes manual_override. The store re-checks the flag
    inside the UPDATE itself, so a pin committed while an entry is being
    merged still wins.
  - last_sync is stamped on every write.

Batch semantics (sync_all):
  One admin session for the whole run, closed exactly once. Entries arrive
  raw, in server order; each is normalized and merged inside its own error
  boundary and recorded as a SyncOutcome, so one bad entry never aborts the
  batch. Connectivity and bind failures before the first entry propagate --
  there is no partial result to return.

Concurrency: nothing here serializes concurrent sync_all() runs. Two
overlapping runs race per identity and the last write wins at the store.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from auth.models import Identity, PermissionMatrix, Role
from auth.permissions import resolve
from auth.store import IdentityStore
from core.config import Settings, get_settings
from core.errors import DirectoryQueryError, DirectorySyncError, RecordPersistenceError
from directory.connection import DirectoryConnectionManager
from directory.models import DirectoryUserAttributes
from directory.query import clean_value, fetch_user_by_account_name, iter_user_entries, to_user_attributes

logger = logging.getLogger("dirsync.sync")

Resolver = Callable[[Iterable[str]], tuple[Role, PermissionMatrix]]

# Share of identities that must have synced in the last 24h for "healthy".
_HEALTHY_SYNC_RATIO = 0.8


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _entry_label(raw: Mapping[str, Any]) -> str:
    """Best available name for a raw entry, for error reporting before normalization."""
    by_key = {k.lower(): v for k, v in raw.items()}
    return clean_value(by_key.get("samaccountname")) or clean_value(by_key.get("distinguishedname")) or "<unknown>"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class SyncOutcome:
    """Result of syncing one directory entry: an identity or an error, never both."""

    account_name: str
    identity: Identity | None = None
    created: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SyncReport:
    """Aggregate of a sync_all() run, derived from its per-entry outcomes.

    aborted holds the error that ended the directory stream early, if any;
    it counts as one extra error on top of the per-entry failures.
    """

    outcomes: list[SyncOutcome] = field(default_factory=list)
    started_at: str | None = None
    finished_at: str | None = None
    aborted: str | None = None

    @property
    def total_users(self) -> int:
        return len(self.outcomes)

    @property
    def new_users(self) -> int:
        return sum(1 for o in self.outcomes if o.ok and o.created)

    @property
    def updated_users(self) -> int:
        return sum(1 for o in self.outcomes if o.ok and not o.created)

    @property
    def error_details(self) -> list[str]:
        details = [o.error for o in self.outcomes if o.error is not None]
        if self.aborted:
            details.append(self.aborted)
        return details

    @property
    def errors(self) -> int:
        return len(self.error_details)

    def to_dict(self) -> dict:
        return {
            "total_users": self.total_users,
            "new_users": self.new_users,
            "updated_users": self.updated_users,
            "errors": self.errors,
            "error_details": self.error_details,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class SyncStatus:
    total_users: int
    active_users: int
    recently_synced: int
    last_sync_time: str | None
    sync_health: str
    role_distribution: dict[str, int]

    def to_dict(self) -> dict:
        return {
            "total_users": self.total_users,
            "active_users": self.active_users,
            "recently_synced": self.recently_synced,
            "last_sync_time": self.last_sync_time,
            "sync_health": self.sync_health,
            "role_distribution": self.role_distribution,
        }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class SyncEngine:
    """Directory -> identity store reconciliation.

    Usage:
        engine = SyncEngine(store, connections)
        report = engine.sync_all()
        identity = engine.sync_account("jdoe")

    connections may be None for callers that only use sync_one() with
    attributes fetched elsewhere (tests, the login flow's own session).
    """

    def __init__(
        self,
        store: IdentityStore,
        connections: DirectoryConnectionManager | None = None,
        settings: Settings | None = None,
        resolver: Resolver = resolve,
    ) -> None:
        self.store = store
        self.connections = connections
        if settings is None:
            settings = connections.settings if connections is not None else get_settings()
        self.settings = settings
        self._resolver = resolver

    def _require_connections(self) -> DirectoryConnectionManager:
        if self.connections is None:
            raise RuntimeError("SyncEngine was created without a DirectoryConnectionManager")
        return self.connections

    # ------------------------------------------------------------------
    # Single entry
    # ------------------------------------------------------------------

    def _identity_from_directory(self, attrs: DirectoryUserAttributes, role: Role, permissions: PermissionMatrix) -> Identity:
        suffix = self.settings.directory_upn_suffix
        fallback_email = f"{attrs.account_name}@{suffix}" if suffix else ""
        return Identity(
            account_name=attrs.account_name,
            email=attrs.mail or fallback_email,
            display_name=attrs.display_name or attrs.account_name,
            role=role,
            permissions=permissions,
            department=attrs.department,
            position=attrs.title,
            is_active=attrs.is_active,
            directory_groups=list(attrs.member_of),
            distinguished_name=attrs.distinguished_name,
            account_control=attrs.account_control,
            phone=attrs.phone,
            office=attrs.office,
            manager=attrs.manager,
        )

    def _upsert(self, attrs: DirectoryUserAttributes) -> tuple[Identity, bool]:
        """Merge one entry into the store. Returns (stored identity, created)."""
        existing = self.store.get_by_account_name(attrs.account_name)
        role, permissions = self._resolver(attrs.member_of)

        if existing is not None and existing.manual_override:
            if existing.role != role:
                logger.info(
                    "Keeping manually assigned role %s for %s (directory groups imply %s)",
                    existing.role.value,
                    attrs.account_name,
                    role.value,
                )
            role, permissions = existing.role, existing.permissions

        identity = self._identity_from_directory(attrs, role, permissions)
        if existing is None:
            self.store.insert_identity(identity)
            logger.debug("Created identity %s (%s)", attrs.account_name, role.value)
        else:
            self.store.update_from_directory(identity)
            logger.debug("Updated identity %s (%s)", attrs.account_name, role.value)

        stored = self.store.get_by_account_name(attrs.account_name)
        if stored is None:
            raise RecordPersistenceError(f"Identity {attrs.account_name} missing after write")
        return stored, existing is None

    def sync_one(self, attrs: DirectoryUserAttributes) -> Identity:
        """Merge one directory entry into the store and return the stored identity."""
        identity, _created = self._upsert(attrs)
        return identity

    def sync_account(self, account_name: str) -> Identity | None:
        """Fetch one account from the directory and sync it. None if the directory has no such account."""
        connections = self._require_connections()
        with connections.admin_session() as conn:
            attrs = fetch_user_by_account_name(conn, connections.base_dn, account_name)
        if attrs is None:
            return None
        return self.sync_one(attrs)

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def _sync_entry(self, raw: Mapping[str, Any]) -> SyncOutcome:
        """Normalize and merge one raw directory entry inside its own error boundary."""
        label = _entry_label(raw)
        try:
            attrs = to_user_attributes(raw)
            label = attrs.account_name
            identity, created = self._upsert(attrs)
        except Exception as exc:
            logger.warning(
                "Sync failed for %s: %s",
                label,
                exc,
                exc_info=not isinstance(exc, DirectorySyncError),
            )
            return SyncOutcome(account_name=label, error=f"{label}: {exc}")
        return SyncOutcome(account_name=label, identity=identity, created=created)

    def sync_entries(self, entries: Iterable[Mapping[str, Any]]) -> SyncReport:
        """Sync a stream of raw directory entries in order, collecting one outcome per entry."""
        report = SyncReport(started_at=_now_iso())
        try:
            for raw in entries:
                report.outcomes.append(self._sync_entry(raw))
        except DirectoryQueryError as exc:
            logger.error("Directory stream failed after %d entries: %s", report.total_users, exc)
            report.aborted = f"Directory search aborted: {exc}"
        report.finished_at = _now_iso()
        return report

    def sync_all(self) -> SyncReport:
        """Sync every directory user over a single admin session.

        Raises ConnectivityError / BindExhaustedError if the session cannot
        be opened. Everything after that is reported, not raised.
        """
        connections = self._require_connections()
        logger.info("Full directory sync starting (endpoint=%s, base=%s)", connections.endpoint.url, connections.base_dn)
        with connections.admin_session() as conn:
            report = self.sync_entries(
                iter_user_entries(conn, connections.base_dn, page_size=self.settings.directory_page_size)
            )
        logger.info(
            "Full directory sync finished: %d total, %d new, %d updated, %d errors",
            report.total_users,
            report.new_users,
            report.updated_users,
            report.errors,
        )
        return report

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> SyncStatus:
        """Summarize store freshness: totals, 24h sync coverage and role distribution."""
        total = self.store.count_identities()
        since = (datetime.now(timezone.utc) - timedelta(hours=24)).isoformat()
        recent = self.store.count_synced_since(since)
        healthy = total > 0 and recent >= total * _HEALTHY_SYNC_RATIO
        return SyncStatus(
            total_users=total,
            active_users=self.store.count_active(),
            recently_synced=recent,
            last_sync_time=self.store.last_sync_time(),
            sync_health="healthy" if healthy else "needs_sync",
            role_distribution=self.store.role_distribution(),
        )
