"""
auth/store.py -- SQLAlchemy Core persistence layer for synced identities.

Pattern: Repository + Data Mapper.
IdentityStore is the repository; _row_to_identity is the mapper. The sync
engine, login service and routes never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Serialization boundary:
  permissions and directory_groups are stored as JSON text. They are
  decoded here and nowhere else; permissions always come back as a
  complete PermissionMatrix regardless of what the stored JSON contains.

Failures:
  SQLAlchemyError on any read or write is re-raised as
  RecordPersistenceError so the sync engine and login flow can handle it
  without knowing about SQLAlchemy. ping() is the one exception and
  answers False instead.

Override flag rules (enforced here, not by callers):
  insert_identity()       -> manual_override = 0
  update_from_directory() -> never writes the flag; keeps role/permissions
                             of pinned rows in the same statement
  set_role_override()     -> the only path that sets it
  clear_role_override()   -> the only path that clears it

DB path: auth/dirsync_identities.db by default (Settings.database_url).

Layer rule: no imports from api/, directory/ or sync/.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, case, create_engine, event, func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import ROLE_RANK, Identity, PermissionMatrix, Role
from core.errors import RecordPersistenceError

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_identities = Table(
    "synced_users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_name", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False),
    Column("display_name", String(255), nullable=False),
    Column("role", String(30), nullable=False, server_default=Role.enduser.value),
    Column("permissions", Text, nullable=False),  # JSON PermissionMatrix
    Column("department", String(255)),
    Column("position", String(255)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("manual_override", Integer, nullable=False, server_default="0"),
    Column("directory_groups", Text, nullable=False, server_default="[]"),  # JSON list of group DNs
    Column("distinguished_name", Text),
    Column("account_control", Integer),
    Column("phone", String(64)),
    Column("office", String(255)),
    Column("manager", Text),
    Column("last_sync", String(32)),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so status reads are not blocked by a running sync.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@contextmanager
def _read_errors(action: str) -> Iterator[None]:
    """Re-raise SQLAlchemyError from a read as RecordPersistenceError."""
    try:
        yield
    except SQLAlchemyError as exc:
        raise RecordPersistenceError(f"Could not {action}: {exc}") from exc


def _directory_fields(identity: Identity) -> dict:
    """Columns that always follow the directory, override or not."""
    return {
        "email": identity.email,
        "display_name": identity.display_name,
        "department": identity.department,
        "position": identity.position,
        "is_active": 1 if identity.is_active else 0,
        "directory_groups": json.dumps(identity.directory_groups),
        "distinguished_name": identity.distinguished_name,
        "account_control": identity.account_control,
        "phone": identity.phone,
        "office": identity.office,
        "manager": identity.manager,
    }


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for Identity entities.

    Usage:
        store = IdentityStore("sqlite:///:memory:")
        identity_id = store.insert_identity(identity)
        identity = store.get_by_account_name("jdoe")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        if db_url is None:
            from core.config import get_settings

            db_url = get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_account_name(self, account_name: str) -> Identity | None:
        """Look up an identity by exact directory account name. Returns None if not found."""
        with _read_errors(f"look up identity {account_name}"), self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.account_name == account_name)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_by_id(self, identity_id: int) -> Identity | None:
        """Look up an identity by primary key. Returns None if not found."""
        with _read_errors(f"look up identity {identity_id}"), self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.id == identity_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def list_identities(self) -> list[Identity]:
        """Return all identities, most privileged role first, then by display name."""
        rank = case(
            {role.value: rank for role, rank in ROLE_RANK.items()},
            value=_identities.c.role,
            else_=len(ROLE_RANK) + 1,
        )
        with _read_errors("list identities"), self.engine.connect() as conn:
            rows = conn.execute(_identities.select().order_by(rank, _identities.c.display_name)).fetchall()
        return [_row_to_identity(r) for r in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_identity(self, identity: Identity) -> int:
        """Insert a newly synced identity and return its assigned ID.

        The override flag always starts unset, whatever the dataclass says.
        Raises RecordPersistenceError on any database failure, including a
        duplicate account name.
        """
        now = _now_iso()
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _identities.insert().values(
                        account_name=identity.account_name,
                        role=Role(identity.role).value,
                        permissions=json.dumps(identity.permissions.to_dict()),
                        manual_override=0,
                        last_sync=now,
                        created_at=now,
                        updated_at=now,
                        **_directory_fields(identity),
                    )
                )
                conn.commit()
                return result.inserted_primary_key[0]
        except SQLAlchemyError as exc:
            raise RecordPersistenceError(f"Could not insert identity {identity.account_name}: {exc}") from exc

    def update_from_directory(self, identity: Identity) -> bool:
        """Write directory-derived fields plus role/permissions for an existing account.

        role and permissions are written only where the row is not pinned;
        the check happens inside the UPDATE, so a pin committed after the
        caller read the row still holds. manual_override itself is never
        written. Returns True if a row was updated.
        """
        now = _now_iso()
        pinned = _identities.c.manual_override == 1
        values = {
            "role": case((pinned, _identities.c.role), else_=Role(identity.role).value),
            "permissions": case(
                (pinned, _identities.c.permissions),
                else_=json.dumps(identity.permissions.to_dict()),
            ),
            "last_sync": now,
            "updated_at": now,
            **_directory_fields(identity),
        }
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _identities.update().where(_identities.c.account_name == identity.account_name).values(**values)
                )
                conn.commit()
        except SQLAlchemyError as exc:
            raise RecordPersistenceError(f"Could not update identity {identity.account_name}: {exc}") from exc
        return result.rowcount > 0

    def set_role_override(self, identity_id: int, role: Role, permissions: PermissionMatrix) -> bool:
        """Assign role and permissions manually and pin them against future syncs.

        Returns True if a row was updated, False if identity_id was not found.
        """
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _identities.update()
                    .where(_identities.c.id == identity_id)
                    .values(
                        role=Role(role).value,
                        permissions=json.dumps(permissions.to_dict()),
                        manual_override=1,
                        updated_at=_now_iso(),
                    )
                )
                conn.commit()
        except SQLAlchemyError as exc:
            raise RecordPersistenceError(f"Could not assign role to identity {identity_id}: {exc}") from exc
        return result.rowcount > 0

    def clear_role_override(self, identity_id: int) -> bool:
        """Unpin role/permissions so the next sync re-derives them from directory groups."""
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _identities.update()
                    .where(_identities.c.id == identity_id)
                    .values(manual_override=0, updated_at=_now_iso())
                )
                conn.commit()
        except SQLAlchemyError as exc:
            raise RecordPersistenceError(f"Could not clear role override for identity {identity_id}: {exc}") from exc
        return result.rowcount > 0

    def update_last_login(self, identity_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given identity."""
        try:
            with self.engine.connect() as conn:
                conn.execute(_identities.update().where(_identities.c.id == identity_id).values(last_login=_now_iso()))
                conn.commit()
        except SQLAlchemyError as exc:
            raise RecordPersistenceError(f"Could not record login for identity {identity_id}: {exc}") from exc

    # ------------------------------------------------------------------
    # Status queries
    # ------------------------------------------------------------------

    def count_identities(self) -> int:
        with _read_errors("count identities"), self.engine.connect() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM synced_users")).scalar()
        return result or 0

    def count_active(self) -> int:
        with _read_errors("count active identities"), self.engine.connect() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM synced_users WHERE is_active = 1")).scalar()
        return result or 0

    def count_active_admins(self) -> int:
        """Return the number of active admin identities (last-admin guard)."""
        with _read_errors("count active admins"), self.engine.connect() as conn:
            result = conn.execute(
                text("SELECT COUNT(*) FROM synced_users WHERE role = :role AND is_active = 1"),
                {"role": Role.admin.value},
            ).scalar()
        return result or 0

    def count_synced_since(self, since_iso: str) -> int:
        """Count identities whose last_sync is at or after the given ISO timestamp.

        ISO 8601 UTC strings from _now_iso() sort lexicographically in
        chronological order, so a plain string comparison is correct.
        """
        with _read_errors("count synced identities"), self.engine.connect() as conn:
            result = conn.execute(
                text("SELECT COUNT(*) FROM synced_users WHERE last_sync >= :since"),
                {"since": since_iso},
            ).scalar()
        return result or 0

    def last_sync_time(self) -> str | None:
        with _read_errors("read last sync time"), self.engine.connect() as conn:
            return conn.execute(select(func.max(_identities.c.last_sync))).scalar()

    def role_distribution(self) -> dict[str, int]:
        """Count active identities per role. Every role is present, zero-filled."""
        distribution = {role.value: 0 for role in Role}
        with _read_errors("read role distribution"), self.engine.connect() as conn:
            rows = conn.execute(
                text("SELECT role, COUNT(*) FROM synced_users WHERE is_active = 1 GROUP BY role")
            ).fetchall()
        for role, count in rows:
            if role in distribution:
                distribution[role] = count
        return distribution

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            return False

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    try:
        permissions_data = json.loads(row.permissions) if row.permissions else {}
    except ValueError:
        permissions_data = {}
    try:
        groups = json.loads(row.directory_groups) if row.directory_groups else []
    except ValueError:
        groups = []
    return Identity(
        id=row.id,
        account_name=row.account_name,
        email=row.email,
        display_name=row.display_name,
        role=Role(row.role),
        permissions=PermissionMatrix.from_dict(permissions_data),
        department=row.department,
        position=row.position,
        is_active=bool(row.is_active),
        manual_override=bool(row.manual_override),
        directory_groups=groups,
        distinguished_name=row.distinguished_name,
        account_control=row.account_control,
        phone=row.phone,
        office=row.office,
        manager=row.manager,
        last_sync=row.last_sync,
        last_login=row.last_login,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
