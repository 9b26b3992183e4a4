"""
auth/login.py -- End-to-end directory login.

Sequence:
  1. user-level bind as the supplied account (the credential check)
  2. admin session -> fetch the account's full attributes
  3. sync them into the identity store
  4. refuse inactive identities
  5. issue a session token
  6. stamp last_login and return the identity as stored

Every failure collapses to None. Callers cannot tell a wrong password from
an unknown account or a directory outage; the distinction only reaches the
log. Identity store failures (RecordPersistenceError) collapse the same way.
Nothing is written to the store before step 1 succeeds.

Layer rule: this module is the composition point of the auth/ package and
is the only one allowed to import sync/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auth.models import Identity
from auth.tokens import create_session_token
from core.errors import DirectorySyncError
from directory.connection import DirectoryConnectionManager
from directory.query import fetch_user_by_account_name
from sync.engine import SyncEngine

logger = logging.getLogger("dirsync.auth.login")


@dataclass(frozen=True)
class LoginResult:
    identity: Identity
    token: str


class LoginService:
    """Directory-backed login.

    Usage:
        service = LoginService(connections, engine)
        result = service.login("jdoe", "secret")
        if result is None: ...  # uniform failure
    """

    def __init__(self, connections: DirectoryConnectionManager, engine: SyncEngine) -> None:
        self.connections = connections
        self.engine = engine

    def login(self, account_name: str, password: str) -> LoginResult | None:
        account_name = (account_name or "").strip()
        if not self.connections.verify_user_credential(account_name, password):
            return None

        try:
            with self.connections.admin_session() as conn:
                attrs = fetch_user_by_account_name(conn, self.connections.base_dn, account_name)
            if attrs is None:
                logger.warning("Account %s authenticated but was not found by the admin search", account_name)
                return None

            identity = self.engine.sync_one(attrs)
            if not identity.is_active:
                logger.info("Login refused for disabled account %s", identity.account_name)
                return None

            token = create_session_token(identity)
            self.engine.store.update_last_login(identity.id)
            identity = self.engine.store.get_by_id(identity.id) or identity
        except DirectorySyncError as exc:
            logger.error("Login for %s failed after credential check: %s", account_name, exc)
            return None

        logger.info("Login succeeded for %s (%s)", identity.account_name, identity.role.value)
        return LoginResult(identity=identity, token=token)
