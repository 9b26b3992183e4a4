"""
tests/conftest.py -- Shared fixtures for directory sync tests.

This module provides:
  - FakeDirectory / FakeConnection: an in-memory directory server that
    speaks the slice of the ldap3 Connection API the directory layer uses
    (bind, unbind, paged search, result, response)
  - settings / store / directory / connections / engine: per-test unit
    fixtures, each test gets a fresh identity store
  - api_client: TestClient over the real FastAPI app with a patched
    lifespan wiring fake-directory-backed services into app.state

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.

DEBUG and a fixed SECRET_KEY must be set before any first-party import.
The fixed key keeps tokens verifiable after a test calls
get_settings.cache_clear().
"""

from __future__ import annotations

import asyncio
import os
import re
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set these before any first-party import; get_settings() is cached
# on first call.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "dirsync-test-secret-" + "0" * 44)
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient
from ldap3.core.exceptions import LDAPException

from api.main import app
from auth.login import LoginService
from auth.store import IdentityStore
from auth.tokens import create_session_token
from core.config import Settings
from directory.connection import DirectoryConnectionManager
from directory.query import ALL_USERS_FILTER, PAGED_RESULTS_OID
from sync.engine import SyncEngine

ADMIN_PASSWORD = "directory-admin-secret"
BASE_DN = "DC=example,DC=org"

ADMINS_GROUP = "CN=Administrators,CN=Builtin,DC=example,DC=org"
LIBRARIANS_GROUP = "CN=Bibliothecaire,OU=Groups,DC=example,DC=org"
CATALOGING_GROUP = "CN=Cataloging Team,OU=Groups,DC=example,DC=org"
STUDENTS_GROUP = "CN=Students,OU=Groups,DC=example,DC=org"

_ACCOUNT_FILTER_RE = re.compile(r"^\(sAMAccountName=(?P<name>[^)]*)\)$")


def _account_of(entry: dict) -> str:
    names = (entry.get("attributes") or {}).get("sAMAccountName") or [""]
    return names[0].lower()


# ---------------------------------------------------------------------------
# Fake directory
# ---------------------------------------------------------------------------


class FakeConnection:
    """One session against FakeDirectory. Mirrors ldap3.Connection's result/response shape.

    Paged searches follow ldap3's search(paged_size=, paged_cookie=)
    contract: one page per call, the next cookie reported under the paged
    results control in conn.result, and failures either raised or reported
    only through conn.result["result"].
    """

    def __init__(self, directory: FakeDirectory, user: str, password: str) -> None:
        self.directory = directory
        self.user = user
        self.password = password
        self.bound = False
        self.closed = False
        self.result: dict = {}
        self.response: list = []
        self.searches: list[dict] = []

    def bind(self) -> bool:
        self.directory.bind_attempts.append(self.user)
        if self.directory.bind_error is not None:
            raise self.directory.bind_error
        self.bound = self.directory.accepts(self.user, self.password)
        self.result = {"result": 0, "description": "success"} if self.bound else {"result": 49, "description": "invalidCredentials"}
        return self.bound

    def unbind(self) -> bool:
        self.closed = True
        self.bound = False
        return True

    def search(
        self,
        search_base,
        search_filter,
        search_scope=None,
        attributes=None,
        size_limit=0,
        paged_size=None,
        paged_cookie=None,
    ):
        self.searches.append({"filter": search_filter, "paged_size": paged_size, "paged_cookie": paged_cookie})
        if self.directory.search_error is not None:
            raise self.directory.search_error
        entries = self.directory.entries_for(search_filter)
        if paged_size:
            return self._page(entries, paged_size, paged_cookie)
        if size_limit:
            entries = entries[:size_limit]
        self.response = entries
        self.result = {"result": self.directory.search_result_code, "description": "fake"}
        return bool(entries)

    def _page(self, entries: list[dict], paged_size: int, paged_cookie) -> bool:
        offset = int(paged_cookie) if paged_cookie else 0
        fail_at = self.directory.stream_error_after
        if fail_at is not None and offset >= fail_at:
            if self.directory.stream_error_code is None:
                raise LDAPException("connection reset during paged search")
            self.response = []
            self.result = {"result": self.directory.stream_error_code, "description": "fake page failure"}
            return False
        page = entries[offset:offset + paged_size]
        following = offset + paged_size
        cookie = str(following).encode() if following < len(entries) else b""
        self.response = page
        self.result = {
            "result": self.directory.search_result_code,
            "description": "fake",
            "controls": {PAGED_RESULTS_OID: {"value": {"size": len(entries), "cookie": cookie}}},
        }
        return bool(page)


class FakeDirectory:
    """In-memory directory: users with passwords and groups, one admin principal set.

    Knobs for failure tests: bind_error (raised by every bind), search_error
    (raised by search), stream_error_after (a paged search request for a page
    starting at or beyond that index fails: it raises, or when
    stream_error_code is set, reports that code in conn.result instead),
    search_result_code (reported in conn.result after search).
    """

    def __init__(self, admin_principals=("administrator@example.org",), admin_password: str = ADMIN_PASSWORD) -> None:
        self.admin_principals = set(admin_principals)
        self.admin_password = admin_password
        self.entries: list[dict] = []
        self.passwords: dict[str, str] = {}
        self.bind_error: Exception | None = None
        self.search_error: Exception | None = None
        self.stream_error_after: int | None = None
        self.stream_error_code: int | None = None
        self.search_result_code = 0
        self.bind_attempts: list[str] = []
        self.connections: list[FakeConnection] = []

    # -- population ---------------------------------------------------------

    def add_user(
        self,
        account: str,
        password: str | None = None,
        *,
        groups=(),
        uac: int = 512,
        mail: str | None = None,
        display_name: str | None = None,
        department: str | None = None,
        title: str | None = None,
    ) -> dict:
        dn = f"CN={account},OU=People,{BASE_DN}"
        attributes = {
            "sAMAccountName": [account],
            "userAccountControl": [str(uac)],
            "memberOf": list(groups),
            "mail": [mail] if mail else [],
            "displayName": display_name,
            "department": [department] if department else [],
            "title": title,
        }
        entry = {"type": "searchResEntry", "dn": dn, "attributes": attributes}
        self.entries.append(entry)
        if password is not None:
            self.passwords[account.lower()] = password
        return entry

    def set_groups(self, account: str, groups) -> None:
        self._entry(account)["attributes"]["memberOf"] = list(groups)

    def set_account_control(self, account: str, uac: int) -> None:
        self._entry(account)["attributes"]["userAccountControl"] = [str(uac)]

    def _entry(self, account: str) -> dict:
        for entry in self.entries:
            if _account_of(entry) == account.lower():
                return entry
        raise KeyError(account)

    # -- protocol -----------------------------------------------------------

    def accepts(self, principal: str, password: str) -> bool:
        if principal in self.admin_principals:
            return password == self.admin_password
        account = principal.split("@")[0]
        if "\\" in account:
            account = account.split("\\", 1)[1]
        expected = self.passwords.get(account.lower())
        return bool(password) and expected == password

    def entries_for(self, search_filter: str) -> list[dict]:
        if search_filter == ALL_USERS_FILTER:
            return list(self.entries)
        match = _ACCOUNT_FILTER_RE.match(search_filter)
        if match is None:
            return []
        name = match.group("name").lower()
        return [e for e in self.entries if _account_of(e) == name]

    def connection_factory(self, endpoint, user: str, password: str) -> FakeConnection:
        conn = FakeConnection(self, user, password)
        self.connections.append(conn)
        return conn

    @property
    def open_connections(self) -> list[FakeConnection]:
        return [c for c in self.connections if not c.closed]


class Reachability:
    """Prober whose answer per host can be flipped by the test."""

    def __init__(self, default: bool = True) -> None:
        self.default = default
        self.hosts: dict[str, bool] = {}
        self.calls: list[tuple[str, int]] = []

    def __call__(self, host: str, port: int, timeout: float) -> bool:
        self.calls.append((host, port))
        return self.hosts.get(host, self.default)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": "s" * 64,
        "directory_url": "ldap://dc01.example.org:389",
        "directory_base_dn": BASE_DN,
        "directory_admin_user": "administrator@example.org",
        "directory_admin_password": ADMIN_PASSWORD,
        "directory_domain": "EXAMPLE",
        "directory_upn_suffix": "example.org",
        "directory_candidate_hosts": [],
    }
    values.update(overrides)
    return Settings(**values)


def seed_directory(directory: FakeDirectory) -> FakeDirectory:
    """alice: admin, bob: librarian, carol: plain user, dave: disabled."""
    directory.add_user(
        "alice",
        "alice-pw",
        groups=[ADMINS_GROUP],
        mail="alice@example.org",
        display_name="Alice Admin",
        department="IT",
        title="Sysadmin",
    )
    directory.add_user("bob", "bob-pw", groups=[LIBRARIANS_GROUP], mail="bob@example.org", display_name="Bob Books")
    directory.add_user("carol", "carol-pw", groups=[STUDENTS_GROUP], display_name="Carol Student")
    directory.add_user("dave", "dave-pw", uac=514, mail="dave@example.org", display_name="Dave Disabled")
    return directory


def memory_db_url(name: str) -> str:
    return f"sqlite:///file:dirsync_{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> Generator[IdentityStore, None, None]:
    s = IdentityStore(db_url=memory_db_url("unit"))
    yield s
    s.close()


@pytest.fixture
def directory() -> FakeDirectory:
    return seed_directory(FakeDirectory())


@pytest.fixture
def reachability() -> Reachability:
    return Reachability()


@pytest.fixture
def connections(settings: Settings, directory: FakeDirectory, reachability: Reachability) -> DirectoryConnectionManager:
    return DirectoryConnectionManager(
        settings,
        connection_factory=directory.connection_factory,
        prober=reachability,
    )


@pytest.fixture
def engine(store: IdentityStore, connections: DirectoryConnectionManager) -> SyncEngine:
    return SyncEngine(store, connections)


# ---------------------------------------------------------------------------
# API fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    directory: FakeDirectory
    reachability: Reachability
    store: IdentityStore
    admin_token: str
    user_token: str

    def headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}


def _patch_lifespan(store: IdentityStore, connections: DirectoryConnectionManager, engine: SyncEngine):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-built test services into app.state so routes talk to the fake
    directory and an isolated in-memory store.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.identity_store = store
        app.state.connections = connections
        app.state.sync_engine = engine
        app.state.login_service = LoginService(connections, engine)
        await asyncio.sleep(0)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness around the real app.

    alice (directory admin) and carol (plain user) are synced before the
    client starts; their tokens are minted directly.
    """
    directory = seed_directory(FakeDirectory())
    reachability = Reachability()
    store = IdentityStore(db_url=memory_db_url("api"))
    connections = DirectoryConnectionManager(
        make_settings(),
        connection_factory=directory.connection_factory,
        prober=reachability,
    )
    engine = SyncEngine(store, connections)

    admin = engine.sync_account("alice")
    user = engine.sync_account("carol")
    admin_token = create_session_token(admin, expire_seconds=3600)
    user_token = create_session_token(user, expire_seconds=3600)

    app.router.lifespan_context = _patch_lifespan(store, connections, engine)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client, directory, reachability, store, admin_token, user_token)

    store.close()
