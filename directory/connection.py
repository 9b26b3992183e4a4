"""
directory/connection.py -- Directory sessions: admin binds and user credential checks.

Every session is opened fresh for one logical operation and closed before
that operation returns. There is no pooling; the only state that survives
between calls is the active endpoint (updated by discovery) and the order of
admin bind formats (updated by promotion). Both are best-effort caches --
losing them on restart only costs one more probe/bind sequence.

Admin bind strategy:
  Active Directory accepts the same administrative principal in several
  encodings (UPN, full DN, bare sAMAccountName, DOMAIN\\name) and which ones
  work depends on the server's configuration. BindFormatOrder tries them in
  priority order and moves the first one that binds to the front, so the
  next session binds on the first attempt.

User credential checks:
  A user-level bind as the supplied principal is the credential check. A
  rejected bind is an expected outcome and returns False; it is never raised
  to the caller, and the short-lived session is always released.

Layer rule: no imports from api/, auth/ or sync/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager

from ldap3 import NONE, Connection, Server
from ldap3.core.exceptions import LDAPException

from core.config import Settings, get_settings
from core.errors import BindExhaustedError, ConnectivityError, InvalidCredentialError
from directory.models import DirectoryEndpoint
from directory.probe import EndpointDiscovery, Prober, probe

logger = logging.getLogger("dirsync.directory.connection")

ConnectionFactory = Callable[[DirectoryEndpoint, str, str], Connection]


# ---------------------------------------------------------------------------
# Admin bind formats
# ---------------------------------------------------------------------------


def admin_bind_formats(admin_user: str, base_dn: str, domain: str = "", upn_suffix: str = "") -> list[str]:
    """Return the encodings of one admin principal, most specific first.

    >>> admin_bind_formats("administrator@corp.example", "DC=corp,DC=example", "CORP")
    ['administrator@corp.example', 'CN=administrator,CN=Users,DC=corp,DC=example', 'administrator', 'CORP\\\\administrator']

    A value that is already a DN is tried verbatim before anything derived.
    """
    formats: list[str] = []
    if "=" in admin_user:
        formats.append(admin_user)
        short = admin_user.split(",")[0].split("=", 1)[1]
    elif "\\" in admin_user:
        formats.append(admin_user)
        short = admin_user.split("\\", 1)[1]
    else:
        short = admin_user.split("@")[0]

    if "@" in admin_user:
        formats.append(admin_user)
    elif upn_suffix:
        formats.append(f"{short}@{upn_suffix}")
    formats.append(f"CN={short},CN=Users,{base_dn}")
    formats.append(short)
    if domain:
        formats.append(f"{domain}\\{short}")
    return list(dict.fromkeys(formats))


class BindFormatOrder:
    """Ordered list of bind principals with promote-to-front on success.

    Iteration works on a snapshot, so promoting inside a loop over the
    order is safe.
    """

    def __init__(self, formats: Iterable[str]) -> None:
        self._formats: list[str] = list(dict.fromkeys(formats))

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._formats))

    def __len__(self) -> int:
        return len(self._formats)

    @property
    def formats(self) -> list[str]:
        return list(self._formats)

    @property
    def preferred(self) -> str | None:
        return self._formats[0] if self._formats else None

    def promote(self, fmt: str) -> None:
        """Move `fmt` to the front. Unknown formats are ignored."""
        if fmt in self._formats:
            self._formats.remove(fmt)
            self._formats.insert(0, fmt)


# ---------------------------------------------------------------------------
# Session helpers
# ---------------------------------------------------------------------------


def close_session(conn: Connection) -> None:
    """Unbind and close a session. Errors during teardown are logged, not raised."""
    try:
        conn.unbind()
    except LDAPException as exc:
        logger.debug("Error while closing directory session: %s", exc)


class DirectoryConnectionManager:
    """Opens admin and user-level directory sessions.

    Usage:
        manager = DirectoryConnectionManager(settings)
        with manager.admin_session() as conn:
            ...
        manager.verify_user_credential("jdoe", "secret")

    connection_factory builds an unbound ldap3 Connection for (endpoint,
    principal, password); tests inject fakes here. prober and clock are
    passed through to endpoint discovery.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        connection_factory: ConnectionFactory | None = None,
        prober: Prober = probe,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings
        configured = DirectoryEndpoint.parse(s.directory_url)
        candidates = [DirectoryEndpoint.parse(h, default=configured) for h in s.directory_candidate_hosts]

        self.base_dn = s.directory_base_dn
        self.bind_formats = BindFormatOrder(
            admin_bind_formats(s.directory_admin_user, s.directory_base_dn, s.directory_domain, s.directory_upn_suffix)
        )
        self._prober = prober
        self._connection_factory = connection_factory or self._build_connection
        self.discovery = EndpointDiscovery(
            candidates,
            cooldown=s.directory_discovery_cooldown,
            timeout=s.directory_probe_timeout,
            prober=prober,
            clock=clock,
        )
        self.endpoint = self.discovery.resolve(configured)
        logger.info("Directory endpoint %s (base %s)", self.endpoint.url, self.base_dn)

    def _build_connection(self, endpoint: DirectoryEndpoint, user: str, password: str) -> Connection:
        server = Server(
            endpoint.host,
            port=endpoint.port,
            use_ssl=endpoint.use_ssl,
            get_info=NONE,
            connect_timeout=self.settings.directory_connect_timeout,
        )
        return Connection(
            server,
            user=user,
            password=password,
            read_only=True,
            receive_timeout=self.settings.directory_receive_timeout,
        )

    # ------------------------------------------------------------------
    # Reachability
    # ------------------------------------------------------------------

    def is_reachable(self) -> bool:
        """Probe the active endpoint. No discovery, no side effects."""
        return self._prober(self.endpoint.host, self.endpoint.port, self.settings.directory_probe_timeout)

    def ensure_reachable(self) -> None:
        """Probe the active endpoint, falling back to discovery if it is down.

        Raises ConnectivityError when neither the active endpoint nor any
        candidate (outside the discovery cooldown) accepts a connection.
        """
        if self.is_reachable():
            return
        discovered = self.discovery.rescan(self.endpoint)
        if discovered != self.endpoint:
            self.endpoint = discovered
            return
        raise ConnectivityError(self.endpoint.host, self.endpoint.port)

    # ------------------------------------------------------------------
    # Binds
    # ------------------------------------------------------------------

    def _bind(self, principal: str, password: str) -> Connection:
        """Open and bind one session. The handle is closed on every failure path."""
        conn = self._connection_factory(self.endpoint, principal, password)
        try:
            bound = conn.bind()
        except LDAPException:
            close_session(conn)
            raise
        if not bound:
            description = (conn.result or {}).get("description") or "invalidCredentials"
            close_session(conn)
            raise InvalidCredentialError(f"Bind rejected for {principal}: {description}")
        return conn

    def open_admin_session(self) -> Connection:
        """Return a session bound as the administrative principal.

        Tries every bind format in order and promotes the first that works.
        The caller owns the returned session and must close it -- prefer
        admin_session(), which guarantees that.

        Raises ConnectivityError if the endpoint is unreachable and
        BindExhaustedError if every format is rejected.
        """
        self.ensure_reachable()
        password = self.settings.directory_admin_password.get_secret_value()
        tried: list[str] = []
        last_error: BaseException | None = None
        for principal in self.bind_formats:
            tried.append(principal)
            try:
                conn = self._bind(principal, password)
            except (InvalidCredentialError, LDAPException) as exc:
                logger.info("Admin bind failed with format %r: %s", principal, exc)
                last_error = exc
                continue
            self.bind_formats.promote(principal)
            logger.debug("Admin bind succeeded with format %r", principal)
            return conn

        logger.error(
            "Admin bind failed with all formats (endpoint=%s, base=%s, tried=%s)",
            self.endpoint.url,
            self.base_dn,
            tried,
        )
        raise BindExhaustedError(tried, last_error)

    @contextmanager
    def admin_session(self) -> Iterator[Connection]:
        """Context manager around open_admin_session() that always closes the session."""
        conn = self.open_admin_session()
        try:
            yield conn
        finally:
            close_session(conn)

    def user_principal(self, account_name: str) -> str:
        """Return the bind principal for a user-supplied account name.

        Names already qualified (UPN, DOMAIN\\name or DN) pass through.
        Bare names get the UPN suffix, else the NetBIOS domain prefix.
        """
        if "@" in account_name or "\\" in account_name or "=" in account_name:
            return account_name
        if self.settings.directory_upn_suffix:
            return f"{account_name}@{self.settings.directory_upn_suffix}"
        if self.settings.directory_domain:
            return f"{self.settings.directory_domain}\\{account_name}"
        return account_name

    def verify_user_credential(self, account_name: str, password: str) -> bool:
        """Return True if the directory accepts a bind as this user with this password.

        An empty password is rejected without contacting the directory: LDAP
        treats a simple bind with an empty password as an anonymous bind,
        which most servers accept. Every other failure -- wrong password,
        unknown account, unreachable server -- returns False.
        """
        if not account_name or not password:
            return False
        try:
            self.ensure_reachable()
        except ConnectivityError as exc:
            logger.warning("User credential check for %s skipped: %s", account_name, exc)
            return False

        conn: Connection | None = None
        try:
            conn = self._bind(self.user_principal(account_name), password)
            return True
        except InvalidCredentialError:
            logger.info("Directory rejected credentials for %s", account_name)
            return False
        except LDAPException as exc:
            logger.warning("User bind for %s failed: %s", account_name, exc)
            return False
        finally:
            if conn is not None:
                close_session(conn)
