"""
directory/models.py -- Dataclasses for directory endpoints and user attributes.

Pattern: Data class (pure data container, near-zero logic). The query adapter
builds DirectoryUserAttributes; the sync engine consumes them. Nothing here
touches the network.

Layer rule: no imports from api/, auth/ or sync/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import urlparse

# Account-control bit 2 (0x0002) is ACCOUNTDISABLE.
ACCOUNT_DISABLED_FLAG = 0x0002


@dataclass(frozen=True)
class DirectoryEndpoint:
    """A directory server address. Immutable -- discovery swaps whole endpoints."""

    host: str
    port: int = 389
    use_ssl: bool = False

    @property
    def url(self) -> str:
        scheme = "ldaps" if self.use_ssl else "ldap"
        return f"{scheme}://{self.host}:{self.port}"

    @classmethod
    def parse(cls, value: str, default: DirectoryEndpoint | None = None) -> DirectoryEndpoint:
        """Build an endpoint from a URL ("ldaps://dc1:636"), "host:port" or bare host.

        Bare hosts and host:port pairs inherit the scheme of `default` when
        given, so a candidate list of plain IPs follows the configured
        ldap/ldaps choice.
        """
        value = value.strip()
        if "://" in value:
            parsed = urlparse(value)
            use_ssl = parsed.scheme == "ldaps"
            port = parsed.port or (636 if use_ssl else 389)
            return cls(host=parsed.hostname or value, port=port, use_ssl=use_ssl)
        use_ssl = default.use_ssl if default else False
        host, sep, port_text = value.partition(":")
        if sep and port_text.isdigit():
            return cls(host=host, port=int(port_text), use_ssl=use_ssl)
        return cls(host=value, port=default.port if default else (636 if use_ssl else 389), use_ssl=use_ssl)


@dataclass
class DirectoryUserAttributes:
    """Canonical user record fetched from the directory.

    Every optional field is already normalized to `str | None` by the query
    adapter -- downstream code never has to branch on list-vs-scalar shapes.
    member_of is always a list (possibly empty); account_control is always an
    int. Ephemeral: built per authentication/sync call and discarded after the
    merge into the identity store.
    """

    account_name: str
    account_control: int = 512
    mail: str | None = None
    display_name: str | None = None
    department: str | None = None
    title: str | None = None
    member_of: list[str] = field(default_factory=list)
    distinguished_name: str | None = None
    phone: str | None = None
    office: str | None = None
    company: str | None = None
    manager: str | None = None
    when_created: str | None = None
    when_changed: str | None = None
    last_logon: str | None = None
    pwd_last_set: str | None = None
    account_expires: str | None = None

    @property
    def is_active(self) -> bool:
        """True unless the ACCOUNTDISABLE bit is set in the account-control mask."""
        return (self.account_control & ACCOUNT_DISABLED_FLAG) == 0
