"""
directory/query.py -- User searches and attribute normalization.

Raw directory attributes arrive in three shapes depending on the server,
the schema info loaded and the attribute itself: a scalar, a list (possibly
empty), or missing altogether. clean_value() collapses all three to
`str | None` and is applied to every attribute at this boundary, so nothing
downstream ever branches on "is this a list".

Searches:
  fetch_user_by_account_name()  exact sAMAccountName match, first entry wins
  iter_user_entries()           every user object that is not a computer,
                                raw attribute maps, paged in server order
  fetch_all_users()             the same stream, normalized

Search failures after a successful bind surface as DirectoryQueryError,
whether ldap3 raises or only reports a failing code in conn.result.

Layer rule: no imports from api/, auth/ or sync/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from typing import Any

from ldap3 import SUBTREE, Connection
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

from core.errors import DirectoryQueryError
from directory.models import DirectoryUserAttributes

logger = logging.getLogger("dirsync.directory.query")

# Projection for single-user lookups (login path).
USER_ATTRIBUTES = [
    "sAMAccountName",
    "mail",
    "displayName",
    "department",
    "title",
    "userAccountControl",
    "memberOf",
    "distinguishedName",
    "telephoneNumber",
    "physicalDeliveryOfficeName",
    "company",
    "manager",
    "whenCreated",
    "whenChanged",
    "lastLogon",
    "pwdLastSet",
    "accountExpires",
]

# Bulk sync skips the timestamp attributes; nothing persists them.
SYNC_ATTRIBUTES = USER_ATTRIBUTES[:12]

ALL_USERS_FILTER = "(&(objectClass=user)(sAMAccountName=*)(!(objectClass=computer)))"

# Account-control value used when the attribute is missing or unparsable.
# 512 = NORMAL_ACCOUNT (enabled); the single-user path is stricter and uses 0.
DEFAULT_ACCOUNT_CONTROL = 512

# LDAP result codes that mean "search completed" rather than "search failed".
_OK_RESULT_CODES = {0, 32}  # success, noSuchObject (empty base)
_SIZE_LIMIT_EXCEEDED = 4

# Simple Paged Results control (RFC 2696).
PAGED_RESULTS_OID = "1.2.840.113556.1.4.319"


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def clean_value(value: Any) -> str | None:
    """Collapse a raw attribute value to an optional string.

    None, "" and [] -> None; a list -> its first element as text; a scalar
    -> itself as text. bytes are decoded as UTF-8.
    """
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        if not value:
            return None
        value = value[0]
        if value is None:
            return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    text = value if isinstance(value, str) else str(value)
    return text or None


def clean_list(value: Any) -> list[str]:
    """Normalize a multi-valued attribute (memberOf) to a list of strings."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [v for v in (clean_value(item) for item in value) if v is not None]
    single = clean_value(value)
    return [single] if single is not None else []


def _parse_account_control(value: Any, default: int) -> int:
    text = clean_value(value)
    if text is None:
        return default
    try:
        return int(text)
    except ValueError:
        return default


def account_search_name(account_name: str) -> str:
    """Strip UPN suffix or NetBIOS prefix: "jdoe@corp.example" or "CORP\\jdoe" -> "jdoe"."""
    name = account_name.split("@")[0]
    if "\\" in name:
        name = name.split("\\", 1)[1]
    return name


def to_user_attributes(raw: Mapping[str, Any], default_account_control: int = DEFAULT_ACCOUNT_CONTROL) -> DirectoryUserAttributes:
    """Build a DirectoryUserAttributes from one raw search entry's attribute map.

    Attribute names are matched case-insensitively, as LDAP itself does.
    Raises DirectoryQueryError for an entry without an account name.
    """
    attrs = {k.lower(): v for k, v in raw.items()}
    account_name = clean_value(attrs.get("samaccountname"))
    if not account_name:
        raise DirectoryQueryError("Directory entry has no sAMAccountName")
    return DirectoryUserAttributes(
        account_name=account_name,
        account_control=_parse_account_control(attrs.get("useraccountcontrol"), default_account_control),
        mail=clean_value(attrs.get("mail")),
        display_name=clean_value(attrs.get("displayname")),
        department=clean_value(attrs.get("department")),
        title=clean_value(attrs.get("title")),
        member_of=clean_list(attrs.get("memberof")),
        distinguished_name=clean_value(attrs.get("distinguishedname")),
        phone=clean_value(attrs.get("telephonenumber")),
        office=clean_value(attrs.get("physicaldeliveryofficename")),
        company=clean_value(attrs.get("company")),
        manager=clean_value(attrs.get("manager")),
        when_created=clean_value(attrs.get("whencreated")),
        when_changed=clean_value(attrs.get("whenchanged")),
        last_logon=clean_value(attrs.get("lastlogon")),
        pwd_last_set=clean_value(attrs.get("pwdlastset")),
        account_expires=clean_value(attrs.get("accountexpires")),
    )


def _entry_attributes(entry: Mapping[str, Any]) -> dict[str, Any]:
    """Return the attribute map of a response entry, filling distinguishedName from the DN."""
    attributes = dict(entry.get("attributes") or {})
    if not any(k.lower() == "distinguishedname" for k in attributes) and entry.get("dn"):
        attributes["distinguishedName"] = entry["dn"]
    return attributes


def _check_result(conn: Connection, what: str) -> None:
    """Raise DirectoryQueryError unless the last operation on conn completed."""
    result = conn.result or {}
    if result.get("result", 0) not in _OK_RESULT_CODES:
        raise DirectoryQueryError(f"{what} failed: {result.get('description')}")


def _page_cookie(conn: Connection) -> bytes | None:
    """Paged-results cookie of the last search; empty or missing means last page."""
    controls = (conn.result or {}).get("controls") or {}
    value = (controls.get(PAGED_RESULTS_OID) or {}).get("value") or {}
    return value.get("cookie") or None


# ---------------------------------------------------------------------------
# Searches
# ---------------------------------------------------------------------------


def fetch_user_by_account_name(conn: Connection, base_dn: str, account_name: str) -> DirectoryUserAttributes | None:
    """Look up one user by exact account name. Returns None if no entry matches.

    "User not found" is an expected outcome, not an error. If several
    entries match, the first one returned by the server wins.
    """
    search_filter = f"(sAMAccountName={escape_filter_chars(account_search_name(account_name))})"
    try:
        conn.search(base_dn, search_filter, search_scope=SUBTREE, attributes=USER_ATTRIBUTES)
    except LDAPException as exc:
        raise DirectoryQueryError(f"Search for {account_name} failed: {exc}") from exc
    _check_result(conn, f"Search for {account_name}")

    entries = [e for e in (conn.response or []) if e.get("type") == "searchResEntry"]
    if not entries:
        logger.info("Account %s not found in directory", account_name)
        return None
    return to_user_attributes(_entry_attributes(entries[0]), default_account_control=0)


def iter_user_entries(conn: Connection, base_dn: str, page_size: int = 500) -> Iterator[dict[str, Any]]:
    """Stream the raw attribute map of every directory user, in server order.

    Drives the paged-results cookie directly: one search per page, entries
    of a page yielded in the order the server returned them, the next page
    requested only once the caller has consumed the current one. A page
    that raises or completes with a failing result code ends the stream
    with DirectoryQueryError. Entries are not normalized here.
    """
    cookie: bytes | None = None
    page = 0
    while True:
        page += 1
        try:
            conn.search(
                base_dn,
                ALL_USERS_FILTER,
                search_scope=SUBTREE,
                attributes=SYNC_ATTRIBUTES,
                paged_size=page_size,
                paged_cookie=cookie,
            )
        except LDAPException as exc:
            raise DirectoryQueryError(f"Directory user search failed on page {page}: {exc}") from exc
        _check_result(conn, f"Directory user search (page {page})")

        entries = [e for e in (conn.response or []) if e.get("type") == "searchResEntry"]
        cookie = _page_cookie(conn)
        logger.debug("Directory user search page %d: %d entries", page, len(entries))
        for entry in entries:
            yield _entry_attributes(entry)
        if not cookie:
            return


def fetch_all_users(conn: Connection, base_dn: str, page_size: int = 500) -> Iterator[DirectoryUserAttributes]:
    """Stream every directory user (not computers, account name present), normalized.

    Same order and failure behaviour as iter_user_entries(); a malformed
    entry raises DirectoryQueryError where it is consumed.
    """
    for attributes in iter_user_entries(conn, base_dn, page_size=page_size):
        yield to_user_attributes(attributes)


def sample_users(conn: Connection, base_dn: str, limit: int = 5) -> list[DirectoryUserAttributes]:
    """Return up to `limit` users for connection diagnostics."""
    try:
        conn.search(
            base_dn,
            ALL_USERS_FILTER,
            search_scope=SUBTREE,
            attributes=["sAMAccountName", "mail", "displayName"],
            size_limit=limit,
        )
    except LDAPException as exc:
        raise DirectoryQueryError(f"Sample search failed: {exc}") from exc
    # sizeLimitExceeded is the expected outcome of a capped search
    result = conn.result or {}
    if result.get("result", 0) != _SIZE_LIMIT_EXCEEDED:
        _check_result(conn, "Sample search")
    entries = [e for e in (conn.response or []) if e.get("type") == "searchResEntry"]
    return [to_user_attributes(_entry_attributes(e)) for e in entries[:limit]]
