"""
core/errors.py -- Error taxonomy for directory integration and identity sync.

Every failure that crosses a component boundary is one of these types.
Library exceptions (ldap3, SQLAlchemy, python-jose) are translated at the
boundary with `raise ... from exc` so the original cause stays attached for
logging while callers only ever catch dirsync types.

  ConnectivityError       raw TCP reachability failed -- retryable after discovery
  BindExhaustedError      every admin credential format was rejected -- fatal
                          until the configuration is fixed
  InvalidCredentialError  a user-level bind failed -- expected, not a fault
  DirectoryQueryError     search failed after a successful bind
  RecordPersistenceError  identity store write failed
  TokenInvalidError       session token signature, expiry or payload invalid

Layer rule: core/ is the kernel. No first-party imports.
"""

from __future__ import annotations


class DirectorySyncError(Exception):
    """Base class for every error raised by dirsync components."""


class ConnectivityError(DirectorySyncError):
    """The directory endpoint did not accept a TCP connection within the timeout."""

    def __init__(self, host: str, port: int) -> None:
        super().__init__(f"Directory endpoint {host}:{port} is unreachable")
        self.host = host
        self.port = port


class BindExhaustedError(DirectorySyncError):
    """All administrative bind formats were rejected.

    last_error is the exception raised by the final attempt; tried_formats
    lists the principal encodings in the order they were attempted.
    """

    def __init__(self, tried_formats: list[str], last_error: BaseException | None = None) -> None:
        super().__init__(f"Administrative bind failed with all {len(tried_formats)} credential formats: {last_error}")
        self.tried_formats = tried_formats
        self.last_error = last_error


class InvalidCredentialError(DirectorySyncError):
    """The directory rejected a bind for the supplied principal and password."""


class DirectoryQueryError(DirectorySyncError):
    """A directory search failed after the session was bound."""


class RecordPersistenceError(DirectorySyncError):
    """Writing an identity record to the relational store failed."""


class TokenInvalidError(DirectorySyncError):
    """A session token failed signature, expiry, issuer or payload checks."""
