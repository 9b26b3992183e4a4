"""
directory/diagnostics.py -- Step-by-step directory connection test for operators.

Runs probe -> admin bind -> sample search and records the outcome of each
step. Failures end up in the report instead of being raised, because the
whole point is to show an administrator *which* step broke.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field

from core.errors import DirectorySyncError
from directory.connection import DirectoryConnectionManager, close_session
from directory.query import sample_users

logger = logging.getLogger("dirsync.directory.diagnostics")


@dataclass
class ConnectionTestReport:
    endpoint: str
    base_dn: str
    reachable: bool = False
    bind_ok: bool = False
    bind_format: str | None = None
    sample_users: list[dict] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.reachable and self.bind_ok and self.error is None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["ok"] = self.ok
        return data


def run_connection_test(manager: DirectoryConnectionManager, sample_size: int = 5) -> ConnectionTestReport:
    """Probe, bind as admin and fetch a few users; report where it stopped."""
    report = ConnectionTestReport(endpoint=manager.endpoint.url, base_dn=manager.base_dn)
    try:
        manager.ensure_reachable()
        report.reachable = True
        report.endpoint = manager.endpoint.url
        conn = manager.open_admin_session()
    except DirectorySyncError as exc:
        logger.warning("Directory connection test failed: %s", exc)
        report.error = str(exc)
        return report

    report.bind_ok = True
    report.bind_format = manager.bind_formats.preferred
    try:
        report.sample_users = [
            {"account_name": u.account_name, "display_name": u.display_name, "mail": u.mail}
            for u in sample_users(conn, manager.base_dn, limit=sample_size)
        ]
    except DirectorySyncError as exc:
        logger.warning("Directory sample search failed: %s", exc)
        report.error = str(exc)
    finally:
        close_session(conn)
    return report
