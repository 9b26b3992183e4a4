"""
core/formatter.py -- Renders sync reports, status and diagnostics to the terminal or JSON.

Renderers take the plain dicts produced by the domain objects' to_dict(),
so this module stays free of first-party imports.
"""

import json
import os
import sys
from typing import Optional

W = 68  # output width

# ---------------------------------------------------------------------------
# ANSI color control
# ---------------------------------------------------------------------------


def _use_color() -> bool:
    """Return True if stdout is a TTY and color has not been disabled.

    Respects NO_COLOR env var (https://no-color.org) and checks sys.stdout.isatty().
    Can be overridden by calling disable_color() / enable_color().
    """
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


_color_enabled: Optional[bool] = None  # None = auto-detect


def disable_color() -> None:
    """Force-disable color output (called when --no-color flag is set)."""
    global _color_enabled
    _color_enabled = False


def enable_color() -> None:
    global _color_enabled
    _color_enabled = True


def _color_active() -> bool:
    if _color_enabled is not None:
        return _color_enabled
    return _use_color()


# ---------------------------------------------------------------------------
# ANSI code helpers -- return empty string when color is off
# ---------------------------------------------------------------------------


def _reset() -> str:
    return "\033[0m" if _color_active() else ""


def _bold() -> str:
    return "\033[1m" if _color_active() else ""


def _dim() -> str:
    return "\033[2m" if _color_active() else ""


def _red() -> str:
    return "\033[91m" if _color_active() else ""


def _green() -> str:
    return "\033[92m" if _color_active() else ""


def _flag(ok: bool, yes: str = "ok", no: str = "FAILED") -> str:
    color = _green() if ok else _red()
    return f"{color}{yes if ok else no}{_reset()}"


# ---------------------------------------------------------------------------
# Layout helpers
# ---------------------------------------------------------------------------


def _bar(char: str = "═") -> str:
    return char * W


def _section(title: str) -> str:
    return f"\n  {_bold()}{title}{_reset()}\n  {'─' * (W - 2)}"


def _header(title: str) -> None:
    bold = _bold()
    reset = _reset()
    print(f"\n{bold}{_bar()}{reset}")
    print(f"  {bold}{title}{reset}")
    print(f"{bold}{_bar()}{reset}")


def _row(label: str, value: object) -> None:
    print(f"  {label:<22} {value if value is not None else _dim() + 'never' + _reset()}")


# ---------------------------------------------------------------------------
# Terminal renderers
# ---------------------------------------------------------------------------


def print_sync_report(report: dict) -> None:
    """Summarize a full sync run; per-entry errors are listed underneath."""
    _header("DIRECTORY SYNC")
    _row("Total users", report["total_users"])
    _row("New", report["new_users"])
    _row("Updated", report["updated_users"])
    errors = report["errors"]
    _row("Errors", f"{_red()}{errors}{_reset()}" if errors else errors)
    _row("Started", report.get("started_at"))
    _row("Finished", report.get("finished_at"))

    details = report.get("error_details") or []
    if details:
        print(_section("Errors"))
        for line in details:
            print(f"    {_red()}!{_reset()} {line}")
    print(f"\n{_bar()}\n")


def print_identity(identity: dict) -> None:
    """One synced identity: account, role, active flag and override pin."""
    _header(f"IDENTITY - {identity['account_name']}")
    _row("Display name", identity.get("display_name"))
    _row("Email", identity.get("email"))
    _row("Role", identity.get("role"))
    _row("Active", _flag(identity.get("is_active", False), "yes", "no"))
    _row("Manual override", "yes" if identity.get("manual_override") else "no")
    _row("Department", identity.get("department") or "-")
    _row("Last sync", identity.get("last_sync"))
    print(f"\n{_bar()}\n")


def print_status(status: dict) -> None:
    """Store freshness and role distribution."""
    healthy = status["sync_health"] == "healthy"
    _header("SYNC STATUS")
    _row("Health", _flag(healthy, "healthy", status["sync_health"]))
    _row("Total identities", status["total_users"])
    _row("Active", status["active_users"])
    _row("Synced in last 24h", status["recently_synced"])
    _row("Last sync", status.get("last_sync_time"))

    print(_section("Active identities by role"))
    for role, count in status["role_distribution"].items():
        print(f"    {role:<20} {count:>6}")
    print(f"\n{_bar()}\n")


def print_probe(endpoint: str, reachable: bool) -> None:
    print(f"  {endpoint:<48} {_flag(reachable, 'reachable', 'UNREACHABLE')}")


def print_connection_test(result: dict) -> None:
    """Step-by-step outcome of the connection diagnostics."""
    _header("DIRECTORY CONNECTION TEST")
    _row("Endpoint", result["endpoint"])
    _row("Base DN", result["base_dn"])
    _row("TCP reachable", _flag(result["reachable"]))
    _row("Admin bind", _flag(result["bind_ok"]))
    if result.get("bind_format"):
        _row("Bind format", result["bind_format"])
    if result.get("error"):
        _row("Error", f"{_red()}{result['error']}{_reset()}")

    users = result.get("sample_users") or []
    if users:
        print(_section(f"Sample users ({len(users)})"))
        for user in users:
            print(f"    {user['account_name']:<20} {user.get('display_name') or '':<26} {user.get('mail') or ''}")
    print(f"\n{_bar()}\n")


# ---------------------------------------------------------------------------
# JSON export
# ---------------------------------------------------------------------------


def to_json(data: dict) -> str:
    """Return a pretty-printed JSON document for machine consumers (--json)."""
    return json.dumps(data, indent=2, default=str)
