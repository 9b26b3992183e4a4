"""
tests/test_cli.py -- Operator CLI entry point (main.py).

The CLI builds its own Settings from the environment, so every test points
DATABASE_URL at a temporary file and DIRECTORY_URL at a closed local port,
then clears the settings cache before and after.
"""

from __future__ import annotations

import json
import socket

import pytest

import main as cli
from core.config import get_settings
from core.formatter import enable_color


def _closed_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'identities.db'}")
    monkeypatch.setenv("DIRECTORY_URL", f"ldap://127.0.0.1:{_closed_port()}")
    monkeypatch.setenv("DIRECTORY_PROBE_TIMEOUT", "0.5")
    monkeypatch.setenv("DIRECTORY_CANDIDATE_HOSTS", "[]")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    enable_color()


def test_no_command_prints_help(capsys) -> None:
    assert cli.main([]) == 2
    assert "sync-user" in capsys.readouterr().out


def test_status_json_on_empty_store(cli_env, capsys) -> None:
    assert cli.main(["status", "--json"]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data["total_users"] == 0
    assert data["sync_health"] == "needs_sync"
    assert data["role_distribution"]["admin"] == 0


def test_status_text(cli_env, capsys) -> None:
    assert cli.main(["--no-color", "status"]) == 0
    out = capsys.readouterr().out
    assert "SYNC STATUS" in out
    assert "\x1b[" not in out


def test_probe_closed_port(cli_env, capsys) -> None:
    assert cli.main(["probe", "--json"]) == 1
    data = json.loads(capsys.readouterr().out)
    assert data["endpoints"][0]["reachable"] is False


def test_sync_unreachable_directory_exits_1(cli_env, capsys) -> None:
    assert cli.main(["sync"]) == 1
    assert "unreachable" in capsys.readouterr().err


def test_connection_test_reports_failure(cli_env, capsys) -> None:
    assert cli.main(["test-connection", "--json"]) == 1
    data = json.loads(capsys.readouterr().out)
    assert data["reachable"] is False
    assert data["ok"] is False
