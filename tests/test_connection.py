"""
tests/test_connection.py -- Admin bind formats, session handling and user credential checks.

Covers:
  - admin_bind_formats() ordering and de-duplication
  - Format promotion: the first format that binds is tried first next time
  - BindExhaustedError carries every tried format and the last error
  - ConnectivityError before any bind when the endpoint is down
  - verify_user_credential(): true/false, empty password, unreachable server
  - Every session is closed on every path
"""

from __future__ import annotations

import pytest
from ldap3.core.exceptions import LDAPSocketOpenError

from core.errors import BindExhaustedError, ConnectivityError, InvalidCredentialError
from directory.connection import BindFormatOrder, DirectoryConnectionManager, admin_bind_formats

from conftest import BASE_DN, FakeDirectory, Reachability, make_settings, seed_directory


def _manager(directory: FakeDirectory, reachability: Reachability | None = None, **overrides) -> DirectoryConnectionManager:
    return DirectoryConnectionManager(
        make_settings(**overrides),
        connection_factory=directory.connection_factory,
        prober=reachability or Reachability(),
    )


class TestAdminBindFormats:
    def test_upn_input(self) -> None:
        assert admin_bind_formats("administrator@example.org", BASE_DN, "EXAMPLE") == [
            "administrator@example.org",
            "CN=administrator,CN=Users,DC=example,DC=org",
            "administrator",
            "EXAMPLE\\administrator",
        ]

    def test_bare_name_uses_upn_suffix(self) -> None:
        formats = admin_bind_formats("svc-sync", BASE_DN, "", "example.org")
        assert formats == ["svc-sync@example.org", "CN=svc-sync,CN=Users,DC=example,DC=org", "svc-sync"]

    def test_dn_input_is_tried_first(self) -> None:
        dn = "CN=svc-sync,OU=Service,DC=example,DC=org"
        formats = admin_bind_formats(dn, BASE_DN)
        assert formats[0] == dn
        assert "svc-sync" in formats

    def test_netbios_input(self) -> None:
        formats = admin_bind_formats("EXAMPLE\\svc", BASE_DN, "EXAMPLE")
        assert formats[0] == "EXAMPLE\\svc"
        assert formats.count("EXAMPLE\\svc") == 1

    def test_order_promote(self) -> None:
        order = BindFormatOrder(["a", "b", "c"])
        order.promote("c")
        assert order.formats == ["c", "a", "b"]
        order.promote("zzz")
        assert order.preferred == "c"
        assert len(order) == 3


class TestAdminSession:
    def test_first_format_binds(self, connections, directory) -> None:
        with connections.admin_session() as conn:
            assert conn.bound
        assert directory.bind_attempts == ["administrator@example.org"]
        assert directory.open_connections == []

    def test_falls_back_and_promotes_working_format(self) -> None:
        directory = seed_directory(FakeDirectory(admin_principals=["administrator"]))
        manager = _manager(directory)

        with manager.admin_session():
            pass
        assert directory.bind_attempts == [
            "administrator@example.org",
            "CN=administrator,CN=Users,DC=example,DC=org",
            "administrator",
        ]
        assert manager.bind_formats.preferred == "administrator"

        directory.bind_attempts.clear()
        with manager.admin_session():
            pass
        assert directory.bind_attempts == ["administrator"]
        assert directory.open_connections == []

    def test_exhaustion_reports_every_format(self) -> None:
        directory = seed_directory(FakeDirectory(admin_principals=[]))
        manager = _manager(directory)
        with pytest.raises(BindExhaustedError) as excinfo:
            manager.open_admin_session()
        assert excinfo.value.tried_formats == manager.bind_formats.formats
        assert len(excinfo.value.tried_formats) == 4
        assert isinstance(excinfo.value.last_error, InvalidCredentialError)
        assert directory.open_connections == []

    def test_socket_errors_count_as_failed_formats(self) -> None:
        directory = seed_directory(FakeDirectory())
        directory.bind_error = LDAPSocketOpenError("socket reset")
        manager = _manager(directory)
        with pytest.raises(BindExhaustedError) as excinfo:
            manager.open_admin_session()
        assert isinstance(excinfo.value.last_error, LDAPSocketOpenError)
        assert directory.open_connections == []

    def test_unreachable_endpoint_fails_before_binding(self, directory) -> None:
        manager = _manager(directory, Reachability(default=False))
        with pytest.raises(ConnectivityError) as excinfo:
            manager.open_admin_session()
        assert excinfo.value.host == "dc01.example.org"
        assert directory.connections == []

    def test_session_closed_when_block_raises(self, connections, directory) -> None:
        with pytest.raises(RuntimeError):
            with connections.admin_session():
                raise RuntimeError("boom")
        assert directory.open_connections == []

    def test_wrong_admin_password_exhausts(self, directory) -> None:
        manager = _manager(directory, directory_admin_password="not-the-password")
        with pytest.raises(BindExhaustedError):
            manager.open_admin_session()


class TestUserCredential:
    def test_correct_password(self, connections, directory) -> None:
        assert connections.verify_user_credential("alice", "alice-pw") is True
        assert directory.bind_attempts == ["alice@example.org"]
        assert directory.open_connections == []

    def test_wrong_password_is_false_not_raised(self, connections, directory) -> None:
        assert connections.verify_user_credential("alice", "wrong") is False
        assert directory.open_connections == []

    def test_unknown_account(self, connections) -> None:
        assert connections.verify_user_credential("mallory", "whatever") is False

    def test_empty_password_never_contacts_directory(self, connections, directory) -> None:
        assert connections.verify_user_credential("alice", "") is False
        assert directory.connections == []

    def test_unreachable_server_is_false(self, directory) -> None:
        manager = _manager(directory, Reachability(default=False))
        assert manager.verify_user_credential("alice", "alice-pw") is False
        assert directory.connections == []

    def test_bind_exception_is_false(self, connections, directory) -> None:
        directory.bind_error = LDAPSocketOpenError("reset")
        assert connections.verify_user_credential("alice", "alice-pw") is False
        assert directory.open_connections == []

    def test_qualified_names_pass_through(self, connections) -> None:
        assert connections.user_principal("alice@example.org") == "alice@example.org"
        assert connections.user_principal("EXAMPLE\\alice") == "EXAMPLE\\alice"
        assert connections.user_principal("alice") == "alice@example.org"

    def test_netbios_fallback_without_upn_suffix(self, directory) -> None:
        manager = _manager(directory, directory_upn_suffix="")
        assert manager.user_principal("alice") == "EXAMPLE\\alice"
