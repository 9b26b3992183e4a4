"""
tests/test_api_routes.py -- HTTP surface over the fake directory.

Covers:
  - /auth/login: success sets cookie + no-store; every failure is the same 401
  - /auth/me and /auth/verify
  - /directory/*: permission guards, full sync report, single sync 404,
    status, connection test
  - /identities: list, role pin, last-admin 409, unpin
  - Directory outage maps to 503 with the error envelope

The api_client fixture is module-scoped. Tests that log in clear the
client's cookie jar afterwards so the session cookie does not shadow the
Bearer header used by later tests.
"""

from __future__ import annotations

import pytest

from auth.tokens import decode_session_token


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class TestLogin:
    def test_success_sets_cookie_and_no_store(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/auth/login", json={"username": "bob", "password": "bob-pw"})
        try:
            assert resp.status_code == 200
            data = resp.json()
            assert data["token_type"] == "bearer"
            assert data["user"]["account_name"] == "bob"
            assert data["user"]["role"] == "librarian"
            assert resp.headers["cache-control"] == "no-store"
            assert "access_token" in resp.cookies
            claims = decode_session_token(data["access_token"])
            assert claims.permissions.to_dict() == data["user"]["permissions"]
        finally:
            api_client.client.cookies.clear()

    @pytest.mark.parametrize(
        ("username", "password"),
        [("bob", "wrong"), ("mallory", "whatever"), ("dave", "dave-pw")],
    )
    def test_failures_are_indistinguishable(self, api_client, username: str, password: str) -> None:
        resp = api_client.client.post("/api/v1/auth/login", json={"username": username, "password": password})
        assert resp.status_code == 401
        assert resp.json() == {"error": {"code": "bad_credentials", "message": "Invalid username or password."}}
        assert resp.headers["cache-control"] == "no-store"

    def test_empty_password_is_validation_error(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/auth/login", json={"username": "bob", "password": ""})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_logout_clears_cookie(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert "access_token" in resp.headers.get("set-cookie", "")


class TestSession:
    def test_me_with_bearer(self, api_client) -> None:
        resp = api_client.client.get("/api/v1/auth/me", headers=api_client.headers(api_client.admin_token))
        assert resp.status_code == 200
        data = resp.json()
        assert data["account_name"] == "alice"
        assert data["role"] == "admin"
        assert data["permissions"]["system"]["sync_directory"] is True

    def test_me_without_token(self, api_client) -> None:
        resp = api_client.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_me_with_garbage_token(self, api_client) -> None:
        resp = api_client.client.get("/api/v1/auth/me", headers=api_client.headers("garbage"))
        assert resp.status_code == 401

    def test_verify_valid(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/auth/verify", json={"token": api_client.user_token})
        assert resp.status_code == 200
        data = resp.json()
        assert data["valid"] is True
        assert data["claims"]["account_name"] == "carol"
        assert data["claims"]["permissions"]["users"]["manage_roles"] is False

    def test_verify_invalid(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/auth/verify", json={"token": "not.a.token"})
        assert resp.status_code == 200
        assert resp.json() == {"valid": False, "claims": None}


# ---------------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------------


class TestDirectoryRoutes:
    def test_sync_requires_auth(self, api_client) -> None:
        assert api_client.client.post("/api/v1/directory/sync").status_code == 401

    def test_sync_forbidden_for_enduser(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/directory/sync", headers=api_client.headers(api_client.user_token))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_full_sync_as_admin(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/directory/sync", headers=api_client.headers(api_client.admin_token))
        assert resp.status_code == 200
        data = resp.json()
        assert data["total_users"] == 4
        assert data["errors"] == 0
        assert data["new_users"] + data["updated_users"] == 4
        assert api_client.directory.open_connections == []

    def test_single_sync(self, api_client) -> None:
        resp = api_client.client.post(
            "/api/v1/directory/sync/bob", headers=api_client.headers(api_client.admin_token)
        )
        assert resp.status_code == 200
        assert resp.json()["role"] == "librarian"

    def test_single_sync_unknown_account(self, api_client) -> None:
        resp = api_client.client.post(
            "/api/v1/directory/sync/nobody", headers=api_client.headers(api_client.admin_token)
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_status(self, api_client) -> None:
        resp = api_client.client.get("/api/v1/directory/status", headers=api_client.headers(api_client.admin_token))
        assert resp.status_code == 200
        data = resp.json()
        assert data["total_users"] >= 2
        assert set(data["role_distribution"]) == {"admin", "librarian", "circulation", "registration", "enduser"}

    def test_status_forbidden_for_enduser(self, api_client) -> None:
        resp = api_client.client.get("/api/v1/directory/status", headers=api_client.headers(api_client.user_token))
        assert resp.status_code == 403

    def test_connection_test(self, api_client) -> None:
        resp = api_client.client.get("/api/v1/directory/test", headers=api_client.headers(api_client.admin_token))
        assert resp.status_code == 200
        data = resp.json()
        assert data["ok"] is True
        assert data["bind_ok"] is True
        assert 0 < len(data["sample_users"]) <= 5

    def test_unreachable_directory_is_503(self, api_client) -> None:
        api_client.reachability.default = False
        try:
            resp = api_client.client.post(
                "/api/v1/directory/sync/carol", headers=api_client.headers(api_client.admin_token)
            )
        finally:
            api_client.reachability.default = True
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "directory_unreachable"

    def test_unreachable_login_is_plain_401(self, api_client) -> None:
        api_client.reachability.default = False
        try:
            resp = api_client.client.post("/api/v1/auth/login", json={"username": "bob", "password": "bob-pw"})
        finally:
            api_client.reachability.default = True
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"


# ---------------------------------------------------------------------------
# Identities
# ---------------------------------------------------------------------------


class TestIdentityRoutes:
    def _id_of(self, api_client, account: str) -> int:
        return api_client.store.get_by_account_name(account).id

    def test_list_requires_users_view(self, api_client) -> None:
        assert api_client.client.get("/api/v1/identities", headers=api_client.headers(api_client.user_token)).status_code == 403

    def test_list_as_admin(self, api_client) -> None:
        resp = api_client.client.get("/api/v1/identities", headers=api_client.headers(api_client.admin_token))
        assert resp.status_code == 200
        names = [i["account_name"] for i in resp.json()]
        assert names[0] == "alice"
        assert "carol" in names

    def test_pin_and_unpin_role(self, api_client) -> None:
        carol_id = self._id_of(api_client, "carol")
        headers = api_client.headers(api_client.admin_token)

        resp = api_client.client.put(f"/api/v1/identities/{carol_id}/role", json={"role": "circulation"}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["role"] == "circulation"
        assert resp.json()["manual_override"] is True

        resync = api_client.client.post("/api/v1/directory/sync/carol", headers=headers)
        assert resync.json()["role"] == "circulation"

        resp = api_client.client.delete(f"/api/v1/identities/{carol_id}/role", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["manual_override"] is False

        resync = api_client.client.post("/api/v1/directory/sync/carol", headers=headers)
        assert resync.json()["role"] == "enduser"

    def test_unknown_role_is_422(self, api_client) -> None:
        carol_id = self._id_of(api_client, "carol")
        resp = api_client.client.put(
            f"/api/v1/identities/{carol_id}/role",
            json={"role": "superuser"},
            headers=api_client.headers(api_client.admin_token),
        )
        assert resp.status_code == 422

    def test_last_admin_cannot_be_demoted(self, api_client) -> None:
        alice_id = self._id_of(api_client, "alice")
        resp = api_client.client.put(
            f"/api/v1/identities/{alice_id}/role",
            json={"role": "enduser"},
            headers=api_client.headers(api_client.admin_token),
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "last_admin"

    def test_missing_identity_is_404(self, api_client) -> None:
        headers = api_client.headers(api_client.admin_token)
        assert api_client.client.put("/api/v1/identities/9999/role", json={"role": "enduser"}, headers=headers).status_code == 404
        assert api_client.client.delete("/api/v1/identities/9999/role", headers=headers).status_code == 404
