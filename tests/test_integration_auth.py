"""Integration tests for the HTTP authentication flow.

Covers:
- Registration and password login (cookie and Bearer sessions)
- Lockout surfaced through the envelope
- Profile, logout and refresh
- Password change, data export and account deletion
- CLI tokens and magic-link enumeration resistance
"""

import pytest

from showauth.service.tokens import TokenPurpose

PASSWORD = "Velvet-Underground-1967"


def _login(client, email="fan@example.com", password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class TestRegistration:
    def test_register_signs_in(self, client, runtime):
        response = client.post(
            "/v1/auth/register",
            json={
                "email": "New.Fan@Example.com",
                "password": PASSWORD,
                "first_name": "Kim",
                "terms_accepted": True,
                "terms_version": "2025-01",
            },
        )
        body = response.json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["message"] == "Registration successful and you are now logged in"
        assert body["data"]["user"]["email"] == "new.fan@example.com"
        assert response.cookies.get("auth_token") == body["data"]["token"]
        account = runtime.store.get_account_by_email("new.fan@example.com")
        assert account.terms_version == "2025-01"
        assert account.email_verified is False

    def test_register_duplicate_email(self, client, password_account):
        response = client.post(
            "/v1/auth/register", json={"email": "fan@example.com", "password": PASSWORD}
        )
        body = response.json()
        assert body["success"] is False
        assert body["error_code"] == "USER_EXISTS"

    def test_register_weak_password(self, client):
        response = client.post(
            "/v1/auth/register", json={"email": "new@example.com", "password": "short"}
        )
        body = response.json()
        assert body["success"] is False
        assert body["error_code"] == "VALIDATION_FAILED"

    def test_register_malformed_email(self, client):
        response = client.post(
            "/v1/auth/register", json={"email": "not-an-email", "password": PASSWORD}
        )
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_FAILED"


class TestLogin:
    def test_login_sets_cookie_and_returns_token(self, client, password_account):
        response = _login(client)
        body = response.json()
        assert body["success"] is True
        assert body["data"]["user"]["id"] == password_account.id
        set_cookie = response.headers["set-cookie"]
        assert set_cookie.startswith("auth_token=")
        assert "HttpOnly" in set_cookie
        assert "SameSite=lax" in set_cookie

    def test_wrong_password_and_unknown_email_look_alike(self, client, password_account):
        wrong = _login(client, password="Not-The-Password-1").json()
        unknown = _login(client, email="nobody@example.com").json()
        for body in (wrong, unknown):
            assert body["success"] is False
            assert body["error_code"] == "INVALID_CREDENTIALS"
            assert body["message"] == "Invalid email or password"

    def test_missing_fields_are_soft_failures(self, client):
        response = client.post("/v1/auth/login", json={})
        assert response.status_code == 200
        assert response.json()["error_code"] == "VALIDATION_FAILED"

    def test_lockout_after_five_failures(self, client, password_account):
        for _ in range(5):
            assert _login(client, password="Not-The-Password-1").json()["error_code"] == (
                "INVALID_CREDENTIALS"
            )
        body = _login(client).json()
        assert body["success"] is False
        assert body["error_code"] == "ACCOUNT_LOCKED"
        assert body["data"]["minutes_remaining"] == 15
        assert "15 minutes" in body["message"]


class TestSession:
    def test_profile_with_cookie(self, client, password_account):
        _login(client)
        response = client.get("/v1/auth/profile")
        assert response.json()["data"]["user"]["email"] == "fan@example.com"

    def test_profile_with_bearer(self, client, runtime, password_account):
        token = runtime.tokens.create_session_token(password_account)
        response = client.get("/v1/auth/profile", headers=_bearer(token))
        assert response.json()["success"] is True

    def test_profile_without_session(self, client):
        response = client.get("/v1/auth/profile")
        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error_code"] == "UNAUTHORIZED"

    def test_non_session_token_is_not_a_session(self, client, runtime, password_account):
        token = runtime.tokens.create_token(
            TokenPurpose.MAGIC_LINK, password_account.id, password_account.email
        )
        assert client.get("/v1/auth/profile", headers=_bearer(token)).status_code == 401

    def test_logout_clears_cookie(self, client, password_account):
        _login(client)
        response = client.post("/v1/auth/logout")
        assert response.json()["message"] == "Logout successful"
        assert "Max-Age=0" in response.headers["set-cookie"]
        assert client.get("/v1/auth/profile").status_code == 401

    def test_refresh_issues_new_token(self, client, runtime, password_account):
        token = runtime.tokens.create_session_token(password_account)
        response = client.post("/v1/auth/refresh", headers=_bearer(token))
        body = response.json()
        assert body["success"] is True
        refreshed = runtime.tokens.validate_token(TokenPurpose.SESSION, body["data"]["token"])
        assert refreshed.account_id == password_account.id

    def test_refresh_without_token(self, client):
        assert client.post("/v1/auth/refresh").status_code == 401

    def test_deleted_account_session_is_rejected(self, client, runtime, password_account):
        token = runtime.tokens.create_session_token(password_account)
        runtime.store.soft_delete_account(password_account.id)
        assert client.get("/v1/auth/profile", headers=_bearer(token)).status_code == 401


class TestCliToken:
    def test_admin_receives_day_long_token(self, client, runtime):
        admin = runtime.store.create_account(
            email="admin@example.com", password_hash=runtime.auth.hash_password(PASSWORD), is_admin=True
        )
        token = runtime.tokens.create_session_token(admin)
        body = client.post("/v1/auth/cli-token", headers=_bearer(token)).json()
        assert body["success"] is True
        assert body["data"]["expires_in"] == 86400
        claims = runtime.tokens.validate_token(TokenPurpose.SESSION, body["data"]["token"])
        assert (claims.expires_at - claims.issued_at).total_seconds() == 86400

    def test_non_admin_is_forbidden(self, client, runtime, password_account):
        token = runtime.tokens.create_session_token(password_account)
        response = client.post("/v1/auth/cli-token", headers=_bearer(token))
        assert response.status_code == 403
        assert response.json()["error_code"] == "UNAUTHORIZED"


class TestPasswordChange:
    def test_change_password(self, client, runtime, password_account):
        token = runtime.tokens.create_session_token(password_account)
        response = client.post(
            "/v1/auth/change-password",
            json={"current_password": PASSWORD, "new_password": "Sonic-Youth-Daydream-1988"},
            headers=_bearer(token),
        )
        assert response.json()["message"] == "Password changed successfully"
        assert _login(client, password="Sonic-Youth-Daydream-1988").json()["success"] is True
        assert _login(client).json()["success"] is False

    def test_wrong_current_password(self, client, runtime, password_account):
        token = runtime.tokens.create_session_token(password_account)
        body = client.post(
            "/v1/auth/change-password",
            json={"current_password": "nope", "new_password": "Sonic-Youth-Daydream-1988"},
            headers=_bearer(token),
        ).json()
        assert body["error_code"] == "INVALID_CREDENTIALS"
        assert body["message"] == "Current password is incorrect"


class TestAccountLifecycle:
    def test_export_is_a_download(self, client, runtime, password_account):
        token = runtime.tokens.create_session_token(password_account)
        response = client.get("/v1/auth/account/export", headers=_bearer(token))
        assert response.status_code == 200
        assert response.headers["content-disposition"] == (
            f'attachment; filename="showauth-export-{password_account.id}.json"'
        )
        assert response.json()["profile"]["email"] == "fan@example.com"
        assert "no-store" in response.headers["cache-control"]

    def test_deletion_summary(self, client, runtime, password_account):
        token = runtime.tokens.create_session_token(password_account)
        data = client.get(
            "/v1/auth/account/deletion-summary", headers=_bearer(token)
        ).json()["data"]
        assert data == {
            "shows_count": 0,
            "saved_shows_count": 0,
            "passkeys_count": 0,
            "has_password": True,
        }

    def test_delete_then_recover(self, client, password_account):
        _login(client)
        response = client.post("/v1/auth/account/delete", json={"password": PASSWORD})
        body = response.json()
        assert body["success"] is True
        assert body["data"]["grace_period_days"] == 30
        assert "auth_token=" in response.headers["set-cookie"]
        client.cookies.clear()

        assert _login(client).json()["error_code"] == "INVALID_CREDENTIALS"

        recovered = client.post(
            "/v1/auth/recover-account", json={"email": "fan@example.com", "password": PASSWORD}
        ).json()
        assert recovered["success"] is True
        assert recovered["message"] == "Account recovered successfully. Welcome back!"
        assert _login(client).json()["success"] is True

    def test_delete_with_wrong_password(self, client, runtime, password_account):
        token = runtime.tokens.create_session_token(password_account)
        body = client.post(
            "/v1/auth/account/delete", json={"password": "wrong"}, headers=_bearer(token)
        ).json()
        assert body["success"] is False
        assert runtime.store.get_account(password_account.id).deleted_at is None


class TestMagicLink:
    def test_response_does_not_reveal_accounts(self, client, fake_email, password_account):
        known = client.post("/v1/auth/magic-link/send", json={"email": "fan@example.com"}).json()
        unknown = client.post(
            "/v1/auth/magic-link/send", json={"email": "nobody@example.com"}
        ).json()
        assert known == {**unknown, "request_id": known["request_id"]}
        assert [kind for kind, _, _ in fake_email.sent] == ["magic_link"]

    def test_link_signs_in_once_verified(self, client, fake_email, password_account):
        client.post("/v1/auth/magic-link/send", json={"email": "fan@example.com"})
        token = fake_email.sent[0][2]["token"]
        response = client.post("/v1/auth/magic-link/verify", json={"token": token})
        body = response.json()
        assert body["success"] is True
        assert response.cookies.get("auth_token") == body["data"]["token"]

    def test_unconfigured_email_service(self, client, fake_email):
        fake_email.configured = False
        body = client.post("/v1/auth/magic-link/send", json={"email": "fan@example.com"}).json()
        assert body["success"] is False
        assert body["error_code"] == "SERVICE_UNAVAILABLE"


class TestPasskeyRoutesNeedSession:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("post", "/v1/auth/passkey/register/begin"),
            ("get", "/v1/auth/passkey/credentials"),
            ("delete", "/v1/auth/passkey/credentials/1"),
        ],
    )
    def test_soft_unauthorized(self, client, method, path):
        response = getattr(client, method)(path)
        body = response.json()
        assert response.status_code == 200
        assert body["success"] is False
        assert body["error_code"] == "UNAUTHORIZED"
        assert body["message"] == "Authentication required"
