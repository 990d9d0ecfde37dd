"""Tests for Sign in with Apple identity token handling."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from showauth.config import Settings
from showauth.service.apple import APPLE_ISSUER, AppleAuthService
from showauth.service.errors import AuthError, AuthErrorCode

BUNDLE_ID = "com.psychichomily.app"
SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeJWKClient:
    def __init__(self, public_key):
        self.public_key = public_key
        self.calls = 0

    def get_signing_key_from_jwt(self, token):
        self.calls += 1
        return SimpleNamespace(key=self.public_key)


@pytest.fixture(scope="module")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def apple(runtime, signing_key):
    settings = Settings(jwt_secret=SECRET, apple_bundle_id=BUNDLE_ID)
    service = AppleAuthService(
        settings, auth=runtime.auth, jwks_client=FakeJWKClient(signing_key.public_key())
    )
    runtime.apple = service
    return service


def _identity_token(signing_key, **overrides):
    now = datetime.now(timezone.utc)
    claims = {
        "iss": APPLE_ISSUER,
        "aud": BUNDLE_ID,
        "sub": "001234.apple-user",
        "email": "fan@privaterelay.appleid.com",
        "email_verified": "true",
        "iat": now,
        "exp": now + timedelta(minutes=10),
    }
    claims.update(overrides)
    claims = {k: v for k, v in claims.items() if v is not None}
    return jwt.encode(claims, signing_key, algorithm="RS256", headers={"kid": "test-kid"})


class TestIdentityToken:
    def test_valid_token(self, apple, signing_key):
        identity = apple.verify_identity_token(_identity_token(signing_key))
        assert identity.subject == "001234.apple-user"
        assert identity.email == "fan@privaterelay.appleid.com"
        assert identity.email_verified is True

    @pytest.mark.parametrize("value,expected", [(True, True), ("TRUE", True), ("false", False)])
    def test_email_verified_forms(self, apple, signing_key, value, expected):
        token = _identity_token(signing_key, email_verified=value)
        assert apple.verify_identity_token(token).email_verified is expected

    def test_wrong_audience(self, apple, signing_key):
        with pytest.raises(AuthError) as exc_info:
            apple.verify_identity_token(_identity_token(signing_key, aud="com.other.app"))
        assert exc_info.value.code is AuthErrorCode.TOKEN_INVALID

    def test_wrong_issuer(self, apple, signing_key):
        with pytest.raises(AuthError) as exc_info:
            apple.verify_identity_token(_identity_token(signing_key, iss="https://evil.example"))
        assert exc_info.value.code is AuthErrorCode.TOKEN_INVALID

    def test_expired(self, apple, signing_key):
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        token = _identity_token(signing_key, iat=past - timedelta(minutes=10), exp=past)
        with pytest.raises(AuthError):
            apple.verify_identity_token(token)

    def test_signed_by_other_key(self, apple):
        other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        with pytest.raises(AuthError) as exc_info:
            apple.verify_identity_token(_identity_token(other))
        assert exc_info.value.message == "Invalid Apple identity token"

    def test_missing_token(self, apple):
        with pytest.raises(AuthError) as exc_info:
            apple.verify_identity_token("")
        assert exc_info.value.code is AuthErrorCode.VALIDATION_FAILED

    def test_unconfigured_bundle_id(self, runtime, signing_key):
        service = AppleAuthService(
            Settings(jwt_secret=SECRET),
            auth=runtime.auth,
            jwks_client=FakeJWKClient(signing_key.public_key()),
        )
        with pytest.raises(AuthError) as exc_info:
            service.verify_identity_token(_identity_token(signing_key))
        assert exc_info.value.code is AuthErrorCode.SERVICE_UNAVAILABLE
        assert service.jwks_client.calls == 0


class TestAppleSignIn:
    def test_first_sign_in_creates_account_with_names(self, apple, runtime, signing_key):
        account, created = apple.sign_in(
            _identity_token(signing_key), first_name="Thurston", last_name="Moore"
        )
        assert created is True
        assert account.first_name == "Thurston"
        links = runtime.store.list_oauth_accounts(account.id)
        assert [(l.provider, l.provider_user_id) for l in links] == [
            ("apple", "001234.apple-user")
        ]

    def test_second_sign_in_reuses_account(self, apple, signing_key):
        first, _ = apple.sign_in(_identity_token(signing_key), first_name="Thurston")
        # Apple omits the email and name after the first authorization
        second, created = apple.sign_in(_identity_token(signing_key, email=None))
        assert created is False
        assert second.id == first.id

    def test_links_existing_email_account(self, apple, runtime, signing_key, password_account):
        account, created = apple.sign_in(_identity_token(signing_key, email="fan@example.com"))
        assert created is False
        assert account.id == password_account.id

    def test_unverified_email_does_not_link_existing_account(
        self, apple, runtime, signing_key, password_account
    ):
        token = _identity_token(signing_key, email="fan@example.com", email_verified="false")
        with pytest.raises(AuthError) as exc_info:
            apple.sign_in(token)
        assert exc_info.value.code is AuthErrorCode.USER_EXISTS
        assert runtime.store.list_oauth_accounts(password_account.id) == []

    def test_unverified_email_creates_unverified_account(self, apple, signing_key):
        account, created = apple.sign_in(_identity_token(signing_key, email_verified="false"))
        assert created is True
        assert account.email == "fan@privaterelay.appleid.com"
        assert account.email_verified is False

    def test_verified_email_creates_verified_account(self, apple, signing_key):
        account, _ = apple.sign_in(_identity_token(signing_key))
        assert account.email_verified is True

    def test_deleted_account_is_refused(self, apple, runtime, signing_key, password_account):
        runtime.store.soft_delete_account(password_account.id)
        with pytest.raises(AuthError) as exc_info:
            apple.sign_in(_identity_token(signing_key, email="fan@example.com"))
        assert exc_info.value.code is AuthErrorCode.INVALID_CREDENTIALS

    def test_callback_route_issues_session(self, client, apple, signing_key):
        response = client.post(
            "/v1/auth/apple/callback",
            json={"identity_token": _identity_token(signing_key), "first_name": "Kim"},
        )
        body = response.json()
        assert body["success"] is True
        assert body["data"]["user"]["email"] == "fan@privaterelay.appleid.com"
        assert response.cookies.get("auth_token") == body["data"]["token"]

    def test_callback_route_rejects_bad_token(self, client, apple):
        response = client.post("/v1/auth/apple/callback", json={"identity_token": "not.a.jwt"})
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert body["error_code"] == "TOKEN_INVALID"
