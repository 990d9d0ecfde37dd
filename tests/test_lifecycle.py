"""Tests for soft delete, recovery, export, email verification and magic links."""

from datetime import datetime, timedelta, timezone

import pytest

from showauth.config import Settings
from showauth.service.audit import AuditLog
from showauth.service.auth import AuthService, ExternalIdentity
from showauth.service.errors import AuthError, AuthErrorCode
from showauth.service.lifecycle import (
    EXPORT_VERSION,
    OAUTH_DELETE_MESSAGE,
    AccountLifecycleService,
    days_remaining,
)
from showauth.service.password_validator import PasswordValidator
from showauth.service.tokens import SignupConsent, TokenIssuer, TokenPurpose
from showauth.storage.memory import MemoryStore
from showauth.storage.models import ShowRecord

PASSWORD = "Velvet-Underground-1967"


class Clock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return Clock(datetime(2026, 6, 1, 18, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        hibp_check_enabled=False,
    )


@pytest.fixture
def tokens(settings, clock):
    return TokenIssuer(settings, clock=clock)


@pytest.fixture
def auth(store, settings, clock):
    return AuthService(
        store, settings, validator=PasswordValidator(check_breaches=False), clock=clock
    )


@pytest.fixture
def lifecycle(store, settings, auth, tokens, fake_email, clock):
    return AccountLifecycleService(
        store,
        settings,
        auth=auth,
        tokens=tokens,
        email=fake_email,
        shows=store,
        audit=AuditLog(store),
        clock=clock,
    )


@pytest.fixture
def account(auth, store):
    created = auth.register("fan@example.com", PASSWORD, first_name="Jo")
    return store.set_email_verified(created.id, True)


def _delete(store, account, clock, days_ago: int):
    return store.soft_delete_account(account.id, now=clock.now - timedelta(days=days_ago))


class TestRecoveryWindow:
    def test_recover_on_day_29(self, lifecycle, store, account, clock):
        _delete(store, account, clock, 29)
        restored = lifecycle.recover_account("fan@example.com", PASSWORD)
        assert restored.is_active is True
        assert restored.deleted_at is None

    def test_not_recoverable_on_day_31(self, lifecycle, store, account, clock):
        _delete(store, account, clock, 31)
        with pytest.raises(AuthError) as exc_info:
            lifecycle.recover_account("fan@example.com", PASSWORD)
        assert exc_info.value.code is AuthErrorCode.ACCOUNT_NOT_RECOVERABLE

    def test_active_account(self, lifecycle, account):
        with pytest.raises(AuthError) as exc_info:
            lifecycle.recover_account("fan@example.com", PASSWORD)
        assert exc_info.value.code is AuthErrorCode.ACCOUNT_ACTIVE

    def test_unknown_email_and_wrong_password_look_alike(self, lifecycle, store, account, clock):
        _delete(store, account, clock, 1)
        with pytest.raises(AuthError) as unknown:
            lifecycle.recover_account("nobody@example.com", PASSWORD)
        with pytest.raises(AuthError) as wrong:
            lifecycle.recover_account("fan@example.com", "not-my-password")
        assert unknown.value.code is wrong.value.code is AuthErrorCode.INVALID_CREDENTIALS
        assert unknown.value.message == wrong.value.message == "Invalid credentials"

    def test_password_less_account_needs_email_recovery(self, lifecycle, store, clock):
        oauth_only = store.create_account(email="oauth@example.com", email_verified=True)
        _delete(store, oauth_only, clock, 2)
        with pytest.raises(AuthError) as exc_info:
            lifecycle.recover_account("oauth@example.com", PASSWORD)
        assert exc_info.value.code is AuthErrorCode.NO_PASSWORD

    def test_days_remaining(self, clock):
        assert days_remaining(clock.now, clock.now) == 31
        assert days_remaining(clock.now - timedelta(days=29, hours=12), clock.now) == 1


class TestRecoveryByEmail:
    def test_unknown_email_reports_nothing(self, lifecycle, fake_email):
        assert lifecycle.request_account_recovery("nobody@example.com") is False
        assert fake_email.sent == []

    def test_active_account_hint(self, lifecycle, account):
        with pytest.raises(AuthError) as exc_info:
            lifecycle.request_account_recovery("fan@example.com")
        assert exc_info.value.code is AuthErrorCode.ACCOUNT_ACTIVE
        assert exc_info.value.data == {"has_password": True}

    def test_request_and_confirm(self, lifecycle, store, account, clock, fake_email):
        _delete(store, account, clock, 10)
        assert lifecycle.request_account_recovery("fan@example.com") is True
        kind, to_email, payload = fake_email.sent[-1]
        assert (kind, to_email) == ("recovery", "fan@example.com")
        assert payload["days_remaining"] == 21

        restored = lifecycle.confirm_account_recovery(payload["token"])
        assert restored.id == account.id
        assert restored.deleted_at is None

    def test_confirm_after_window_closed(self, lifecycle, store, account, clock, fake_email):
        store.soft_delete_account(account.id, now=clock.now - timedelta(days=30, minutes=-30))
        lifecycle.request_account_recovery("fan@example.com")
        token = fake_email.sent[-1][2]["token"]
        # the token is still fresh but the window has closed
        clock.now += timedelta(minutes=45)
        with pytest.raises(AuthError) as exc_info:
            lifecycle.confirm_account_recovery(token)
        assert exc_info.value.code is AuthErrorCode.ACCOUNT_NOT_RECOVERABLE

    def test_confirm_with_foreign_token(self, lifecycle, tokens, account):
        token = tokens.create_token(TokenPurpose.MAGIC_LINK, account.id, account.email)
        with pytest.raises(AuthError) as exc_info:
            lifecycle.confirm_account_recovery(token)
        assert exc_info.value.error_code == "TOKEN_INVALID"
        assert exc_info.value.message == (
            "Invalid or expired recovery token. Please request a new one."
        )

    def test_email_unconfigured(self, lifecycle, store, account, clock, fake_email):
        fake_email.configured = False
        _delete(store, account, clock, 1)
        with pytest.raises(AuthError) as exc_info:
            lifecycle.request_account_recovery("fan@example.com")
        assert exc_info.value.code is AuthErrorCode.SERVICE_UNAVAILABLE


class TestDeletion:
    def test_delete_requires_correct_password(self, lifecycle, account):
        with pytest.raises(AuthError) as missing:
            lifecycle.delete_account(account, None)
        with pytest.raises(AuthError) as wrong:
            lifecycle.delete_account(account, "not-my-password")
        assert missing.value.code is AuthErrorCode.VALIDATION_FAILED
        assert wrong.value.message == "Password is incorrect"

    def test_delete_sets_thirty_day_deadline(self, lifecycle, store, account, clock):
        result = lifecycle.delete_account(account, PASSWORD, "  moving away  ")
        assert result.deletion_date == clock.now + timedelta(days=30)
        assert result.grace_period_days == 30
        deleted = store.get_account(account.id)
        assert deleted.is_active is False
        assert deleted.deletion_reason == "moving away"

    def test_oauth_account_told_to_confirm_by_email(self, lifecycle, store):
        oauth_only = store.create_account(email="oauth@example.com")
        with pytest.raises(AuthError) as exc_info:
            lifecycle.delete_account(oauth_only, None)
        assert exc_info.value.message == OAUTH_DELETE_MESSAGE

    def test_deletion_summary(self, lifecycle, store, account):
        store.add_submitted_show(account.id, ShowRecord(id=1, title="Slint", event_date=None))
        store.add_saved_show(account.id, ShowRecord(id=2, title="Low", event_date=None))
        store.add_saved_show(account.id, ShowRecord(id=3, title="Codeine", event_date=None))
        summary = lifecycle.get_deletion_summary(account)
        assert (summary.shows_count, summary.saved_shows_count) == (1, 2)
        assert summary.passkeys_count == 0
        assert summary.has_password is True

    def test_purge_only_removes_accounts_past_the_window(self, lifecycle, auth, store, account, clock):
        recent = auth.register("recent@example.com", PASSWORD)
        _delete(store, account, clock, 31)
        _delete(store, recent, clock, 5)
        assert lifecycle.purge_expired_accounts() == 1
        assert store.get_account(account.id) is None
        assert store.get_account(recent.id) is not None


class TestExport:
    def test_export_document(self, lifecycle, auth, store, account):
        auth.find_or_create_oauth_account(
            ExternalIdentity("google", "g-1", email="fan@example.com"), None
        )
        store.add_saved_show(account.id, ShowRecord(id=7, title="Shellac", event_date=None))
        data = lifecycle.export_data(account)
        assert data["export_version"] == EXPORT_VERSION
        assert data["profile"]["email"] == "fan@example.com"
        assert "password_hash" not in data["profile"]
        assert [link["provider"] for link in data["oauth_accounts"]] == ["google"]
        assert "access_token" not in data["oauth_accounts"][0]
        assert [show["title"] for show in data["saved_shows"]] == ["Shellac"]
        assert data["submitted_shows"] == []


class TestEmailVerification:
    def test_send_and_confirm(self, lifecycle, auth, store, fake_email):
        account = auth.register("new@example.com", PASSWORD)
        lifecycle.send_verification_email(account)
        token = fake_email.sent[-1][2]["token"]
        verified, changed = lifecycle.confirm_email_verification(token)
        assert changed is True
        assert verified.email_verified is True
        # second confirmation is a no-op success
        assert lifecycle.confirm_email_verification(token)[1] is False

    def test_already_verified(self, lifecycle, account):
        with pytest.raises(AuthError) as exc_info:
            lifecycle.send_verification_email(account)
        assert exc_info.value.code is AuthErrorCode.ALREADY_VERIFIED

    def test_no_email(self, lifecycle, store):
        with pytest.raises(AuthError) as exc_info:
            lifecycle.send_verification_email(store.create_account())
        assert exc_info.value.code is AuthErrorCode.NO_EMAIL

    def test_email_changed_after_send(self, lifecycle, auth, store, fake_email):
        account = auth.register("new@example.com", PASSWORD)
        lifecycle.send_verification_email(account)
        token = fake_email.sent[-1][2]["token"]
        store.update_email(account.id, "other@example.com")
        with pytest.raises(AuthError) as exc_info:
            lifecycle.confirm_email_verification(token)
        assert exc_info.value.code is AuthErrorCode.EMAIL_MISMATCH


class TestMagicLink:
    def test_eligible_account_receives_link(self, lifecycle, account, fake_email):
        lifecycle.send_magic_link("fan@example.com")
        kind, to_email, payload = fake_email.sent[-1]
        assert (kind, to_email) == ("magic_link", "fan@example.com")
        assert lifecycle.verify_magic_link(payload["token"]).id == account.id

    @pytest.mark.parametrize("email", ["nobody@example.com", "unverified@example.com", "gone@example.com"])
    def test_ineligible_addresses_are_silent(self, lifecycle, auth, store, clock, fake_email, email):
        auth.register("unverified@example.com", PASSWORD)
        gone = auth.register("gone@example.com", PASSWORD)
        store.set_email_verified(gone.id, True)
        _delete(store, gone, clock, 1)
        lifecycle.send_magic_link(email)
        assert fake_email.sent == []

    def test_consumed_by_deleted_account(self, lifecycle, store, account, fake_email, clock):
        lifecycle.send_magic_link("fan@example.com")
        token = fake_email.sent[-1][2]["token"]
        _delete(store, account, clock, 0)
        with pytest.raises(AuthError) as exc_info:
            lifecycle.verify_magic_link(token)
        assert exc_info.value.code is AuthErrorCode.INVALID_CREDENTIALS

    def test_unconfigured_email(self, lifecycle, fake_email):
        fake_email.configured = False
        with pytest.raises(AuthError) as exc_info:
            lifecycle.send_magic_link("fan@example.com")
        assert exc_info.value.code is AuthErrorCode.SERVICE_UNAVAILABLE


def test_passkey_signup_consent_is_kept_on_the_account(auth):
    consent = SignupConsent(terms_accepted=True, terms_version="v3", privacy_version="v2")
    account = auth.create_passkey_account("pk@example.com", consent, display_name="pk")
    assert account.terms_version == "v3"
    assert account.password_hash is None
