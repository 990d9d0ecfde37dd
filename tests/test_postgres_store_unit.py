from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from showauth.storage.common import ProviderTokenCipher
from showauth.storage.errors import ConstraintViolation
from showauth.storage.models import PasskeyChallenge
from showauth.storage.postgres import PostgresStore

NOW = datetime(2026, 3, 1, 20, 0, tzinfo=timezone.utc)


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = list(rows or [])
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return self.rows


class FakeConnection:
    """Records statements and replays queued results in order."""

    def __init__(self, results=None, raises=None):
        self.results = list(results or [])
        self.raises = raises
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.raises is not None:
            raise self.raises
        return self.results.pop(0) if self.results else FakeResult()


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _store(conn=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    store.token_cipher = ProviderTokenCipher("unit-test-key-material")
    if conn is not None:
        store._connect = lambda: conn
    return store


def _user_row(**overrides):
    row = {
        "id": 7,
        "email": "fan@example.com",
        "password_hash": "$argon2id$stub",
        "is_active": True,
        "is_admin": False,
        "email_verified": True,
        "failed_login_attempts": 0,
        "locked_until": None,
        "deleted_at": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_account_row_mapping_defaults():
    account = PostgresStore._account_from_row({"id": 3, "email": None})
    assert account.id == 3
    assert account.is_active is True
    assert account.failed_login_attempts == 0
    assert account.has_password is False


def test_create_account_rejects_unknown_columns():
    with pytest.raises(ValueError):
        _store(FakeConnection()).create_account(email="a@example.com", is_superuser=True)


def test_create_account_normalizes_email():
    conn = FakeConnection([FakeResult([_user_row(email="fan@example.com")])])
    account = _store(conn).create_account(email="  Fan@Example.COM ", email_verified=False)
    sql, params = conn.statements[0]
    assert sql.startswith("INSERT INTO users (email, email_verified)")
    assert params == ["fan@example.com", False]
    assert account.email == "fan@example.com"


def test_create_account_unique_violation_is_constraint_violation():
    conn = FakeConnection(raises=errors.UniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation) as exc_info:
        _store(conn).create_account(email="fan@example.com")
    assert exc_info.value.field == "email"


def test_failed_login_is_a_single_update():
    conn = FakeConnection([FakeResult([_user_row(failed_login_attempts=5, locked_until=NOW)])])
    account = _store(conn).record_failed_login(
        7, threshold=5, lock_duration=timedelta(minutes=15), now=NOW
    )
    assert len(conn.statements) == 1
    sql, params = conn.statements[0]
    assert sql.startswith("UPDATE users SET failed_login_attempts = failed_login_attempts + 1")
    assert params == (5, NOW + timedelta(minutes=15), NOW, 7)
    assert account.locked_until == NOW


def test_failed_login_for_missing_account():
    with pytest.raises(ConstraintViolation):
        _store(FakeConnection([FakeResult()])).record_failed_login(
            99, threshold=5, lock_duration=timedelta(minutes=15)
        )


def test_soft_delete_clears_lockout():
    conn = FakeConnection([FakeResult([_user_row(is_active=False, deleted_at=NOW)])])
    account = _store(conn).soft_delete_account(7, reason="moving", now=NOW)
    sql, params = conn.statements[0]
    assert "failed_login_attempts = 0" in sql
    assert params == (NOW, "moving", 7)
    assert account.deleted_at == NOW


def test_link_owned_by_other_account_is_violation():
    # ON CONFLICT ... WHERE filters the update, so nothing is returned
    conn = FakeConnection([FakeResult()])
    with pytest.raises(ConstraintViolation) as exc_info:
        _store(conn).link_oauth_account(7, "google", "g-1")
    assert exc_info.value.field == "provider_user_id"


def test_link_encrypts_provider_tokens():
    row = {"user_id": 7, "provider": "google", "provider_user_id": "g-1", "created_at": NOW}
    conn = FakeConnection([FakeResult([row])])
    store = _store(conn)
    store.link_oauth_account(7, "google", "g-1", access_token="plain-access")
    _, params = conn.statements[0]
    encrypted = params[6]
    assert encrypted != "plain-access"
    assert store.decrypt_provider_token(encrypted) == "plain-access"


def test_passkey_row_mapping():
    credential = PostgresStore._passkey_from_row(
        {
            "id": 1,
            "user_id": 7,
            "credential_id": memoryview(b"cred"),
            "public_key": memoryview(b"pk"),
            "transports": None,
            "display_name": None,
        }
    )
    assert credential.credential_id == b"cred"
    assert credential.transports == []
    assert credential.display_name == "Passkey"


def test_expired_challenge_is_deleted_on_read():
    row = {
        "id": "c-1",
        "challenge": b"x",
        "operation": "registration",
        "expires_at": NOW - timedelta(seconds=1),
    }
    conn = FakeConnection([FakeResult([row]), FakeResult(rowcount=1)])
    assert _store(conn).get_passkey_challenge("c-1", now=NOW) is None
    assert conn.statements[1][0] == "DELETE FROM webauthn_challenges WHERE id = %s"


def test_challenge_meta_round_trips_as_json():
    challenge = PasskeyChallenge.new(
        b"x", "signup", email="new@example.com", meta={"consent": {"terms_version": "v1"}}
    )
    conn = FakeConnection()
    _store(conn).save_passkey_challenge(challenge)
    _, params = conn.statements[0]
    assert params[6] == '{"consent": {"terms_version": "v1"}}'

    row = {
        "id": challenge.id,
        "challenge": b"x",
        "operation": "signup",
        "expires_at": challenge.expires_at,
        "meta": params[6],
    }
    assert PostgresStore._challenge_from_row(row).meta == {"consent": {"terms_version": "v1"}}


def test_delete_passkey_is_owner_scoped():
    conn = FakeConnection([FakeResult(rowcount=0)])
    assert _store(conn).delete_passkey_credential(7, 1) is False
    assert conn.statements[0][1] == (1, 7)


def test_missing_schema_is_reported():
    store = _store(FakeConnection([FakeResult([{"oid": None}])] * len(PostgresStore.REQUIRED_TABLES)))
    with pytest.raises(RuntimeError) as exc_info:
        store._verify_required_schema()
    assert "sql/001_showauth.sql" in str(exc_info.value)


def test_api_token_revoke_is_owner_scoped():
    conn = FakeConnection([FakeResult(rowcount=0)])
    assert _store(conn).revoke_api_token(8, 3, now=NOW) is False
    sql, params = conn.statements[0]
    assert "revoked_at IS NULL" in sql
    assert params == (NOW, 3, 8)


def test_api_token_row_mapping():
    token = PostgresStore._api_token_from_row(
        {
            "id": 3,
            "user_id": 7,
            "token_hash": "ab" * 32,
            "expires_at": NOW,
            "scope": None,
        }
    )
    assert token.account_id == 7
    assert token.scope == "admin"
    assert token.is_revoked is False
    assert token.is_expired(NOW) is True
