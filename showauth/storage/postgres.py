from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from showauth.logging import get_logger
from showauth.storage.common import ProviderTokenCipher, normalize_email
from showauth.storage.errors import ConstraintViolation
from showauth.storage.models import (
    Account,
    ApiToken,
    AuditEvent,
    OAuthAccount,
    PasskeyChallenge,
    PasskeyCredential,
    ShowRecord,
    utcnow,
)

_ACCOUNT_COLUMNS = frozenset(
    {
        "email",
        "password_hash",
        "username",
        "first_name",
        "last_name",
        "avatar_url",
        "email_verified",
        "is_admin",
        "terms_accepted_at",
        "terms_version",
        "privacy_version",
    }
)

# Constraint name -> field reported in ConstraintViolation.detail
_UNIQUE_FIELDS = {
    "users_email_key": "email",
    "users_username_key": "username",
    "oauth_accounts_provider_provider_user_id_key": "provider_user_id",
    "oauth_accounts_user_id_provider_key": "provider",
    "webauthn_credentials_credential_id_key": "credential_id",
}


def _unique_field(exc: errors.UniqueViolation) -> Optional[str]:
    diag = getattr(exc, "diag", None)
    name = getattr(diag, "constraint_name", None)
    return _UNIQUE_FIELDS.get(name or "")


class PostgresStore:
    """Postgres-backed credential store.

    Per-account read-modify-write operations are single statements
    (``UPDATE ... RETURNING``) so concurrent requests cannot lose updates
    without an application lock.
    """

    REQUIRED_TABLES = (
        "users",
        "oauth_accounts",
        "webauthn_credentials",
        "webauthn_challenges",
        "audit_logs",
        "api_tokens",
    )

    def __init__(self, dsn: str, *, token_encryption_key: Optional[str] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.token_cipher = ProviderTokenCipher(token_encryption_key)
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = [
                table
                for table in self.REQUIRED_TABLES
                if not (
                    conn.execute(
                        "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                    ).fetchone()
                    or {}
                ).get("oid")
            ]
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_showauth.sql.".format(
                    ", ".join(sorted(missing))
                )
            )

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ----------------------------------------------------------

    @staticmethod
    def _account_from_row(row: dict) -> Account:
        return Account(
            id=row["id"],
            email=row.get("email"),
            password_hash=row.get("password_hash"),
            username=row.get("username"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            avatar_url=row.get("avatar_url"),
            is_active=row.get("is_active", True),
            is_admin=row.get("is_admin", False),
            email_verified=row.get("email_verified", False),
            failed_login_attempts=row.get("failed_login_attempts", 0),
            locked_until=row.get("locked_until"),
            deleted_at=row.get("deleted_at"),
            deletion_reason=row.get("deletion_reason"),
            terms_accepted_at=row.get("terms_accepted_at"),
            terms_version=row.get("terms_version"),
            privacy_version=row.get("privacy_version"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _oauth_from_row(row: dict) -> OAuthAccount:
        return OAuthAccount(
            account_id=row["user_id"],
            provider=row["provider"],
            provider_user_id=row["provider_user_id"],
            provider_email=row.get("provider_email"),
            provider_name=row.get("provider_name"),
            provider_avatar_url=row.get("provider_avatar_url"),
            access_token=row.get("access_token"),
            refresh_token=row.get("refresh_token"),
            expires_at=row.get("expires_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _passkey_from_row(row: dict) -> PasskeyCredential:
        return PasskeyCredential(
            id=row["id"],
            account_id=row["user_id"],
            credential_id=bytes(row["credential_id"]),
            public_key=bytes(row["public_key"]),
            sign_count=row.get("sign_count", 0),
            aaguid=row.get("aaguid"),
            transports=list(row.get("transports") or []),
            backup_eligible=row.get("backup_eligible", False),
            backup_state=row.get("backup_state", False),
            clone_warning=row.get("clone_warning", False),
            display_name=row.get("display_name") or "Passkey",
            created_at=row.get("created_at") or utcnow(),
            last_used_at=row.get("last_used_at"),
        )

    @staticmethod
    def _api_token_from_row(row: dict) -> ApiToken:
        return ApiToken(
            id=row["id"],
            account_id=row["user_id"],
            token_hash=row["token_hash"].strip(),
            expires_at=row["expires_at"],
            description=row.get("description"),
            scope=row.get("scope") or "admin",
            created_at=row.get("created_at") or utcnow(),
            last_used_at=row.get("last_used_at"),
            revoked_at=row.get("revoked_at"),
        )

    @staticmethod
    def _challenge_from_row(row: dict) -> PasskeyChallenge:
        meta = row.get("meta")
        if isinstance(meta, str):
            meta = json.loads(meta)
        return PasskeyChallenge(
            id=str(row["id"]),
            challenge=bytes(row["challenge"]),
            operation=row["operation"],
            expires_at=row["expires_at"],
            account_id=row.get("user_id"),
            email=row.get("email"),
            display_name=row.get("display_name"),
            meta=meta,
        )

    # -- accounts -------------------------------------------------------------

    def create_account(self, **fields: Any) -> Account:
        unknown = set(fields) - _ACCOUNT_COLUMNS
        if unknown:
            raise ValueError(f"unknown account fields: {sorted(unknown)}")
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        columns = list(fields)
        placeholders = ", ".join(["%s"] * len(columns))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"INSERT INTO users ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *",
                    [fields[c] for c in columns],
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "account already exists", {"field": _unique_field(exc) or "email"}
            ) from exc
        return self._account_from_row(row)

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (account_id,)).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE lower(email) = %s", (normalized,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def _update_account(self, account_id: int, sql_set: str, params: tuple) -> Account:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE users SET {sql_set}, updated_at = now() WHERE id = %s RETURNING *",
                (*params, account_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return self._account_from_row(row)

    def update_email(self, account_id: int, email: str) -> Account:
        try:
            return self._update_account(
                account_id, "email = %s, email_verified = FALSE", (normalize_email(email),)
            )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc

    def update_password_hash(self, account_id: int, password_hash: str) -> Account:
        return self._update_account(account_id, "password_hash = %s", (password_hash,))

    def set_email_verified(self, account_id: int, verified: bool = True) -> Account:
        return self._update_account(account_id, "email_verified = %s", (verified,))

    def record_failed_login(
        self,
        account_id: int,
        *,
        threshold: int,
        lock_duration: timedelta,
        now: Optional[datetime] = None,
    ) -> Account:
        """Increment the failure counter and lock in the same statement."""
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET failed_login_attempts = failed_login_attempts + 1,
                    locked_until = CASE
                        WHEN failed_login_attempts + 1 >= %s THEN %s
                        ELSE locked_until
                    END,
                    updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (threshold, now + lock_duration, now, account_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return self._account_from_row(row)

    def reset_failed_logins(self, account_id: int) -> Account:
        return self._update_account(
            account_id, "failed_login_attempts = 0, locked_until = %s", (None,)
        )

    def soft_delete_account(
        self,
        account_id: int,
        *,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Account:
        return self._update_account(
            account_id,
            "is_active = FALSE, deleted_at = %s, deletion_reason = %s, "
            "failed_login_attempts = 0, locked_until = NULL",
            (now or utcnow(), reason),
        )

    def reactivate_account(self, account_id: int) -> Account:
        return self._update_account(
            account_id,
            "is_active = TRUE, deleted_at = NULL, deletion_reason = NULL, "
            "failed_login_attempts = 0, locked_until = %s",
            (None,),
        )

    def list_expired_deleted_accounts(self, cutoff: datetime) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM users WHERE deleted_at IS NOT NULL AND deleted_at < %s ORDER BY id",
                (cutoff,),
            ).fetchall()
        return [self._account_from_row(row) for row in rows]

    def hard_delete_account(self, account_id: int) -> bool:
        """Delete the account row; shows it submitted are kept but orphaned."""
        with self._connect() as conn:
            if conn.execute("SELECT to_regclass('public.shows') AS oid").fetchone().get("oid"):
                conn.execute(
                    "UPDATE shows SET submitted_by = NULL WHERE submitted_by = %s",
                    (account_id,),
                )
            result = conn.execute("DELETE FROM users WHERE id = %s", (account_id,))
            return result.rowcount > 0

    # -- linked OAuth identities ----------------------------------------------

    def get_oauth_account(self, provider: str, provider_user_id: str) -> Optional[OAuthAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_accounts WHERE provider = %s AND provider_user_id = %s",
                (provider, provider_user_id),
            ).fetchone()
        return self._oauth_from_row(row) if row else None

    def link_oauth_account(
        self,
        account_id: int,
        provider: str,
        provider_user_id: str,
        *,
        provider_email: Optional[str] = None,
        provider_name: Optional[str] = None,
        provider_avatar_url: Optional[str] = None,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> OAuthAccount:
        """Insert or refresh a link; a link owned by another account is a violation."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO oauth_accounts (
                        user_id, provider, provider_user_id, provider_email, provider_name,
                        provider_avatar_url, access_token, refresh_token, expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (provider, provider_user_id) DO UPDATE
                    SET provider_email = EXCLUDED.provider_email,
                        provider_name = EXCLUDED.provider_name,
                        provider_avatar_url = EXCLUDED.provider_avatar_url,
                        access_token = EXCLUDED.access_token,
                        refresh_token = EXCLUDED.refresh_token,
                        expires_at = EXCLUDED.expires_at,
                        updated_at = now()
                    WHERE oauth_accounts.user_id = EXCLUDED.user_id
                    RETURNING *
                    """,
                    (
                        account_id,
                        provider,
                        provider_user_id,
                        provider_email,
                        provider_name,
                        provider_avatar_url,
                        self.token_cipher.encrypt(access_token),
                        self.token_cipher.encrypt(refresh_token),
                        expires_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "external identity already linked",
                {"field": _unique_field(exc) or "provider_user_id", "provider": provider},
            ) from exc
        if row is None:
            # ON CONFLICT matched a row owned by a different account
            raise ConstraintViolation(
                "external identity already linked to another account",
                {"field": "provider_user_id", "provider": provider},
            )
        return self._oauth_from_row(row)

    def list_oauth_accounts(self, account_id: int) -> List[OAuthAccount]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM oauth_accounts WHERE user_id = %s ORDER BY created_at",
                (account_id,),
            ).fetchall()
        return [self._oauth_from_row(row) for row in rows]

    def unlink_oauth_account(self, account_id: int, provider: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM oauth_accounts WHERE user_id = %s AND provider = %s",
                (account_id, provider),
            )
            return result.rowcount > 0

    def decrypt_provider_token(self, ciphertext: Optional[str]) -> Optional[str]:
        return self.token_cipher.decrypt(ciphertext)

    # -- passkey credentials --------------------------------------------------

    def add_passkey_credential(
        self,
        account_id: int,
        credential_id: bytes,
        public_key: bytes,
        *,
        sign_count: int = 0,
        aaguid: Optional[str] = None,
        transports: Optional[List[str]] = None,
        backup_eligible: bool = False,
        backup_state: bool = False,
        display_name: str = "Passkey",
    ) -> PasskeyCredential:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO webauthn_credentials (
                        user_id, credential_id, public_key, sign_count, aaguid, transports,
                        backup_eligible, backup_state, display_name
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        credential_id,
                        public_key,
                        sign_count,
                        aaguid,
                        list(transports or []),
                        backup_eligible,
                        backup_state,
                        display_name,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "credential already registered", {"field": "credential_id"}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("account not found", {"account_id": account_id}) from exc
        return self._passkey_from_row(row)

    def get_passkey_credential(self, credential_id: bytes) -> Optional[PasskeyCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM webauthn_credentials WHERE credential_id = %s", (credential_id,)
            ).fetchone()
        return self._passkey_from_row(row) if row else None

    def list_passkey_credentials(self, account_id: int) -> List[PasskeyCredential]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM webauthn_credentials WHERE user_id = %s ORDER BY id",
                (account_id,),
            ).fetchall()
        return [self._passkey_from_row(row) for row in rows]

    def update_passkey_usage(
        self,
        passkey_id: int,
        sign_count: int,
        *,
        used_at: Optional[datetime] = None,
        backup_state: Optional[bool] = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE webauthn_credentials
                SET sign_count = %s,
                    last_used_at = %s,
                    backup_state = COALESCE(%s, backup_state)
                WHERE id = %s
                """,
                (sign_count, used_at or utcnow(), backup_state, passkey_id),
            )

    def flag_passkey_clone(self, passkey_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE webauthn_credentials SET clone_warning = TRUE WHERE id = %s",
                (passkey_id,),
            )

    def rename_passkey_credential(
        self, account_id: int, passkey_id: int, display_name: str
    ) -> Optional[PasskeyCredential]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE webauthn_credentials SET display_name = %s
                WHERE id = %s AND user_id = %s
                RETURNING *
                """,
                (display_name, passkey_id, account_id),
            ).fetchone()
        return self._passkey_from_row(row) if row else None

    def delete_passkey_credential(self, account_id: int, passkey_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM webauthn_credentials WHERE id = %s AND user_id = %s",
                (passkey_id, account_id),
            )
            return result.rowcount > 0

    # -- passkey challenges ---------------------------------------------------

    def save_passkey_challenge(self, challenge: PasskeyChallenge) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO webauthn_challenges (
                    id, user_id, challenge, operation, email, display_name, meta, expires_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    challenge.id,
                    challenge.account_id,
                    challenge.challenge,
                    challenge.operation,
                    challenge.email,
                    challenge.display_name,
                    json.dumps(challenge.meta) if challenge.meta is not None else None,
                    challenge.expires_at,
                ),
            )

    def get_passkey_challenge(
        self, challenge_id: str, *, now: Optional[datetime] = None
    ) -> Optional[PasskeyChallenge]:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM webauthn_challenges WHERE id = %s", (challenge_id,)
            ).fetchone()
            if row and row["expires_at"] <= now:
                conn.execute("DELETE FROM webauthn_challenges WHERE id = %s", (challenge_id,))
                return None
        return self._challenge_from_row(row) if row else None

    def delete_passkey_challenge(self, challenge_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM webauthn_challenges WHERE id = %s", (challenge_id,))

    def cleanup_expired_challenges(self, *, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM webauthn_challenges WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount

    # -- API tokens -------------------------------------------------------------

    def create_api_token(
        self,
        account_id: int,
        token_hash: str,
        expires_at: datetime,
        *,
        description: Optional[str] = None,
        scope: str = "admin",
    ) -> ApiToken:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO api_tokens (user_id, token_hash, description, scope, expires_at)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (account_id, token_hash, description, scope, expires_at),
            ).fetchone()
        return self._api_token_from_row(row)

    def get_api_token_by_hash(self, token_hash: str) -> Optional[ApiToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM api_tokens WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._api_token_from_row(row) if row else None

    def list_api_tokens(self, account_id: int) -> List[ApiToken]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM api_tokens
                WHERE user_id = %s AND revoked_at IS NULL
                ORDER BY created_at DESC, id DESC
                """,
                (account_id,),
            ).fetchall()
        return [self._api_token_from_row(row) for row in rows]

    def revoke_api_token(
        self, account_id: int, token_id: int, *, now: Optional[datetime] = None
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE api_tokens SET revoked_at = %s
                WHERE id = %s AND user_id = %s AND revoked_at IS NULL
                """,
                (now or utcnow(), token_id, account_id),
            )
            return result.rowcount > 0

    def touch_api_token(self, token_id: int, *, used_at: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE api_tokens SET last_used_at = %s WHERE id = %s",
                (used_at or utcnow(), token_id),
            )

    def cleanup_api_tokens(self, cutoff: datetime, *, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM api_tokens
                WHERE (expires_at < %s AND expires_at < %s)
                   OR (revoked_at IS NOT NULL AND revoked_at < %s)
                """,
                (now or utcnow(), cutoff, cutoff),
            )
            return result.rowcount

    # -- show activity (read-only) ----------------------------------------------

    def count_submitted_shows(self, account_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM shows WHERE submitted_by = %s", (account_id,)
            ).fetchone()
        return int(row["n"]) if row else 0

    def count_saved_shows(self, account_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM user_saved_shows WHERE user_id = %s", (account_id,)
            ).fetchone()
        return int(row["n"]) if row else 0

    _SHOW_SELECT = """
        SELECT s.id, s.title, s.event_date::text AS event_date, {saved_at} AS saved_at,
               (SELECT v.name FROM show_venues sv JOIN venues v ON v.id = sv.venue_id
                WHERE sv.show_id = s.id ORDER BY sv.venue_id LIMIT 1) AS venue
        FROM shows s
    """

    @staticmethod
    def _show_from_row(row: dict) -> ShowRecord:
        return ShowRecord(
            id=row["id"],
            title=row.get("title") or "",
            event_date=row.get("event_date"),
            venue=row.get("venue"),
            saved_at=row.get("saved_at"),
        )

    def list_saved_shows(self, account_id: int) -> List[ShowRecord]:
        query = self._SHOW_SELECT.format(saved_at="us.created_at") + """
            JOIN user_saved_shows us ON us.show_id = s.id
            WHERE us.user_id = %s
            ORDER BY us.created_at DESC
        """
        with self._connect() as conn:
            rows = conn.execute(query, (account_id,)).fetchall()
        return [self._show_from_row(row) for row in rows]

    def list_submitted_shows(self, account_id: int) -> List[ShowRecord]:
        query = self._SHOW_SELECT.format(saved_at="NULL::timestamptz") + """
            WHERE s.submitted_by = %s
            ORDER BY s.event_date DESC
        """
        with self._connect() as conn:
            rows = conn.execute(query, (account_id,)).fetchall()
        return [self._show_from_row(row) for row in rows]

    # -- audit ----------------------------------------------------------------

    def record_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_logs (user_id, action, metadata, created_at)
                VALUES (%s, %s, %s, %s)
                """,
                (
                    event.account_id,
                    event.action,
                    json.dumps(event.metadata, default=str) if event.metadata else None,
                    event.created_at,
                ),
            )

    def list_audit_events(self, account_id: Optional[int] = None) -> List[AuditEvent]:
        with self._connect() as conn:
            if account_id is None:
                rows = conn.execute(
                    "SELECT * FROM audit_logs ORDER BY id"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_logs WHERE user_id = %s ORDER BY id", (account_id,)
                ).fetchall()
        return [
            AuditEvent(
                action=row["action"],
                account_id=row.get("user_id"),
                metadata=row.get("metadata"),
                created_at=row.get("created_at") or utcnow(),
            )
            for row in rows
        ]
