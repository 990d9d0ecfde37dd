from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import jwt
from jwt import PyJWKClient

from showauth.config import Settings
from showauth.logging import get_logger
from showauth.service.auth import AuthService, ExternalIdentity
from showauth.service.errors import AuthError, AuthErrorCode
from showauth.storage.models import Account

logger = get_logger(__name__)

APPLE_ISSUER = "https://appleid.apple.com"
APPLE_KEYS_URL = "https://appleid.apple.com/auth/keys"
APPLE_PROVIDER = "apple"
# Apple rotates keys rarely; refetch at most once a day
APPLE_KEYS_LIFESPAN = 24 * 60 * 60


@dataclass
class AppleIdentity:
    subject: str
    email: Optional[str]
    email_verified: bool


def _is_email_verified(value: Any) -> bool:
    # Apple sends either a JSON bool or the string "true"
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() == "true"
    return False


class AppleAuthService:
    """Verifies Sign in with Apple identity tokens and resolves the account."""

    def __init__(
        self,
        settings: Settings,
        *,
        auth: AuthService,
        jwks_client: Optional[PyJWKClient] = None,
    ) -> None:
        self.settings = settings
        self.auth = auth
        self.jwks_client = jwks_client or PyJWKClient(
            APPLE_KEYS_URL, cache_keys=True, lifespan=APPLE_KEYS_LIFESPAN
        )

    def verify_identity_token(self, identity_token: Optional[str]) -> AppleIdentity:
        if not identity_token:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Identity token is required")
        if not self.settings.apple_bundle_id:
            raise AuthError(
                AuthErrorCode.SERVICE_UNAVAILABLE, "Sign in with Apple is not configured"
            )
        try:
            signing_key = self.jwks_client.get_signing_key_from_jwt(identity_token)
            claims = jwt.decode(
                identity_token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self.settings.apple_bundle_id,
                issuer=APPLE_ISSUER,
                options={"require": ["sub", "iss", "aud", "exp"]},
            )
        except jwt.PyJWTError as exc:
            logger.warning("apple_auth_token_invalid", error=str(exc))
            raise AuthError(AuthErrorCode.TOKEN_INVALID, "Invalid Apple identity token") from exc
        return AppleIdentity(
            subject=str(claims["sub"]),
            email=claims.get("email") or None,
            email_verified=_is_email_verified(claims.get("email_verified")),
        )

    def sign_in(
        self,
        identity_token: Optional[str],
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> tuple[Account, bool]:
        """Verify the token and return the resolved account and whether it is new.

        Apple only sends the user's name on the first authorization, so the
        names are used only when an account is created.
        """
        apple = self.verify_identity_token(identity_token)
        logger.debug(
            "apple_auth_token_validated",
            apple_sub=apple.subject,
            has_email=bool(apple.email),
        )
        identity = ExternalIdentity(
            provider=APPLE_PROVIDER,
            provider_user_id=apple.subject,
            email=apple.email,
            email_verified=apple.email_verified,
            first_name=first_name or None,
            last_name=last_name or None,
        )
        try:
            account, created = self.auth.find_or_create_apple_account(identity)
        except AuthError as exc:
            if exc.code in (AuthErrorCode.INVALID_CREDENTIALS, AuthErrorCode.USER_EXISTS):
                raise
            logger.error("apple_auth_user_create_failed", error=exc.message)
            raise AuthError(
                AuthErrorCode.SERVICE_UNAVAILABLE, "Failed to process Apple sign-in"
            ) from exc
        logger.info("apple_auth_success", account_id=account.id, created=created)
        return account, created
