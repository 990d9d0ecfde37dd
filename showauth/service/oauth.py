from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.parse import quote_plus, urlencode, urlparse

import httpx

from showauth.config import Settings
from showauth.logging import get_logger, hash_email, sanitize_error_message
from showauth.service.auth import AuthService, ConsentRequired, ExternalIdentity
from showauth.service.cli_callbacks import CallbackRegistry, new_callback_id
from showauth.service.errors import AuthError, AuthErrorCode
from showauth.service.tokens import SignupConsent, TokenIssuer
from showauth.storage.models import Account
from showauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
}

DEFAULT_PROVIDER = "google"
OAUTH_STATE_TTL = timedelta(minutes=10)
CLI_TOKEN_EXPIRES_IN = 86400

CONSENT_REQUIRED_MESSAGE = (
    "Please accept the Terms of Service and Privacy Policy before creating an account."
)
GENERIC_FAILURE_MESSAGE = "authentication failed"

_LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


def _primary_verified_email(payload: object) -> Optional[str]:
    """Pick the primary, verified address from GitHub's /user/emails list."""
    if not isinstance(payload, list):
        return None
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = entry.get("email")
        if entry.get("primary") and entry.get("verified") and isinstance(email, str) and email:
            return email
    return None


@dataclass
class OAuthBegin:
    authorization_url: str
    state: str
    consent_token: Optional[str] = None
    cli_callback_id: Optional[str] = None


@dataclass
class OAuthOutcome:
    """Where to send the browser after a provider callback.

    ``session_token`` is only set for a successful web login; the route turns
    it into the session cookie. CLI outcomes carry the token in the URL.
    """

    redirect_url: str
    success: bool
    cli: bool = False
    session_token: Optional[str] = None
    account: Optional[Account] = None
    created: bool = False


class OAuthCompleter:
    """Authorization-code exchange against the supported providers."""

    def __init__(
        self,
        settings: Settings,
        cache: Optional[RedisCache] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self._transport = transport
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._state_lock = threading.Lock()
        self._oauth_states: dict[str, tuple[str, datetime]] = {}
        self._oauth_code_registry: dict[tuple[str, str], ExternalIdentity] = {}
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def _get_oauth_credentials(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return self.settings.google_client_id, self.settings.google_client_secret
        if provider == "github":
            return self.settings.github_client_id, self.settings.github_client_secret
        return None, None

    def _redirect_uri(self, provider: str) -> str:
        configured = (
            self.settings.google_callback_url
            if provider == "google"
            else self.settings.github_callback_url
        )
        return configured or f"{self.settings.api_base_url.rstrip('/')}/v1/auth/callback/{provider}"

    def cleanup_expired_states(self) -> int:
        now = self._now()
        with self._state_lock:
            expired = [s for s, (_, exp) in self._oauth_states.items() if exp <= now]
            for state in expired:
                del self._oauth_states[state]
        return len(expired)

    def authorization_url(self, provider: str) -> tuple[str, str]:
        """Build the provider consent URL and remember its ``state`` nonce."""
        client_id, _ = self._get_oauth_credentials(provider)
        if not client_id:
            self.logger.warning("oauth_not_configured", provider=provider)
            raise AuthError(
                AuthErrorCode.SERVICE_UNAVAILABLE,
                f"{'Google' if provider == 'google' else 'GitHub'} OAuth not configured",
                status_code=503,
            )
        self.cleanup_expired_states()
        state = uuid.uuid4().hex
        expires_at = self._now() + OAUTH_STATE_TTL
        with self._state_lock:
            self._oauth_states[state] = (provider, expires_at)
        if self.cache:
            self.cache.set_oauth_state(state, provider, expires_at)

        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": self._redirect_uri(provider),
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "offline"
            params["prompt"] = "consent"
        return f"{provider_config['auth_url']}?{urlencode(params)}", state

    def _pop_state(self, state: str) -> Optional[tuple[str, datetime]]:
        with self._state_lock:
            stored = self._oauth_states.pop(state, None)
        if stored is None and self.cache:
            stored = self.cache.pop_oauth_state(state)
        elif self.cache:
            self.cache.pop_oauth_state(state)
        return stored

    def register_oauth_code(self, provider: str, code: str, identity: ExternalIdentity) -> None:
        """Record an already-exchanged identity for testing or offline flows."""
        self._oauth_code_registry[(provider, code)] = identity

    async def exchange(self, provider: str, code: Optional[str], state: Optional[str]) -> Optional[ExternalIdentity]:
        """Validate ``state`` and trade ``code`` for the provider identity.

        Every provider-side failure yields ``None``; the caller treats them
        all as one authentication failure.
        """
        if not code or not state:
            self.logger.warning("oauth_callback_missing_params", provider=provider)
            return None
        stored = self._pop_state(state)
        if not stored or stored[0] != provider or stored[1] <= self._now():
            self.logger.warning("oauth_state_invalid", provider=provider)
            return None

        registered = self._oauth_code_registry.pop((provider, code), None)
        if registered:
            return registered

        client_id, client_secret = self._get_oauth_credentials(provider)
        if not client_id or not client_secret:
            self.logger.error("oauth_credentials_missing", provider=provider)
            return None
        provider_config = OAUTH_PROVIDERS[provider]

        try:
            async with httpx.AsyncClient(
                timeout=30.0, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self._redirect_uri(provider),
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = token_result.get("access_token") if isinstance(token_result, dict) else None
                if not access_token:
                    self.logger.error("oauth_no_access_token", provider=provider)
                    return None

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(
                    provider_config["userinfo_url"], headers=userinfo_headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    self.logger.error("oauth_userinfo_invalid_format", provider=provider)
                    return None

                identity = self._parse_oauth_userinfo(provider, userinfo)
                if not identity.provider_user_id:
                    self.logger.error("oauth_identity_missing_uid", provider=provider)
                    return None

                # GitHub hides private addresses from /user
                if provider == "github" and not identity.email:
                    emails_response = await client.get(
                        "https://api.github.com/user/emails", headers=userinfo_headers
                    )
                    if emails_response.status_code == 200:
                        identity.email = _primary_verified_email(emails_response.json())
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            self.logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            return None
        except (KeyError, TypeError, AttributeError) as exc:
            self.logger.error(
                "oauth_userinfo_invalid_format", provider=provider, error_type=type(exc).__name__
            )
            return None

        identity.access_token = access_token
        identity.refresh_token = token_result.get("refresh_token")
        expires_in = token_result.get("expires_in")
        if isinstance(expires_in, (int, float)) and expires_in > 0:
            identity.expires_at = self._now() + timedelta(seconds=expires_in)
        self.logger.info(
            "oauth_exchange_success", provider=provider, email_hash=hash_email(identity.email)
        )
        return identity

    def _parse_oauth_userinfo(self, provider: str, userinfo: dict) -> ExternalIdentity:
        if provider == "google":
            return ExternalIdentity(
                provider=provider,
                provider_user_id=str(userinfo.get("id") or ""),
                email=userinfo.get("email"),
                name=userinfo.get("name"),
                first_name=userinfo.get("given_name"),
                last_name=userinfo.get("family_name"),
                avatar_url=userinfo.get("picture"),
            )
        return ExternalIdentity(
            provider=provider,
            provider_user_id=str(userinfo.get("id") or ""),
            email=userinfo.get("email"),
            name=userinfo.get("name") or userinfo.get("login"),
            avatar_url=userinfo.get("avatar_url"),
        )


class OAuthBridge:
    """Browser OAuth login for web and CLI clients.

    A login begins with an optional signup consent (returned as a consent
    token for a short-lived cookie) and an optional CLI callback URL (parked
    in the registry; only its id travels in a cookie). The callback consumes
    both, resolves the provider identity to an account and decides where the
    browser goes next.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        auth: AuthService,
        tokens: TokenIssuer,
        registry: CallbackRegistry,
        completer: OAuthCompleter,
    ) -> None:
        self.settings = settings
        self.auth = auth
        self.tokens = tokens
        self.registry = registry
        self.completer = completer

    @staticmethod
    def _validate_cli_callback(url: str) -> str:
        parsed = urlparse(url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise AuthError(
                AuthErrorCode.VALIDATION_FAILED, "Invalid CLI callback URL", status_code=400
            )
        if parsed.hostname not in _LOOPBACK_HOSTS:
            raise AuthError(
                AuthErrorCode.VALIDATION_FAILED,
                "CLI callback must point to a local address",
                status_code=400,
            )
        return url

    def begin(
        self,
        provider: str,
        *,
        cli_callback: Optional[str] = None,
        signup_intent: bool = False,
        terms_accepted: bool = False,
        terms_version: Optional[str] = None,
        privacy_version: Optional[str] = None,
    ) -> OAuthBegin:
        """Start a provider login.

        Raises:
            AuthError: ``VALIDATION_FAILED`` (HTTP 400) for an unknown
                provider, missing signup consent or a bad CLI callback;
                ``SERVICE_UNAVAILABLE`` when the provider is not configured.
        """
        if provider not in OAUTH_PROVIDERS:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Invalid provider", status_code=400)

        consent_token = None
        if signup_intent:
            if not terms_accepted or not terms_version:
                raise AuthError(
                    AuthErrorCode.VALIDATION_FAILED,
                    "Terms acceptance is required for account creation",
                    status_code=400,
                )
            consent_token = self.tokens.create_consent_token(
                SignupConsent(
                    terms_accepted=True,
                    terms_version=terms_version,
                    privacy_version=privacy_version,
                    accepted_at=datetime.now(timezone.utc),
                )
            )

        callback_id = None
        if cli_callback:
            self._validate_cli_callback(cli_callback)
            callback_id = new_callback_id()
            self.registry.store(callback_id, cli_callback)
            logger.info("cli_callback_stored", provider=provider)

        authorization_url, state = self.completer.authorization_url(provider)
        return OAuthBegin(
            authorization_url=authorization_url,
            state=state,
            consent_token=consent_token,
            cli_callback_id=callback_id,
        )

    def _resolve_cli_callback(self, callback_id: Optional[str]) -> Optional[str]:
        if not callback_id:
            return None
        try:
            return self.registry.pop(callback_id)
        except Exception as exc:
            logger.error("cli_callback_lookup_failed", error_type=type(exc).__name__, error=str(exc))
            return None

    def _read_consent(self, consent_token: Optional[str]) -> Optional[SignupConsent]:
        if not consent_token:
            return None
        try:
            return self.tokens.read_consent_token(consent_token)
        except AuthError as exc:
            logger.warning("oauth_consent_cookie_invalid", error_code=exc.error_code)
            return None

    async def complete(
        self,
        provider: Optional[str],
        *,
        code: Optional[str],
        state: Optional[str],
        cli_callback_id: Optional[str] = None,
        consent_token: Optional[str] = None,
    ) -> OAuthOutcome:
        provider = provider or DEFAULT_PROVIDER
        cli_url = self._resolve_cli_callback(cli_callback_id)
        consent = self._read_consent(consent_token)
        frontend = self.settings.frontend_url.rstrip("/")

        try:
            if provider not in OAUTH_PROVIDERS:
                raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Invalid provider")
            identity = await self.completer.exchange(provider, code, state)
            if identity is None:
                raise AuthError(AuthErrorCode.INVALID_CREDENTIALS, GENERIC_FAILURE_MESSAGE)
            account, created = self.auth.find_or_create_oauth_account(identity, consent)
            token = self.tokens.create_session_token(account)
        except ConsentRequired:
            message = CONSENT_REQUIRED_MESSAGE
        except AuthError as exc:
            logger.warning(
                "oauth_callback_failed",
                provider=provider,
                error_code=exc.error_code,
                error=exc.message,
            )
            message = GENERIC_FAILURE_MESSAGE
        except Exception as exc:
            logger.error(
                "oauth_callback_error",
                provider=provider,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            message = GENERIC_FAILURE_MESSAGE
        else:
            logger.info(
                "oauth_callback_success",
                provider=provider,
                account_id=account.id,
                created=created,
                cli=bool(cli_url),
            )
            if cli_url:
                return OAuthOutcome(
                    redirect_url=f"{cli_url}?token={quote_plus(token)}&expires_in={CLI_TOKEN_EXPIRES_IN}",
                    success=True,
                    cli=True,
                    account=account,
                    created=created,
                )
            return OAuthOutcome(
                redirect_url=frontend,
                success=True,
                session_token=token,
                account=account,
                created=created,
            )

        if cli_url:
            return OAuthOutcome(
                redirect_url=f"{cli_url}?error={quote_plus(message)}", success=False, cli=True
            )
        return OAuthOutcome(
            redirect_url=f"{frontend}/auth?error={quote_plus(message)}", success=False
        )
