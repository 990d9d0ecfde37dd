from __future__ import annotations

import math
import threading
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from showauth.config import CliCallbackBackend, get_settings, reset_settings_cache
from showauth.logging import get_logger
from showauth.service.api_tokens import ApiTokenService
from showauth.service.apple import AppleAuthService
from showauth.service.audit import AuditLog
from showauth.service.auth import AuthService
from showauth.service.cli_callbacks import (
    CallbackRegistry,
    CliCallbackRegistry,
    RedisCliCallbackRegistry,
)
from showauth.service.email import EmailSender
from showauth.service.lifecycle import AccountLifecycleService
from showauth.service.notify import DiscordNotifier
from showauth.service.oauth import OAuthBridge, OAuthCompleter
from showauth.service.passkeys import PasskeyService
from showauth.service.password_validator import PasswordValidator
from showauth.service.tokens import TokenIssuer
from showauth.storage.memory import MemoryStore
from showauth.storage.postgres import PostgresStore
from showauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    # tests get a fresh store per runtime
                    fs_root=None if self.settings.test_mode else self.settings.shared_fs_root,
                    token_encryption_key=self.settings.oauth_secret_key,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    token_encryption_key=self.settings.oauth_secret_key,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_unavailable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )

        self.registry: CallbackRegistry
        if self.settings.cli_callback_backend is CliCallbackBackend.REDIS:
            if self.cache is None:
                raise RuntimeError(
                    "CLI_CALLBACK_BACKEND=redis requires a reachable REDIS_URL"
                )
            self.registry = RedisCliCallbackRegistry(self.cache)
        else:
            self.registry = CliCallbackRegistry()

        self.audit = AuditLog(self.store)
        self.tokens = TokenIssuer(self.settings)
        self.validator = PasswordValidator(check_breaches=self.settings.hibp_check_enabled)
        self.auth = AuthService(
            self.store, self.settings, validator=self.validator, audit=self.audit
        )
        self.email = EmailSender.from_settings(self.settings)
        self.notifier = DiscordNotifier(self.settings)
        self.lifecycle = AccountLifecycleService(
            self.store,
            self.settings,
            auth=self.auth,
            tokens=self.tokens,
            email=self.email,
            shows=self.store,
            audit=self.audit,
        )
        self.oauth_completer = OAuthCompleter(self.settings, self.cache)
        self.oauth = OAuthBridge(
            self.settings,
            auth=self.auth,
            tokens=self.tokens,
            registry=self.registry,
            completer=self.oauth_completer,
        )
        self.passkeys = PasskeyService(self.store, self.settings, auth=self.auth)
        self.apple = AppleAuthService(self.settings, auth=self.auth)
        self.api_tokens = ApiTokenService(self.store, self.settings, audit=self.audit)

        self._local_rate_limits: Dict[str, Tuple[float, float]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            cli_callback_backend=self.settings.cli_callback_backend.value,
            email_configured=self.email.is_configured,
            discord_configured=self.notifier.is_configured(),
            apple_configured=bool(self.settings.apple_bundle_id),
        )

    def run_maintenance(self) -> dict:
        """Sweep expired short-lived state and purge accounts past recovery."""
        return {
            "cli_callbacks": self.registry.sweep(),
            "oauth_states": self.oauth_completer.cleanup_expired_states(),
            "passkey_challenges": self.store.cleanup_expired_challenges(),
            "purged_accounts": self.lifecycle.purge_expired_accounts(),
            "api_tokens": self.api_tokens.cleanup(),
        }

    def close(self) -> None:
        if self.cache is not None:
            try:
                self.cache.close()
            except Exception as exc:
                logger.warning("redis_close_failed", error=str(exc))
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


def check_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int
) -> Tuple[bool, int, int]:
    """Token-bucket check for ``key``; Redis when configured, else in-process.

    Returns ``(allowed, remaining, retry_after_seconds)``. A non-positive
    ``limit`` disables the check.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache is not None:
        try:
            return runtime.cache.check_rate_limit(key, limit, window_seconds)
        except Exception as exc:
            logger.warning("rate_limit_redis_failed", error=str(exc))
    refill_rate = float(limit) / float(window_seconds)
    now = time.monotonic()
    with runtime._local_rate_limit_lock:
        tokens, last = runtime._local_rate_limits.get(key, (float(limit), now))
        tokens = min(float(limit), tokens + max(0.0, now - last) * refill_rate)
        allowed = tokens >= 1
        if allowed:
            tokens -= 1
        runtime._local_rate_limits[key] = (tokens, now)
        retry_after = 0 if allowed else max(1, math.ceil((1 - tokens) / refill_rate))
        return allowed, int(tokens), retry_after
