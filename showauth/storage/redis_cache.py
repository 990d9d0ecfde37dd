from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Optional, Tuple

from redis import Redis


class RedisCache:
    """Thin synchronous Redis wrapper for short-lived auth state.

    Holds the login state that must survive a hop between instances: OAuth
    ``state`` nonces, pending CLI callback URLs and per-client rate-limit
    buckets.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic refill and consume; returns {allowed, tokens_left, retry_after}
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])
if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

tokens = math.min(capacity, tokens + math.max(0, now - last) * refill_rate)
if tokens < 1 then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local retry_after = math.ceil((1 - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(retry_after, 1))
  return {0, 0, retry_after}
end

tokens = tokens - 1
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', key, math.max(math.ceil(capacity / refill_rate), 1))
return {1, math.floor(tokens), 0}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """TTL from an absolute expiry, clamped to at least one second."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        self.client.ping()

    # -- OAuth state --------------------------------------------------------

    def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        self.client.set(
            f"auth:oauth:{state}", json.dumps(payload), ex=self._ttl_seconds(expires_at)
        )

    def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        """Atomically read and delete an OAuth state so it cannot be replayed."""
        cached = self.client.getdel(f"auth:oauth:{state}")
        if cached is None:
            return None
        try:
            data = json.loads(cached)
            return data["provider"], datetime.fromisoformat(data["expires_at"])
        except (json.JSONDecodeError, TypeError, KeyError, ValueError):
            return None

    # -- CLI callbacks ------------------------------------------------------

    def set_cli_callback(self, callback_id: str, url: str, ttl_seconds: int) -> None:
        self.client.set(f"auth:cli_callback:{callback_id}", url, ex=max(1, ttl_seconds))

    def get_cli_callback(self, callback_id: str) -> Optional[str]:
        return self.client.get(f"auth:cli_callback:{callback_id}")

    def pop_cli_callback(self, callback_id: str) -> Optional[str]:
        return self.client.getdel(f"auth:cli_callback:{callback_id}")

    def delete_cli_callback(self, callback_id: str) -> None:
        self.client.delete(f"auth:cli_callback:{callback_id}")

    # -- rate limits ----------------------------------------------------------

    @staticmethod
    def _rate_key(key: str) -> str:
        # client-supplied parts are hashed; the key never contains raw IPs
        return f"auth:rate:{hashlib.sha256(key.encode()).hexdigest()}"

    def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int, int]:
        """Consume one token from ``key``'s bucket.

        Returns ``(allowed, remaining, retry_after_seconds)``.
        """
        allowed, remaining, retry_after = self._token_bucket(
            keys=[self._rate_key(key)],
            args=[time.time(), float(limit) / float(window_seconds), limit],
        )
        return bool(int(allowed)), max(0, int(remaining)), int(retry_after or 0)

    def close(self) -> None:
        self.client.close()
