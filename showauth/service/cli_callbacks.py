from __future__ import annotations

import contextlib
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterator, Optional, Protocol

from showauth.logging import get_logger
from showauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

CLI_CALLBACK_TTL = timedelta(minutes=5)


def new_callback_id() -> str:
    """Opaque id carried in the ``cli_callback_id`` cookie (16 random bytes, hex)."""
    return secrets.token_hex(16)


class CallbackRegistry(Protocol):
    def store(self, callback_id: str, url: str) -> None: ...

    def get(self, callback_id: str) -> Optional[str]: ...

    def pop(self, callback_id: str) -> Optional[str]: ...

    def delete(self, callback_id: str) -> None: ...

    def sweep(self) -> int: ...


class ReadWriteLock:
    """Many concurrent readers or one writer.

    Writers wait for active readers to drain; new readers queue behind a
    waiting writer so a steady stream of lookups cannot starve ``store``.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextlib.contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextlib.contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass
class _Entry:
    url: str
    expires_at: datetime


class CliCallbackRegistry:
    """Process-local map of pending CLI OAuth callbacks.

    Entries live for five minutes. Expired entries are invisible to ``get``
    and are removed by the sweep that runs on every ``store`` (and by the
    app's maintenance task), never by ``get``. The lock guards map access
    only; callers do their I/O outside it.
    """

    def __init__(
        self,
        *,
        ttl: timedelta = CLI_CALLBACK_TTL,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.ttl = ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: Dict[str, _Entry] = {}
        self._lock = ReadWriteLock()

    def _sweep_locked(self, now: datetime) -> int:
        expired = [cid for cid, entry in self._entries.items() if entry.expires_at <= now]
        for cid in expired:
            del self._entries[cid]
        return len(expired)

    def store(self, callback_id: str, url: str) -> None:
        now = self._clock()
        with self._lock.write():
            self._sweep_locked(now)
            self._entries[callback_id] = _Entry(url=url, expires_at=now + self.ttl)

    def get(self, callback_id: str) -> Optional[str]:
        now = self._clock()
        with self._lock.read():
            entry = self._entries.get(callback_id)
            if entry is None or entry.expires_at <= now:
                return None
            return entry.url

    def pop(self, callback_id: str) -> Optional[str]:
        """Remove and return a live entry under one write lock, so two
        callbacks presenting the same id cannot both resolve it."""
        now = self._clock()
        with self._lock.write():
            entry = self._entries.pop(callback_id, None)
        if entry is None or entry.expires_at <= now:
            return None
        return entry.url

    def delete(self, callback_id: str) -> None:
        with self._lock.write():
            self._entries.pop(callback_id, None)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock.write():
            removed = self._sweep_locked(now)
        if removed:
            logger.debug("cli_callbacks_swept", removed=removed)
        return removed

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)


class RedisCliCallbackRegistry:
    """Registry shared by every instance behind the load balancer.

    Expiry is delegated to Redis key TTLs, so ``sweep`` has nothing to do.
    """

    def __init__(self, cache: RedisCache, *, ttl: timedelta = CLI_CALLBACK_TTL) -> None:
        self.cache = cache
        self.ttl = ttl

    def store(self, callback_id: str, url: str) -> None:
        self.cache.set_cli_callback(callback_id, url, int(self.ttl.total_seconds()))

    def get(self, callback_id: str) -> Optional[str]:
        return self.cache.get_cli_callback(callback_id)

    def pop(self, callback_id: str) -> Optional[str]:
        return self.cache.pop_cli_callback(callback_id)

    def delete(self, callback_id: str) -> None:
        self.cache.delete_cli_callback(callback_id)

    def sweep(self) -> int:
        return 0
