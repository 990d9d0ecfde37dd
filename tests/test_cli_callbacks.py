"""Tests for the CLI callback registry, its read/write lock and the Redis keys behind it."""

import threading
import time
from datetime import datetime, timedelta, timezone

from showauth.service.cli_callbacks import (
    CliCallbackRegistry,
    ReadWriteLock,
    RedisCliCallbackRegistry,
    new_callback_id,
)
from showauth.storage.redis_cache import RedisCache


class Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class TestCliCallbackRegistry:
    def test_store_and_get(self):
        registry = CliCallbackRegistry()
        registry.store("abc", "http://localhost:8123/callback")
        assert registry.get("abc") == "http://localhost:8123/callback"
        # get never removes
        assert registry.get("abc") == "http://localhost:8123/callback"

    def test_expired_entry_is_invisible_but_kept_until_sweep(self):
        clock = Clock()
        registry = CliCallbackRegistry(clock=clock)
        registry.store("abc", "http://localhost:8123/callback")
        clock.now += timedelta(minutes=5)
        assert registry.get("abc") is None
        assert len(registry) == 1
        assert registry.sweep() == 1
        assert len(registry) == 0

    def test_sweep_removes_only_expired_entries(self):
        clock = Clock()
        registry = CliCallbackRegistry(clock=clock)
        registry.store("old", "http://localhost:1/cb")
        clock.now += timedelta(minutes=3)
        registry.store("new", "http://localhost:2/cb")
        clock.now += timedelta(minutes=3)
        assert registry.sweep() == 1
        assert registry.get("old") is None
        assert registry.get("new") == "http://localhost:2/cb"

    def test_store_sweeps_expired_entries(self):
        clock = Clock()
        registry = CliCallbackRegistry(clock=clock)
        registry.store("old", "http://localhost:1/cb")
        clock.now += timedelta(minutes=6)
        registry.store("new", "http://localhost:2/cb")
        assert len(registry) == 1

    def test_delete_is_idempotent(self):
        registry = CliCallbackRegistry()
        registry.store("abc", "http://localhost:8123/callback")
        registry.delete("abc")
        registry.delete("abc")
        assert registry.get("abc") is None

    def test_pop_is_single_use(self):
        registry = CliCallbackRegistry()
        registry.store("abc", "http://localhost:8123/callback")
        assert registry.pop("abc") == "http://localhost:8123/callback"
        assert registry.pop("abc") is None
        assert registry.get("abc") is None

    def test_pop_of_expired_entry_returns_none_and_removes_it(self):
        clock = Clock()
        registry = CliCallbackRegistry(clock=clock)
        registry.store("abc", "http://localhost:8123/callback")
        clock.now += timedelta(minutes=5)
        assert registry.pop("abc") is None
        assert len(registry) == 0

    def test_concurrent_pops_have_one_winner(self):
        registry = CliCallbackRegistry()
        registry.store("abc", "http://localhost:8123/callback")
        start = threading.Barrier(8, timeout=2)
        results = []

        def worker() -> None:
            start.wait()
            results.append(registry.pop("abc"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert [r for r in results if r] == ["http://localhost:8123/callback"]

    def test_callback_ids_are_hex_and_unique(self):
        ids = {new_callback_id() for _ in range(100)}
        assert len(ids) == 100
        assert all(len(cid) == 32 and int(cid, 16) >= 0 for cid in ids)

    def test_concurrent_store_and_get(self):
        registry = CliCallbackRegistry()
        errors = []

        def worker(n: int) -> None:
            try:
                for i in range(50):
                    cid = f"{n}-{i}"
                    registry.store(cid, f"http://localhost:{n}/cb")
                    assert registry.get(cid) == f"http://localhost:{n}/cb"
                    registry.delete(cid)
            except AssertionError as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        assert len(registry) == 0


class TestReadWriteLock:
    def test_readers_share_the_lock(self):
        lock = ReadWriteLock()
        inside = threading.Barrier(2, timeout=2)

        def reader() -> None:
            with lock.read():
                # both readers must be inside at once for the barrier to release
                inside.wait()

        threads = [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=3)
        assert not inside.broken

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        events = []
        writer_in = threading.Event()

        def writer() -> None:
            with lock.write():
                writer_in.set()
                time.sleep(0.05)
                events.append("writer_done")

        def reader() -> None:
            writer_in.wait()
            with lock.read():
                events.append("reader")

        w = threading.Thread(target=writer)
        r = threading.Thread(target=reader)
        w.start()
        r.start()
        w.join()
        r.join()
        assert events == ["writer_done", "reader"]


class FakeRedisCache:
    def __init__(self):
        self.values = {}

    def set_cli_callback(self, callback_id, url, ttl_seconds):
        self.values[callback_id] = (url, ttl_seconds)

    def get_cli_callback(self, callback_id):
        entry = self.values.get(callback_id)
        return entry[0] if entry else None

    def pop_cli_callback(self, callback_id):
        entry = self.values.pop(callback_id, None)
        return entry[0] if entry else None

    def delete_cli_callback(self, callback_id):
        self.values.pop(callback_id, None)


class TestRedisCliCallbackRegistry:
    def test_entries_use_five_minute_ttl(self):
        cache = FakeRedisCache()
        registry = RedisCliCallbackRegistry(cache)
        registry.store("abc", "http://localhost:8123/callback")
        assert cache.values["abc"] == ("http://localhost:8123/callback", 300)
        assert registry.get("abc") == "http://localhost:8123/callback"
        registry.delete("abc")
        assert registry.get("abc") is None

    def test_sweep_is_left_to_redis_expiry(self):
        assert RedisCliCallbackRegistry(FakeRedisCache()).sweep() == 0

    def test_pop_removes_entry(self):
        cache = FakeRedisCache()
        registry = RedisCliCallbackRegistry(cache)
        registry.store("abc", "http://localhost:8123/callback")
        assert registry.pop("abc") == "http://localhost:8123/callback"
        assert registry.pop("abc") is None


class FakeRedisClient:
    """Just enough of redis.Redis for RedisCache's callback and rate-limit keys."""

    def __init__(self):
        self.store = {}
        self.script_calls = []

    def register_script(self, script):
        def run(keys, args):
            self.script_calls.append((keys, args))
            return [1, int(args[2]) - 1, 0]

        return run

    def set(self, key, value, ex=None):
        self.store[key] = value

    def get(self, key):
        return self.store.get(key)

    def getdel(self, key):
        return self.store.pop(key, None)

    def delete(self, key):
        self.store.pop(key, None)


class TestRedisCache:
    def test_pop_cli_callback_uses_getdel(self):
        client = FakeRedisClient()
        cache = RedisCache("redis://unused", client=client)
        cache.set_cli_callback("abc", "http://localhost:8123/callback", 300)
        assert cache.pop_cli_callback("abc") == "http://localhost:8123/callback"
        assert client.store == {}

    def test_rate_limit_keys_never_hold_raw_addresses(self):
        client = FakeRedisClient()
        cache = RedisCache("redis://unused", client=client)
        assert cache.check_rate_limit("auth:203.0.113.9", 10, 60) == (True, 9, 0)
        assert len(client.script_calls) == 1
        keys, args = client.script_calls[0]
        assert keys[0].startswith("auth:rate:")
        assert "203.0.113.9" not in keys[0]
        assert args[1:] == [10 / 60, 10]
