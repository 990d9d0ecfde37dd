"""Tests for runtime wiring, periodic maintenance and the purge script."""

import importlib.util
from datetime import timedelta
from pathlib import Path

import pytest

from showauth.service.cli_callbacks import CliCallbackRegistry
from showauth.service.runtime import get_runtime, reset_runtime_for_tests
from showauth.storage.models import PasskeyChallenge, utcnow

ROOT = Path(__file__).resolve().parent.parent


def _load_purge_script():
    module_spec = importlib.util.spec_from_file_location(
        "purge_deleted_accounts", ROOT / "scripts" / "purge_deleted_accounts.py"
    )
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


def test_runtime_is_a_singleton():
    assert get_runtime() is get_runtime()


def test_reset_gives_fresh_state(runtime, password_account):
    fresh = reset_runtime_for_tests()
    assert fresh is not runtime
    assert fresh.store.get_account_by_email("fan@example.com") is None


def test_memory_registry_by_default(runtime):
    assert isinstance(runtime.registry, CliCallbackRegistry)


def test_redis_backend_requires_redis(monkeypatch):
    monkeypatch.setenv("CLI_CALLBACK_BACKEND", "redis")
    with pytest.raises(RuntimeError):
        reset_runtime_for_tests()


def test_maintenance_purges_and_sweeps(runtime, password_account):
    runtime.store.soft_delete_account(password_account.id, now=utcnow() - timedelta(days=31))
    keeper = runtime.auth.register("keeper@example.com", "Velvet-Underground-1967")
    runtime.store.soft_delete_account(keeper.id, now=utcnow() - timedelta(days=29))
    runtime.store.save_passkey_challenge(
        PasskeyChallenge.new(b"x", "authentication", ttl=timedelta(seconds=-1))
    )

    removed = runtime.run_maintenance()

    assert removed == {
        "cli_callbacks": 0,
        "oauth_states": 0,
        "passkey_challenges": 1,
        "purged_accounts": 1,
        "api_tokens": 0,
    }
    assert runtime.store.get_account(password_account.id) is None
    assert runtime.store.get_account(keeper.id) is not None
    actions = [e.action for e in runtime.store.list_audit_events(password_account.id)]
    assert "account_purged" in actions


def test_purge_script_dry_run(runtime, password_account, capsys):
    runtime.store.soft_delete_account(password_account.id, now=utcnow() - timedelta(days=40))
    result = _load_purge_script().purge(dry_run=True)
    assert result == {"found": 1, "purged": 0}
    assert f"Would purge account {password_account.id}" in capsys.readouterr().out
    assert runtime.store.get_account(password_account.id) is not None


def test_purge_script_deletes(runtime, password_account):
    runtime.store.soft_delete_account(password_account.id, now=utcnow() - timedelta(days=40))
    assert _load_purge_script().purge() == {"found": 1, "purged": 1}


def test_healthz_with_memory_store(client):
    body = client.get("/healthz").json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
    assert body["checks"]["redis"] == {"status": "not_configured"}
