from __future__ import annotations

from pathlib import Path

from booking_sync.locks import release_sync_lock, sync_lock_key, try_acquire_sync_lock

from conftest import FakeRedis, make_settings


def _cfg(tmp_path: Path):
    cfg = make_settings(tmp_path)
    cfg.sync_lock_ttl_seconds = 123
    return cfg


def test_sync_lock_key_is_namespaced_per_configuration():
    assert sync_lock_key("abc") == "booking_sync:sync-lock:abc"


def test_try_acquire_sync_lock_returns_true_when_free(tmp_path: Path):
    cfg = _cfg(tmp_path)
    redis = FakeRedis()

    acquired, retry_after, token = try_acquire_sync_lock("cfg-1", cfg, redis_client=redis)

    assert acquired is True
    assert retry_after == 123
    assert token is not None
    assert redis.get(sync_lock_key("cfg-1")) == token


def test_try_acquire_sync_lock_returns_retry_after_when_held(tmp_path: Path):
    cfg = _cfg(tmp_path)
    redis = FakeRedis()
    redis.set(sync_lock_key("cfg-1"), "owned", nx=True, ex=31)

    acquired, retry_after, token = try_acquire_sync_lock("cfg-1", cfg, redis_client=redis)

    assert acquired is False
    assert retry_after == 31
    assert token is None


def test_locks_for_different_configurations_are_independent(tmp_path: Path):
    cfg = _cfg(tmp_path)
    redis = FakeRedis()

    first, _, _ = try_acquire_sync_lock("cfg-1", cfg, redis_client=redis)
    second, _, _ = try_acquire_sync_lock("cfg-2", cfg, redis_client=redis)

    assert first is True
    assert second is True


def test_release_sync_lock_deletes_key(tmp_path: Path):
    cfg = _cfg(tmp_path)
    redis = FakeRedis()
    acquired, _retry_after, token = try_acquire_sync_lock("cfg-1", cfg, redis_client=redis)
    assert acquired is True

    assert release_sync_lock("cfg-1", cfg, token=token, redis_client=redis) is True
    assert redis.get(sync_lock_key("cfg-1")) is None


def test_release_sync_lock_keeps_foreign_lock(tmp_path: Path):
    cfg = _cfg(tmp_path)
    redis = FakeRedis()
    redis.set(sync_lock_key("cfg-1"), "someone-else", nx=True, ex=60)

    assert release_sync_lock("cfg-1", cfg, token="mine", redis_client=redis) is False
    assert release_sync_lock("cfg-1", cfg, token=None, redis_client=redis) is False
    assert redis.get(sync_lock_key("cfg-1")) == "someone-else"
