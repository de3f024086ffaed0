from __future__ import annotations

from uuid import uuid4

from redis import Redis

from .config import AppSettings
from .constants import SYNC_LOCK_KEY_PREFIX

_RELEASE_IF_VALUE_MATCHES_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


def sync_lock_key(configuration_id: str) -> str:
    return f"{SYNC_LOCK_KEY_PREFIX}{configuration_id}"


def _sync_lock_ttl(settings: AppSettings) -> int:
    return max(1, int(settings.sync_lock_ttl_seconds))


def _redis_client(settings: AppSettings) -> Redis:
    return Redis.from_url(settings.redis_url)


def try_acquire_sync_lock(
    configuration_id: str,
    settings: AppSettings,
    *,
    redis_client: Redis | None = None,
) -> tuple[bool, int, str | None]:
    """Take the per-configuration sync lock.

    Returns ``(acquired, ttl_or_retry_after_seconds, token)``; the token is
    required to release the lock.
    """
    client = redis_client or _redis_client(settings)
    key = sync_lock_key(configuration_id)
    ttl_seconds = _sync_lock_ttl(settings)
    lock_token = uuid4().hex
    acquired = bool(client.set(key, lock_token, nx=True, ex=ttl_seconds))
    if acquired:
        return True, ttl_seconds, lock_token

    retry_after = client.ttl(key)
    if retry_after is None or int(retry_after) <= 0:
        return False, ttl_seconds, None
    return False, int(retry_after), None


def release_sync_lock(
    configuration_id: str,
    settings: AppSettings,
    *,
    token: str | None,
    redis_client: Redis | None = None,
) -> bool:
    if token is None:
        return False
    client = redis_client or _redis_client(settings)
    result = client.eval(
        _RELEASE_IF_VALUE_MATCHES_SCRIPT,
        1,
        sync_lock_key(configuration_id),
        token,
    )
    return int(result) == 1


__all__ = [
    "release_sync_lock",
    "sync_lock_key",
    "try_acquire_sync_lock",
]
