import pathlib
import socket
import sys

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from booking_sync.config import AppSettings  # noqa: E402

_PUBLIC_TEST_IP = "203.0.113.10"
LOOPBACK_TEST_HOST = "loopback.example"


class FakeRedis:
    """In-memory stand-in for the redis calls used by the sync lock."""

    def __init__(self):
        self._store: dict[str, tuple[str, int]] = {}

    def set(self, key: str, value: str, *, nx: bool, ex: int) -> bool:
        if nx and key in self._store:
            return False
        self._store[key] = (str(value), int(ex))
        return True

    def ttl(self, key: str) -> int:
        row = self._store.get(key)
        if row is None:
            return -2
        return row[1]

    def get(self, key: str) -> str | None:
        row = self._store.get(key)
        if row is None:
            return None
        return row[0]

    def delete(self, key: str) -> int:
        return int(self._store.pop(key, None) is not None)

    def eval(self, _script: str, _numkeys: int, key: str, token: str) -> int:
        if self.get(key) == token:
            self.delete(key)
            return 1
        return 0


def make_settings(tmp_path: pathlib.Path) -> AppSettings:
    cfg = AppSettings(
        data_root=tmp_path,
        db_path=tmp_path / "db" / "app.db",
    )
    cfg.metrics_snapshot_path = tmp_path / "metrics.snap"
    cfg.redis_url = "redis://127.0.0.1:6379/15"
    return cfg


@pytest.fixture(autouse=True)
def _public_dns(monkeypatch):
    """Resolve every feed host to a documentation address, except the loopback fixture host."""

    def _fake_getaddrinfo(host, *_args, **_kwargs):
        ip = "127.0.0.1" if str(host) == LOOPBACK_TEST_HOST else _PUBLIC_TEST_IP
        return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", (ip, 0))]

    monkeypatch.setattr("booking_sync.ical.fetch.socket.getaddrinfo", _fake_getaddrinfo)


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()
