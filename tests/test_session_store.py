import logging
import time
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import LockNotOwnedError

from vidvault.db import Base, engine
from vidvault.models import SessionState
from vidvault.session_store import DatabaseSessionStore, MemorySessionStore, RedisSessionStore, UploadSession


class _FakeLock:
    def __init__(self, client: "_FakeRedis", name: str, timeout) -> None:
        self.client = client
        self.name = name
        self.timeout = timeout
        self.renewals = 0
        self.lost = False

    def acquire(self) -> bool:
        self.client.locks.append(self.name)
        return True

    def reacquire(self) -> bool:
        if self.lost:
            raise LockNotOwnedError("lock expired")
        self.renewals += 1
        return True

    def release(self) -> None:
        self.client.released.append(self.name)
        if self.lost:
            raise LockNotOwnedError("cannot release a lock that's no longer owned")


class _FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.expiry: dict[str, int] = {}
        self.locks: list[str] = []
        self.released: list[str] = []
        self.handed_out: list[_FakeLock] = []

    def get(self, key):
        return self.values.get(key)

    def set(self, key, value, ex=None):
        self.values[key] = value
        self.expiry[key] = ex

    def delete(self, key):
        self.values.pop(key, None)

    def scan_iter(self, match=None):
        prefix = (match or "*").rstrip("*")
        return [key for key in list(self.values) if key.startswith(prefix)]

    def lock(self, name, timeout=None):
        lock = _FakeLock(self, name, timeout)
        self.handed_out.append(lock)
        return lock


def _session(session_id: str, expires_in: int = 600) -> UploadSession:
    now = datetime.now(timezone.utc)
    return UploadSession(
        session_id=session_id,
        owner_id="owner",
        total_chunks=4,
        destination_key=f"videos/owner/{session_id}.mp4",
        content_type="video/mp4",
        created_at=now,
        expires_at=now + timedelta(seconds=expires_in),
        metadata={"title": "Lecture"},
        received={0, 2},
        state=SessionState.accumulating,
        total_bytes=4096,
    )


def _reset_tables() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


@pytest.fixture(params=["memory", "database", "redis"])
def store(request):
    if request.param == "memory":
        return MemorySessionStore()
    if request.param == "database":
        _reset_tables()
        return DatabaseSessionStore()
    return RedisSessionStore(redis_url="", key_prefix="test:session", client=_FakeRedis())


def test_store_persists_bitmap_and_metadata(store) -> None:
    store.put(_session("s1"))

    loaded = store.get("s1")
    assert loaded is not None
    assert loaded.received == {0, 2}
    assert loaded.metadata == {"title": "Lecture"}
    assert loaded.state == SessionState.accumulating
    assert loaded.total_bytes == 4096
    assert loaded.expires_at.tzinfo is not None


def test_store_lists_only_expired_sessions(store) -> None:
    store.put(_session("old", expires_in=-5))
    store.put(_session("new", expires_in=600))

    assert store.list_expired(datetime.now(timezone.utc)) == ["old"]

    with store.lock("old"):
        store.delete("old")
    assert store.get("old") is None
    assert store.get("new") is not None


def test_memory_store_hands_out_copies() -> None:
    store = MemorySessionStore()
    store.put(_session("s1"))
    loaded = store.get("s1")
    loaded.received.add(3)
    assert store.get("s1").received == {0, 2}


def test_redis_store_keeps_key_past_expiry_and_uses_named_lock() -> None:
    client = _FakeRedis()
    store = RedisSessionStore(redis_url="", key_prefix="test:session", client=client)
    store.put(_session("s1", expires_in=600))

    assert client.expiry["test:session:s1"] >= 600 + 3600 - 5
    with store.lock("s1"):
        pass
    assert client.locks == ["test:session:s1:lock"]
    assert client.released == ["test:session:s1:lock"]


def test_redis_lock_is_renewed_while_held() -> None:
    client = _FakeRedis()
    store = RedisSessionStore(redis_url="", key_prefix="test:session", lock_timeout_seconds=0.3, client=client)

    with store.lock("s1"):
        # a slow commit holding the lock for longer than its timeout
        time.sleep(0.5)

    lock = client.handed_out[0]
    assert lock.timeout == 0.3
    assert lock.renewals >= 2
    assert client.released == ["test:session:s1:lock"]


def test_redis_lock_lost_after_commit_is_logged_not_raised(caplog) -> None:
    client = _FakeRedis()
    store = RedisSessionStore(redis_url="", key_prefix="test:session", client=client)
    caplog.set_level(logging.WARNING, logger="vidvault.session_store")

    with store.lock("s1"):
        store.put(_session("s1"))
        client.handed_out[0].lost = True

    assert store.get("s1") is not None
    assert "was lost before release" in caplog.text


def test_redis_lock_keeps_body_error() -> None:
    client = _FakeRedis()
    store = RedisSessionStore(redis_url="", key_prefix="test:session", client=client)

    with pytest.raises(RuntimeError, match="commit failed"):
        with store.lock("s1"):
            client.handed_out[0].lost = True
            raise RuntimeError("commit failed")
    assert client.released == ["test:session:s1:lock"]
