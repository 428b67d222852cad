"""Durable side-cache for upload session state.

The tracker never keeps session state in module globals; it talks to one of
these stores, chosen by ``settings.side_cache_backend``:

* ``memory``   single process, nothing survives a restart
* ``database`` SQLAlchemy table, survives restarts of a single instance
* ``redis``    shared cache, lets several instances see the same bitmap

Only metadata and the received-chunk bitmap are persisted here. Chunk bytes
live in :mod:`vidvault.chunk_buffer`.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import select

from vidvault.config import settings
from vidvault.db import SessionLocal
from vidvault.models import OPEN_STATES, SessionState, UploadSessionRecord

logger = logging.getLogger(__name__)


@dataclass
class UploadSession:
    session_id: str
    owner_id: str
    total_chunks: int
    destination_key: str
    content_type: str
    created_at: datetime
    expires_at: datetime
    metadata: dict[str, str] = field(default_factory=dict)
    received: set[int] = field(default_factory=set)
    state: SessionState = SessionState.initialized
    total_bytes: int | None = None
    final_reference: str | None = None
    failure: str | None = None

    @property
    def received_count(self) -> int:
        return len(self.received)

    @property
    def all_received(self) -> bool:
        return len(self.received) == self.total_chunks

    @property
    def is_open(self) -> bool:
        return self.state in OPEN_STATES

    def missing_indexes(self) -> list[int]:
        return [idx for idx in range(self.total_chunks) if idx not in self.received]

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def copy(self) -> "UploadSession":
        return replace(self, metadata=dict(self.metadata), received=set(self.received))

    def to_json(self) -> str:
        return json.dumps(
            {
                "session_id": self.session_id,
                "owner_id": self.owner_id,
                "total_chunks": self.total_chunks,
                "destination_key": self.destination_key,
                "content_type": self.content_type,
                "created_at": self.created_at.isoformat(),
                "expires_at": self.expires_at.isoformat(),
                "metadata": self.metadata,
                "received": sorted(self.received),
                "state": self.state.value,
                "total_bytes": self.total_bytes,
                "final_reference": self.final_reference,
                "failure": self.failure,
            },
            separators=(",", ":"),
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, payload: str) -> "UploadSession":
        parsed = json.loads(payload)
        parsed["created_at"] = datetime.fromisoformat(parsed["created_at"])
        parsed["expires_at"] = datetime.fromisoformat(parsed["expires_at"])
        parsed["received"] = set(parsed["received"])
        parsed["state"] = SessionState(parsed["state"])
        return cls(**parsed)


class SessionLocks:
    """One lock per session id; distinct sessions never contend."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def get(self, session_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[session_id] = lock
            return lock

    def forget(self, session_id: str) -> None:
        with self._guard:
            self._locks.pop(session_id, None)


class SessionStore:
    def get(self, session_id: str) -> UploadSession | None:
        raise NotImplementedError

    def put(self, session: UploadSession) -> None:
        raise NotImplementedError

    def delete(self, session_id: str) -> None:
        raise NotImplementedError

    def list_expired(self, now: datetime) -> list[str]:
        raise NotImplementedError

    def lock(self, session_id: str):
        """Context manager serializing mutations of one session."""
        raise NotImplementedError


class _LocalLockingStore(SessionStore):
    def __init__(self) -> None:
        self._locks = SessionLocks()

    @contextmanager
    def lock(self, session_id: str) -> Iterator[None]:
        with self._locks.get(session_id):
            yield

    def _forget_lock(self, session_id: str) -> None:
        self._locks.forget(session_id)


class MemorySessionStore(_LocalLockingStore):
    def __init__(self) -> None:
        super().__init__()
        self._guard = threading.Lock()
        self._sessions: dict[str, UploadSession] = {}

    def get(self, session_id: str) -> UploadSession | None:
        with self._guard:
            session = self._sessions.get(session_id)
            return session.copy() if session else None

    def put(self, session: UploadSession) -> None:
        with self._guard:
            self._sessions[session.session_id] = session.copy()

    def delete(self, session_id: str) -> None:
        with self._guard:
            self._sessions.pop(session_id, None)
        self._forget_lock(session_id)

    def list_expired(self, now: datetime) -> list[str]:
        with self._guard:
            return [sid for sid, session in self._sessions.items() if session.is_expired(now)]


def _aware(value: datetime) -> datetime:
    # sqlite drops tzinfo on the way back
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class DatabaseSessionStore(_LocalLockingStore):
    def __init__(self, session_factory=SessionLocal) -> None:
        super().__init__()
        self._session_factory = session_factory

    @staticmethod
    def _from_record(record: UploadSessionRecord) -> UploadSession:
        return UploadSession(
            session_id=record.session_id,
            owner_id=record.owner_id,
            total_chunks=record.total_chunks,
            destination_key=record.destination_key,
            content_type=record.content_type,
            created_at=_aware(record.created_at),
            expires_at=_aware(record.expires_at),
            metadata=json.loads(record.metadata_json or "{}"),
            received=set(json.loads(record.received_bitmap or "[]")),
            state=SessionState(record.state),
            total_bytes=record.total_bytes,
            final_reference=record.final_reference,
            failure=record.failure,
        )

    def get(self, session_id: str) -> UploadSession | None:
        with self._session_factory() as db:
            record = db.get(UploadSessionRecord, session_id)
            return self._from_record(record) if record else None

    def put(self, session: UploadSession) -> None:
        with self._session_factory() as db:
            record = db.get(UploadSessionRecord, session.session_id)
            if record is None:
                record = UploadSessionRecord(session_id=session.session_id, created_at=session.created_at)
                db.add(record)
            record.owner_id = session.owner_id
            record.total_chunks = session.total_chunks
            record.total_bytes = session.total_bytes
            record.received_bitmap = json.dumps(sorted(session.received), separators=(",", ":"))
            record.destination_key = session.destination_key
            record.content_type = session.content_type
            record.metadata_json = json.dumps(session.metadata, sort_keys=True, separators=(",", ":"))
            record.state = session.state.value
            record.final_reference = session.final_reference
            record.failure = session.failure
            record.expires_at = session.expires_at
            db.commit()

    def delete(self, session_id: str) -> None:
        with self._session_factory() as db:
            record = db.get(UploadSessionRecord, session_id)
            if record is not None:
                db.delete(record)
                db.commit()
        self._forget_lock(session_id)

    def list_expired(self, now: datetime) -> list[str]:
        with self._session_factory() as db:
            rows = db.execute(select(UploadSessionRecord.session_id, UploadSessionRecord.expires_at)).all()
        return [session_id for session_id, expires_at in rows if _aware(expires_at) <= now]


class RedisSessionStore(SessionStore):
    def __init__(self, redis_url: str, key_prefix: str, lock_timeout_seconds: float = 120, client=None) -> None:
        if client is None:
            import redis

            client = redis.Redis.from_url(redis_url, decode_responses=True)
        self._client = client
        self._prefix = key_prefix
        self._lock_timeout = lock_timeout_seconds

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}:{session_id}"

    def get(self, session_id: str) -> UploadSession | None:
        payload = self._client.get(self._key(session_id))
        return UploadSession.from_json(payload) if payload else None

    def put(self, session: UploadSession) -> None:
        # keep the key around a little past expiry so the sweeper still sees it
        ttl = int((session.expires_at - datetime.now(timezone.utc)).total_seconds()) + 3600
        self._client.set(self._key(session.session_id), session.to_json(), ex=max(60, ttl))

    def delete(self, session_id: str) -> None:
        self._client.delete(self._key(session_id))

    def list_expired(self, now: datetime) -> list[str]:
        expired: list[str] = []
        for key in self._client.scan_iter(match=f"{self._prefix}:*"):
            if key.endswith(":lock"):
                continue
            payload = self._client.get(key)
            if not payload:
                continue
            session = UploadSession.from_json(payload)
            if session.is_expired(now):
                expired.append(session.session_id)
        return expired

    @contextmanager
    def lock(self, session_id: str) -> Iterator[None]:
        """Hold the shared session lock, renewing its timeout until released.

        The timeout only bounds how long a crashed holder blocks the session;
        a live holder keeps the lock through reassembly and commit however
        long the object store write takes.
        """
        from redis.exceptions import LockError

        lock = self._client.lock(f"{self._key(session_id)}:lock", timeout=self._lock_timeout)
        lock.acquire()
        stop = threading.Event()
        heartbeat = threading.Thread(
            target=self._keep_alive, args=(lock, stop), name=f"vidvault-lock-{session_id}", daemon=True
        )
        heartbeat.start()
        try:
            yield
        finally:
            stop.set()
            heartbeat.join()
            try:
                lock.release()
            except LockError as exc:
                logger.warning("session lock %s was lost before release: %s", session_id, exc)

    def _keep_alive(self, lock, stop: threading.Event) -> None:
        from redis.exceptions import RedisError

        while not stop.wait(self._lock_timeout / 3):
            try:
                lock.reacquire()
            except RedisError as exc:
                logger.warning("could not renew session lock %s: %s", lock.name, exc)
                return


def build_session_store() -> SessionStore:
    backend = settings.side_cache_backend.lower()
    if backend == "memory":
        return MemorySessionStore()
    if backend == "database":
        return DatabaseSessionStore()
    if backend == "redis":
        return RedisSessionStore(
            redis_url=settings.redis_url,
            key_prefix=settings.redis_key_prefix,
            lock_timeout_seconds=settings.redis_lock_timeout_seconds,
        )
    raise ValueError(f"unsupported side cache backend: {settings.side_cache_backend}")
