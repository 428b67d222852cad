"""Upload session tracker, chunk receiver and reassembler.

State machine::

    INITIALIZED -> ACCUMULATING -> COMPLETE -> COMMITTED
                                            -> FAILED
    INITIALIZED | ACCUMULATING -> EXPIRED | FAILED

All mutations of one session happen under ``store.lock(session_id)``.
The chunk that fills the bitmap moves the session to COMPLETE and, still
holding the lock, reassembles and commits it, so a session is reassembled at
most once even when two requests observe a full bitmap.
"""

import hashlib
import re
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from vidvault.chunk_buffer import ChunkBuffer
from vidvault.committer import DurableStoreCommitter
from vidvault.config import settings
from vidvault.errors import (
    CorruptedChunk,
    IncompleteUpload,
    IndexOutOfRange,
    InvalidArgument,
    SessionNotFound,
    StorageUnavailable,
    Unauthorized,
    VidvaultError,
    error_from_kind,
)
from vidvault.metrics import (
    chunk_bytes_received_total,
    chunks_accepted_total,
    corrupted_chunks_total,
    reassemblies_total,
    sessions_failed_total,
    sessions_initialized_total,
    sessions_swept_total,
)
from vidvault.models import SessionState, utc_now
from vidvault.observability import log_event
from vidvault.session_store import SessionStore, UploadSession

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9.\-]")


@dataclass(frozen=True)
class ChunkReceipt:
    received_count: int
    total_chunks: int
    complete: bool
    final_reference: str | None = None


def destination_key(owner_id: str, hint: str) -> str:
    segments = [_UNSAFE_KEY_CHARS.sub("_", part) for part in hint.split("/") if part and part not in (".", "..")]
    file_name = segments.pop() if segments else "upload"
    owner = _UNSAFE_KEY_CHARS.sub("_", owner_id)
    unique = f"{int(time.time() * 1000)}-{secrets.token_hex(4)}-{file_name}"
    return "/".join([settings.destination_prefix, owner, *segments, unique])


class UploadSessionTracker:
    def __init__(
        self,
        store: SessionStore,
        buffer: ChunkBuffer,
        committer: DurableStoreCommitter,
        ttl_seconds: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.buffer = buffer
        self.committer = committer
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.session_ttl_seconds
        self.clock = clock

    def initialize(
        self,
        total_chunks: int,
        destination_key_hint: str,
        content_type: str,
        metadata: dict[str, str] | None,
        owner_id: str,
        total_bytes: int | None = None,
    ) -> UploadSession:
        if total_chunks <= 0:
            raise InvalidArgument("totalChunks must be greater than zero")
        if total_chunks > settings.max_total_chunks:
            raise InvalidArgument(f"totalChunks must not exceed {settings.max_total_chunks}")
        if total_bytes is not None and total_bytes < 0:
            raise InvalidArgument("totalBytes must not be negative")
        if not content_type:
            raise InvalidArgument("contentType is required")

        now = self.clock()
        session = UploadSession(
            session_id=secrets.token_urlsafe(24),
            owner_id=owner_id,
            total_chunks=total_chunks,
            destination_key=destination_key(owner_id, destination_key_hint),
            content_type=content_type,
            created_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
            metadata={str(k): str(v) for k, v in (metadata or {}).items()},
            total_bytes=total_bytes,
        )
        self.store.put(session)
        sessions_initialized_total.inc()
        return session

    def status(self, session_id: str, owner_id: str | None = None) -> UploadSession:
        session = self.store.get(session_id)
        if session is None or (session.is_open and session.is_expired(self.clock())):
            raise SessionNotFound("upload session not found or expired", session_id=session_id)
        if session.state == SessionState.expired:
            raise SessionNotFound("upload session expired", session_id=session_id)
        if owner_id is not None and session.owner_id != owner_id:
            raise Unauthorized("session belongs to a different owner", session_id=session_id)
        return session

    def accept_chunk(
        self,
        session_id: str,
        index: int,
        payload: bytes,
        owner_id: str,
        digest: str | None = None,
    ) -> ChunkReceipt:
        actual_digest = hashlib.sha256(payload).hexdigest() if digest else None

        with self.store.lock(session_id):
            session = self.store.get(session_id)
            if session is None:
                raise SessionNotFound("upload session not found or expired", session_id=session_id)
            if session.owner_id != owner_id:
                raise Unauthorized("session belongs to a different owner", session_id=session_id)

            if session.state == SessionState.committed:
                return self._receipt(session)
            if session.state == SessionState.expired:
                raise SessionNotFound("upload session expired", session_id=session_id)
            if session.state == SessionState.failed:
                raise self._failure_error(session)
            if session.state == SessionState.complete:
                # COMPLETE is only observable under the lock when a previous
                # holder died mid-reassembly; the bytes are gone with it.
                raise self._fail(session, IncompleteUpload("reassembly was interrupted; re-initialize the upload"))
            if session.is_expired(self.clock()):
                session.state = SessionState.expired
                self.buffer.discard(session_id)
                self.store.put(session)
                raise SessionNotFound("upload session expired", session_id=session_id)

            if index < 0 or index >= session.total_chunks:
                raise IndexOutOfRange(
                    f"chunk index {index} outside [0, {session.total_chunks})", session_id=session_id
                )
            if not payload and session.total_bytes != 0:
                raise InvalidArgument("chunk payload is empty", session_id=session_id)
            if digest and digest.lower() != actual_digest:
                corrupted_chunks_total.inc()
                raise CorruptedChunk(f"digest mismatch for chunk {index}", session_id=session_id)

            lost = session.received - self.buffer.indices(session_id)
            if lost:
                raise self._fail(
                    session,
                    IncompleteUpload(
                        f"bytes for chunks {sorted(lost)} were lost before reassembly; re-initialize the upload"
                    ),
                )

            self.buffer.write(session_id, index, payload)
            session.received.add(index)
            session.state = SessionState.accumulating
            chunks_accepted_total.inc()
            chunk_bytes_received_total.inc(len(payload))

            if not session.all_received:
                self.store.put(session)
                return self._receipt(session)

            session.state = SessionState.complete
            self.store.put(session)
            return self._reassemble_and_commit(session)

    def abandon(self, session_id: str, owner_id: str) -> bool:
        with self.store.lock(session_id):
            session = self.store.get(session_id)
            if session is None:
                return False
            if session.owner_id != owner_id:
                raise Unauthorized("session belongs to a different owner", session_id=session_id)
            if session.state == SessionState.committed:
                return False
            self.buffer.discard(session_id)
            self.store.delete(session_id)
        log_event({"event": "session_abandoned", "session_id": session_id, "state": session.state.value})
        return True

    def sweep_expired(self) -> dict[str, int]:
        now = self.clock()
        stats = {"sessions_expired": 0, "tombstones_released": 0, "skipped_complete": 0}
        for session_id in self.store.list_expired(now):
            with self.store.lock(session_id):
                # re-read: the session may have completed since list_expired
                session = self.store.get(session_id)
                if session is None or not session.is_expired(now):
                    continue
                if session.state == SessionState.complete:
                    stats["skipped_complete"] += 1
                    continue
                self.buffer.discard(session_id)
                self.store.delete(session_id)
                if session.is_open:
                    stats["sessions_expired"] += 1
                else:
                    stats["tombstones_released"] += 1
        sessions_swept_total.inc(stats["sessions_expired"] + stats["tombstones_released"])
        return stats

    def _reassemble(self, session: UploadSession) -> bytes:
        held = self.buffer.indices(session.session_id)
        missing = [idx for idx in range(session.total_chunks) if idx not in held]
        if missing:
            raise IncompleteUpload(f"chunk bytes missing for indexes {missing}", session_id=session.session_id)
        payload = b"".join(self.buffer.read(session.session_id, idx) for idx in range(session.total_chunks))
        if session.total_bytes is not None and len(payload) != session.total_bytes:
            raise IncompleteUpload(
                f"reassembled {len(payload)} bytes, declared {session.total_bytes}",
                session_id=session.session_id,
            )
        return payload

    def _reassemble_and_commit(self, session: UploadSession) -> ChunkReceipt:
        try:
            payload = self._reassemble(session)
            reassemblies_total.inc()
            reference = self.committer.commit(session, payload)
        except (IncompleteUpload, StorageUnavailable) as exc:
            self._fail(session, exc)
            raise

        session.state = SessionState.committed
        session.final_reference = reference
        self.buffer.discard(session.session_id)
        self.store.put(session)
        log_event(
            {
                "event": "session_committed",
                "session_id": session.session_id,
                "destination_key": reference,
                "total_chunks": session.total_chunks,
                "bytes": len(payload),
            }
        )
        return self._receipt(session)

    def _fail(self, session: UploadSession, error: VidvaultError) -> VidvaultError:
        session.state = SessionState.failed
        session.failure = f"{error.kind}: {error.detail}"
        self.buffer.discard(session.session_id)
        self.store.put(session)
        sessions_failed_total.labels(reason=error.kind).inc()
        log_event(
            {
                "event": "session_failed",
                "session_id": session.session_id,
                "error_class": error.kind,
                "detail": error.detail,
            }
        )
        error.session_id = session.session_id
        return error

    @staticmethod
    def _failure_error(session: UploadSession) -> VidvaultError:
        kind, _, detail = (session.failure or "incomplete_upload: session failed").partition(": ")
        error = error_from_kind(kind, f"session failed earlier ({detail}); re-initialize the upload")
        error.session_id = session.session_id
        return error

    @staticmethod
    def _receipt(session: UploadSession) -> ChunkReceipt:
        return ChunkReceipt(
            received_count=session.received_count,
            total_chunks=session.total_chunks,
            complete=session.state == SessionState.committed,
            final_reference=session.final_reference,
        )
