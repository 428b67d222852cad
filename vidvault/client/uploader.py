"""Chunked, resumable upload of one file per job.

Chunks are dispatched through a sliding window: a slot freed by a finished
chunk immediately admits the next queued index. The window limit is read
from the ``AdaptiveController`` at each admission, so a network change only
affects chunks dispatched after it. Each chunk retries on its own:

- ``NetworkUnavailable`` pauses until the controller reports online (plus
  backoff) without consuming attempts, up to ``max_network_pauses``;
- transient failures (5xx, 429, timeouts) back off and retry up to
  ``max_retries``;
- ``CorruptedChunk`` re-slices the chunk from the source file and resends;
- anything else fails the job.

Dispatch also stops with ``NetworkUnavailable`` once the controller has
reported offline for longer than ``max_network_pauses`` online waits.
``resume`` picks up an existing session and sends only the chunks the
service reports missing.
"""

import logging
import math
import tempfile
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from vidvault.client import crypto
from vidvault.client.api import UploadApi
from vidvault.client.integrity import ChunkIntegrityVerifier
from vidvault.client.jobs import JobError, JobRegistry, JobStatus, UploadJob
from vidvault.client.network import MAX_CONCURRENCY, AdaptiveController, NetworkProbe, backoff_delay
from vidvault.client.worker import EncryptionWorker
from vidvault.errors import (
    CorruptedChunk,
    IncompleteUpload,
    InvalidArgument,
    NetworkUnavailable,
    TransientRequestError,
    VidvaultError,
)

logger = logging.getLogger(__name__)

ONLINE_WAIT_SECONDS = 30.0
STATUS_POLL_ATTEMPTS = 5


@dataclass
class _UploadRun:
    job_id: str
    source: Path
    total_bytes: int
    chunk_bytes: int
    total_chunks: int
    session_id: str = ""
    digests: dict[int, str] = field(default_factory=dict)
    completed: set[int] = field(default_factory=set)
    final_reference: str | None = None
    failure: BaseException | None = None
    inflight: int = 0
    cancel_event: threading.Event = field(default_factory=threading.Event)
    condition: threading.Condition = field(default_factory=threading.Condition)


class ChunkedUploader:
    def __init__(
        self,
        client: httpx.Client,
        controller: AdaptiveController | None = None,
        registry: JobRegistry | None = None,
        verifier: ChunkIntegrityVerifier | None = None,
        probe: NetworkProbe | None = None,
        worker: EncryptionWorker | None = None,
        chunk_bytes: int | None = None,
        max_retries: int = 3,
        max_network_pauses: int = 5,
        sleep: Callable[[float], None] | None = None,
        scratch_dir: str | Path | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.api = UploadApi(client)
        self.controller = controller or AdaptiveController()
        self.registry = registry or JobRegistry()
        self.verifier = verifier or ChunkIntegrityVerifier()
        self.probe = probe
        self.worker = worker
        self.chunk_bytes = chunk_bytes
        self.max_retries = max_retries
        self.max_network_pauses = max_network_pauses
        self.scratch_dir = scratch_dir
        self._runs: dict[str, _UploadRun] = {}
        self._runs_lock = threading.Lock()
        self._session_chunk_bytes: dict[str, int] = {}
        self.sleep = sleep or time.sleep
        self.clock = clock or time.monotonic

    def cancel(self, job_id: str) -> bool:
        with self._runs_lock:
            run = self._runs.get(job_id)
        if run is None:
            return False
        run.cancel_event.set()
        with run.condition:
            run.condition.notify_all()
        return True

    def upload(
        self,
        path: str | Path,
        destination_key_hint: str,
        content_type: str = "video/mp4",
        metadata: dict[str, str] | None = None,
        encryption_key: bytes | None = None,
    ) -> UploadJob:
        job = self.registry.create()
        scratch: tempfile.TemporaryDirectory | None = None
        try:
            source = Path(path)
            if encryption_key is not None:
                scratch = tempfile.TemporaryDirectory(dir=self.scratch_dir, prefix="vidvault-")
                source = self._encrypt_source(source, Path(scratch.name) / (source.name + ".enc"), encryption_key)
                metadata = {**(metadata or {}), "encrypted": "true"}
            return self._upload(job.id, source, destination_key_hint, content_type, metadata or {})
        except VidvaultError as exc:
            logger.warning("upload job %s failed: %s: %s", job.id, exc.kind, exc.detail)
            return self.registry.update(job.id, status=JobStatus.failed, error=JobError.from_exception(exc))
        except Exception as exc:
            self.registry.update(job.id, status=JobStatus.failed, error=JobError.from_exception(exc))
            raise
        finally:
            with self._runs_lock:
                self._runs.pop(job.id, None)
            if scratch is not None:
                scratch.cleanup()

    def resume(self, session_id: str, path: str | Path, chunk_bytes: int | None = None) -> UploadJob:
        """Continue an existing session, sending only its missing chunks.

        ``path`` must hold the exact bytes the session was started with (for an
        encrypted upload, the ciphertext file). ``chunk_bytes`` defaults to the
        size this uploader used for the session, then to ``self.chunk_bytes``.
        """
        job = self.registry.create()
        try:
            return self._resume(job.id, session_id, Path(path), chunk_bytes)
        except VidvaultError as exc:
            logger.warning("resume job %s for session %s failed: %s: %s", job.id, session_id, exc.kind, exc.detail)
            return self.registry.update(job.id, status=JobStatus.failed, error=JobError.from_exception(exc))
        except Exception as exc:
            self.registry.update(job.id, status=JobStatus.failed, error=JobError.from_exception(exc))
            raise
        finally:
            with self._runs_lock:
                self._runs.pop(job.id, None)

    def _resume(self, job_id: str, session_id: str, source: Path, chunk_bytes: int | None) -> UploadJob:
        self.registry.update(job_id, session_id=session_id)
        status = self.api.session_status(session_id)
        if status.get("finalReference"):
            return self.registry.update(
                job_id, status=JobStatus.complete, progress_percent=100.0, final_reference=status["finalReference"]
            )
        if status.get("state") == "FAILED":
            raise IncompleteUpload(
                f"session failed earlier ({status.get('failure')}); re-initialize the upload", session_id=session_id
            )

        chunk_bytes = chunk_bytes or self._session_chunk_bytes.get(session_id) or self.chunk_bytes
        if not chunk_bytes:
            raise InvalidArgument("chunk size of the interrupted upload is unknown", session_id=session_id)
        total_bytes = source.stat().st_size
        total_chunks = status["totalChunks"]
        declared_bytes = status.get("totalBytes")
        if max(1, math.ceil(total_bytes / chunk_bytes)) != total_chunks or declared_bytes not in (None, total_bytes):
            raise InvalidArgument(f"{source.name} does not match the layout of session {session_id}")

        missing = sorted(status.get("missingChunkIndexes", []))
        run = _UploadRun(
            job_id=job_id,
            source=source,
            total_bytes=total_bytes,
            chunk_bytes=chunk_bytes,
            total_chunks=total_chunks,
            session_id=session_id,
            completed=set(range(total_chunks)) - set(missing),
        )
        with self._runs_lock:
            self._runs[job_id] = run
        self.registry.update(
            job_id,
            status=JobStatus.uploading,
            progress_percent=round(len(run.completed) * 100.0 / total_chunks, 2),
        )
        logger.info(
            "resuming session %s as job %s: %d of %d chunks missing", session_id, job_id, len(missing), total_chunks
        )
        return self._transfer(run, missing)

    def _encrypt_source(self, source: Path, target: Path, key: bytes) -> Path:
        if self.worker is not None and self.worker.running:
            self.worker.encrypt_file(source, target, key)
        else:
            crypto.encrypt_file(source, target, key)
        return target

    def _upload(
        self,
        job_id: str,
        source: Path,
        destination_key_hint: str,
        content_type: str,
        metadata: dict[str, str],
    ) -> UploadJob:
        if self.probe is not None:
            try:
                self.probe.refresh(self.controller)
            except VidvaultError as exc:
                logger.warning("network probe failed, keeping current profile: %s", exc.detail)

        total_bytes = source.stat().st_size
        chunk_bytes = self.chunk_bytes or self.controller.profile.chunk_bytes
        run = _UploadRun(
            job_id=job_id,
            source=source,
            total_bytes=total_bytes,
            chunk_bytes=chunk_bytes,
            total_chunks=max(1, math.ceil(total_bytes / chunk_bytes)),
        )
        with self._runs_lock:
            self._runs[job_id] = run

        session = self.api.init_session(
            total_chunks=run.total_chunks,
            destination_key_hint=destination_key_hint,
            content_type=content_type,
            metadata=metadata,
            total_bytes=total_bytes,
        )
        run.session_id = session["sessionId"]
        self._session_chunk_bytes[run.session_id] = chunk_bytes
        self.registry.update(job_id, status=JobStatus.uploading, session_id=run.session_id, progress_percent=0.0)
        logger.info(
            "upload job %s session %s: %d bytes in %d chunks of %d",
            job_id,
            run.session_id,
            total_bytes,
            run.total_chunks,
            chunk_bytes,
        )
        return self._transfer(run, range(run.total_chunks))

    def _transfer(self, run: _UploadRun, indexes: Iterable[int]) -> UploadJob:
        self._run_window(run, indexes)

        if run.cancel_event.is_set() and run.failure is None and len(run.completed) < run.total_chunks:
            self._abandon(run)
            return self.registry.update(run.job_id, status=JobStatus.canceled)
        if run.failure is not None:
            raise run.failure

        self.registry.update(run.job_id, status=JobStatus.reassembling)
        reference = run.final_reference or self._await_reference(run)
        return self.registry.update(
            run.job_id, status=JobStatus.complete, progress_percent=100.0, final_reference=reference
        )

    def _run_window(self, run: _UploadRun, indexes: Iterable[int]) -> None:
        queue = deque(indexes)
        offline_limit = ONLINE_WAIT_SECONDS * self.max_network_pauses
        offline_since: float | None = None
        with ThreadPoolExecutor(max_workers=MAX_CONCURRENCY, thread_name_prefix="vidvault-chunk") as pool:
            while True:
                with run.condition:
                    while queue and run.failure is None and not run.cancel_event.is_set():
                        if self.controller.is_online:
                            offline_since = None
                            if run.inflight < self.controller.profile.concurrency:
                                break
                        elif offline_since is None:
                            offline_since = self.clock()
                        elif self.clock() - offline_since > offline_limit:
                            run.failure = NetworkUnavailable(
                                f"offline for more than {offline_limit:.0f}s", session_id=run.session_id
                            )
                            break
                        run.condition.wait(timeout=0.5)
                    if not queue or run.failure is not None or run.cancel_event.is_set():
                        break
                    index = queue.popleft()
                    run.inflight += 1
                pool.submit(self._send_chunk, run, index)

            with run.condition:
                while run.inflight:
                    run.condition.wait()

    def _send_chunk(self, run: _UploadRun, index: int) -> None:
        try:
            receipt = self._deliver(run, index)
        except Exception as exc:
            with run.condition:
                if run.failure is None:
                    run.failure = exc
                run.inflight -= 1
                run.condition.notify_all()
            return

        with run.condition:
            if receipt is not None:
                run.completed.add(index)
                if receipt.get("finalReference"):
                    run.final_reference = receipt["finalReference"]
                done = len(run.completed)
            run.inflight -= 1
            run.condition.notify_all()
        if receipt is not None:
            self.registry.update(run.job_id, progress_percent=round(done * 100.0 / run.total_chunks, 2))

    def _slice(self, run: _UploadRun, index: int) -> bytes:
        with open(run.source, "rb") as handle:
            handle.seek(index * run.chunk_bytes)
            return handle.read(run.chunk_bytes)

    def _deliver(self, run: _UploadRun, index: int) -> dict | None:
        payload = self._slice(run, index)
        digest = self.verifier.compute(index, payload)
        run.digests[index] = digest
        header_digest = digest if self.verifier.algorithm == "sha256" else None

        attempts = 0
        pauses = 0
        while True:
            if run.cancel_event.is_set():
                return None
            try:
                return self.api.put_chunk(run.session_id, index, payload, header_digest)
            except CorruptedChunk:
                attempts += 1
                if attempts > self.max_retries:
                    raise
                logger.warning("chunk %d of %s arrived corrupted, re-slicing (%d)", index, run.session_id, attempts)
                payload = self._slice(run, index)
                if not self.verifier.verify(index, payload, digest):
                    raise InvalidArgument(f"source file changed under chunk {index}", session_id=run.session_id)
            except NetworkUnavailable:
                pauses += 1
                if pauses > self.max_network_pauses:
                    raise
                logger.warning("network unavailable for chunk %d, pausing (%d)", index, pauses)
                self.controller.wait_until_online(ONLINE_WAIT_SECONDS)
                self.sleep(backoff_delay(pauses - 1, self.controller.profile.retry_base_delay))
            except TransientRequestError:
                attempts += 1
                if attempts > self.max_retries:
                    raise
                self.sleep(backoff_delay(attempts - 1, self.controller.profile.retry_base_delay))

    def _await_reference(self, run: _UploadRun) -> str:
        for attempt in range(STATUS_POLL_ATTEMPTS):
            status = self.api.session_status(run.session_id)
            if status.get("finalReference"):
                return status["finalReference"]
            if status.get("state") == "FAILED":
                break
            self.sleep(backoff_delay(attempt, self.controller.profile.retry_base_delay))
        raise IncompleteUpload("session did not report a committed reference", session_id=run.session_id)

    def _abandon(self, run: _UploadRun) -> None:
        try:
            self.api.abandon(run.session_id)
        except VidvaultError as exc:
            logger.warning("could not abandon session %s: %s", run.session_id, exc.detail)
