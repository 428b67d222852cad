import math
import os
import shutil
import threading
from pathlib import Path

import httpx
from fastapi.testclient import TestClient

from vidvault.client.integrity import ChunkIntegrityVerifier
from vidvault.client.jobs import JobRegistry, JobStatus
from vidvault.client.network import MiB, AdaptiveController, derive_profile
from vidvault.client.uploader import ChunkedUploader
from vidvault.config import settings
from vidvault.db import Base, engine
from vidvault.main import app, object_store, tracker

SKIPPED_HEADERS = {"host", "content-length", "transfer-encoding", "accept-encoding", "connection"}


def _reset_state() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    for session_id in tracker.buffer.session_ids():
        tracker.buffer.discard(session_id)
    shutil.rmtree(Path("data"), ignore_errors=True)


def _chunk_index(request: httpx.Request) -> int | None:
    parts = request.url.path.split("/")
    if request.method == "POST" and len(parts) == 6 and parts[4] == "chunks":
        return int(parts[5])
    return None


class _Forwarder:
    """httpx transport handler that replays client requests against the app."""

    def __init__(self, test_client: TestClient) -> None:
        self.test_client = test_client
        self.lock = threading.Lock()
        self.seen: list[tuple[str, str]] = []

    def forward(self, request: httpx.Request, content: bytes | None = None) -> httpx.Response:
        headers = {k: v for k, v in request.headers.items() if k.lower() not in SKIPPED_HEADERS}
        with self.lock:
            self.seen.append((request.method, request.url.path))
            upstream = self.test_client.request(
                request.method,
                request.url.path,
                content=request.content if content is None else content,
                headers=headers,
            )
        response_headers = {k: v for k, v in upstream.headers.items() if k.lower() != "content-encoding"}
        return httpx.Response(upstream.status_code, headers=response_headers, content=upstream.content)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        return self.forward(request)


def _client(handler) -> httpx.Client:
    return httpx.Client(
        transport=httpx.MockTransport(handler),
        base_url="http://testserver",
        headers={"X-API-Key": "dev-key"},
    )


def _record(registry: JobRegistry) -> list[tuple[JobStatus, float]]:
    events: list[tuple[JobStatus, float]] = []
    registry.add_listener(lambda job: events.append((job.status, job.progress_percent)))
    return events


def _collapsed(events: list[tuple[JobStatus, float]]) -> list[JobStatus]:
    statuses: list[JobStatus] = []
    for status, _ in events:
        if not statuses or statuses[-1] != status:
            statuses.append(status)
    return statuses


def test_large_file_arriving_out_of_order_commits_byte_identical(tmp_path) -> None:
    _reset_state()
    source = tmp_path / "lecture.mp4"
    source.write_bytes(os.urandom(26 * MiB))
    chunk_bytes = math.ceil(26 * MiB / 6)
    arrival_order = [3, 0, 5, 1, 4, 2]
    turn = {"next": 0}
    arrivals: list[int] = []
    gate = threading.Condition()

    with TestClient(app) as test_client:
        forwarder = _Forwarder(test_client)

        def handler(request: httpx.Request) -> httpx.Response:
            index = _chunk_index(request)
            if index is None:
                return forwarder(request)
            with gate:
                assert gate.wait_for(lambda: arrival_order[turn["next"]] == index, timeout=30)
            response = forwarder(request)
            with gate:
                arrivals.append(index)
                turn["next"] = min(turn["next"] + 1, len(arrival_order) - 1)
                gate.notify_all()
            return response

        registry = JobRegistry()
        events = _record(registry)
        uploader = ChunkedUploader(
            _client(handler),
            controller=AdaptiveController(derive_profile(downlink_mbps=12.0)),
            registry=registry,
            chunk_bytes=chunk_bytes,
            sleep=lambda seconds: None,
        )
        job = uploader.upload(source, "courses/intro/lecture.mp4", "video/mp4", {"title": "Lecture 1"})

    assert job.status == JobStatus.complete, job.error
    assert arrivals == arrival_order
    assert _collapsed(events) == [JobStatus.queued, JobStatus.uploading, JobStatus.reassembling, JobStatus.complete]
    percents = [percent for _, percent in events]
    assert percents == sorted(percents)
    assert percents[-1] == 100.0
    assert object_store.get_object(job.final_reference) == source.read_bytes()


def test_corrupted_chunk_is_resliced_until_it_verifies(tmp_path) -> None:
    _reset_state()
    source = tmp_path / "clip.mp4"
    source.write_bytes(os.urandom(300_000))
    corruptions = {"left": 3}
    attempts: dict[int, int] = {}

    with TestClient(app) as test_client:
        forwarder = _Forwarder(test_client)

        def handler(request: httpx.Request) -> httpx.Response:
            index = _chunk_index(request)
            if index is not None:
                attempts[index] = attempts.get(index, 0) + 1
            if index == 2 and corruptions["left"]:
                corruptions["left"] -= 1
                damaged = bytearray(request.content)
                damaged[10] ^= 0xFF
                return forwarder.forward(request, content=bytes(damaged))
            return forwarder(request)

        verifier = ChunkIntegrityVerifier()
        uploader = ChunkedUploader(
            _client(handler),
            controller=AdaptiveController(derive_profile(downlink_mbps=3.0)),
            verifier=verifier,
            chunk_bytes=64 * 1024,
            max_retries=3,
            sleep=lambda seconds: None,
        )
        job = uploader.upload(source, "clip.mp4")

    assert job.status == JobStatus.complete, job.error
    assert attempts[2] == 4
    assert all(count == 1 for index, count in attempts.items() if index != 2)
    assert verifier.results()[2].ok
    assert object_store.get_object(job.final_reference) == source.read_bytes()


def test_chunk_failing_past_retry_budget_fails_job(tmp_path) -> None:
    _reset_state()
    source = tmp_path / "clip.mp4"
    source.write_bytes(os.urandom(10_000))

    with TestClient(app) as test_client:
        forwarder = _Forwarder(test_client)

        def handler(request: httpx.Request) -> httpx.Response:
            if _chunk_index(request) == 0:
                return forwarder.forward(request, content=b"garbage" + request.content[7:])
            return forwarder(request)

        uploader = ChunkedUploader(_client(handler), chunk_bytes=4096, max_retries=2, sleep=lambda seconds: None)
        job = uploader.upload(source, "clip.mp4")

    assert job.status == JobStatus.failed
    assert job.error.kind == "corrupted_chunk"
    assert job.error.retryable


def test_bandwidth_drop_limits_only_later_dispatches(tmp_path) -> None:
    _reset_state()
    source = tmp_path / "clip.mp4"
    source.write_bytes(os.urandom(12 * 1024))
    controller = AdaptiveController(derive_profile(downlink_mbps=12.0))
    state = {"active": 0, "peak_before": 0, "after": [], "requests": 0}
    changed = threading.Event()
    release = threading.Event()
    watch = threading.Condition()

    with TestClient(app) as test_client:
        forwarder = _Forwarder(test_client)

        def handler(request: httpx.Request) -> httpx.Response:
            if _chunk_index(request) is None:
                return forwarder(request)
            with watch:
                state["active"] += 1
                state["requests"] += 1
                if changed.is_set():
                    state["after"].append(state["active"])
                else:
                    state["peak_before"] = max(state["peak_before"], state["active"])
                watch.notify_all()
            if not changed.is_set():
                release.wait(30)
            try:
                return forwarder(request)
            finally:
                with watch:
                    state["active"] -= 1

        uploader = ChunkedUploader(
            _client(handler),
            controller=controller,
            chunk_bytes=1024,
            sleep=lambda seconds: None,
        )
        result: dict = {}
        worker = threading.Thread(target=lambda: result.update(job=uploader.upload(source, "clip.mp4")))
        worker.start()

        with watch:
            assert watch.wait_for(lambda: state["active"] == 8, timeout=30)
        assert controller.on_network_change(downlink_mbps=0.4).concurrency == 1
        changed.set()
        release.set()
        worker.join(60)

    job = result["job"]
    assert job.status == JobStatus.complete, job.error
    assert state["peak_before"] == 8
    assert state["after"] == [1, 1, 1, 1]
    assert state["requests"] == 12


def test_network_outage_pauses_without_consuming_attempts(tmp_path) -> None:
    _reset_state()
    source = tmp_path / "clip.mp4"
    source.write_bytes(os.urandom(5000))
    outages = {"left": 2}
    sleeps: list[float] = []

    with TestClient(app) as test_client:
        forwarder = _Forwarder(test_client)

        def handler(request: httpx.Request) -> httpx.Response:
            if _chunk_index(request) == 0 and outages["left"]:
                outages["left"] -= 1
                raise httpx.ConnectError("network is unreachable", request=request)
            return forwarder(request)

        uploader = ChunkedUploader(
            _client(handler),
            chunk_bytes=4096,
            max_retries=0,
            max_network_pauses=3,
            sleep=sleeps.append,
        )
        job = uploader.upload(source, "clip.mp4")

    assert job.status == JobStatus.complete, job.error
    assert len(sleeps) == 2
    assert all(1.0 <= delay <= 10.0 for delay in sleeps)


def test_transient_server_errors_are_retried_with_backoff(tmp_path) -> None:
    _reset_state()
    source = tmp_path / "clip.mp4"
    source.write_bytes(os.urandom(2048))
    failures = {"left": 2}
    sleeps: list[float] = []

    with TestClient(app) as test_client:
        forwarder = _Forwarder(test_client)

        def handler(request: httpx.Request) -> httpx.Response:
            if _chunk_index(request) == 0 and failures["left"]:
                failures["left"] -= 1
                return httpx.Response(429, json={"detail": "slow down", "error_code": "throttled"})
            return forwarder(request)

        uploader = ChunkedUploader(_client(handler), chunk_bytes=4096, sleep=sleeps.append)
        job = uploader.upload(source, "clip.mp4")

    assert job.status == JobStatus.complete, job.error
    assert len(sleeps) == 2


def test_cancel_stops_dispatch_and_abandons_session(tmp_path) -> None:
    _reset_state()
    source = tmp_path / "clip.mp4"
    source.write_bytes(os.urandom(6 * 1024))

    canceled = threading.Event()

    with TestClient(app) as test_client:
        forwarder = _Forwarder(test_client)

        def handler(request: httpx.Request) -> httpx.Response:
            index = _chunk_index(request)
            if index is not None and index > 0:
                assert canceled.wait(30)
            return forwarder(request)

        registry = JobRegistry()
        uploader = ChunkedUploader(
            _client(handler),
            controller=AdaptiveController(derive_profile(downlink_mbps=0.4)),
            registry=registry,
            chunk_bytes=1024,
            sleep=lambda seconds: None,
        )

        def _cancel_on_progress(job) -> None:
            if job.status == JobStatus.uploading and job.progress_percent > 0:
                uploader.cancel(job.id)
                canceled.set()

        registry.add_listener(_cancel_on_progress)
        job = uploader.upload(source, "clip.mp4")

        assert job.status == JobStatus.canceled
        assert ("DELETE", f"/v1/sessions/{job.session_id}") in forwarder.seen
        chunk_posts = [path for method, path in forwarder.seen if method == "POST" and "/chunks/" in path]
        assert len(chunk_posts) <= 2
        status = test_client.get(f"/v1/sessions/{job.session_id}", headers={"X-API-Key": "dev-key"})
        assert status.status_code == 404


def test_fatal_error_fails_job_without_retry(tmp_path, monkeypatch) -> None:
    _reset_state()
    monkeypatch.setattr(settings, "api_key_mappings", "viewer-key:viewer-user")
    source = tmp_path / "clip.mp4"
    source.write_bytes(b"frames")

    with TestClient(app) as test_client:
        forwarder = _Forwarder(test_client)
        client = _client(forwarder)
        client.headers["X-API-Key"] = "viewer-key"
        job = ChunkedUploader(client, sleep=lambda seconds: None).upload(source, "clip.mp4")

    assert job.status == JobStatus.failed
    assert job.error.kind == "unauthorized"
    assert not job.error.retryable
    assert forwarder.seen == [("POST", "/v1/sessions")]


def test_empty_file_uploads_as_single_chunk(tmp_path) -> None:
    _reset_state()
    source = tmp_path / "empty.mp4"
    source.write_bytes(b"")

    with TestClient(app) as test_client:
        job = ChunkedUploader(_client(_Forwarder(test_client)), sleep=lambda seconds: None).upload(source, "empty.mp4")

    assert job.status == JobStatus.complete, job.error
    assert object_store.get_object(job.final_reference) == b""


def test_resume_sends_only_missing_chunks_after_midway_failure(tmp_path) -> None:
    _reset_state()
    source = tmp_path / "clip.mp4"
    source.write_bytes(os.urandom(6 * 1024))
    outage = {"active": True}

    with TestClient(app) as test_client:
        forwarder = _Forwarder(test_client)

        def handler(request: httpx.Request) -> httpx.Response:
            if outage["active"] and _chunk_index(request) == 3:
                return httpx.Response(503, json={"detail": "upstream unavailable", "error_code": "internal_error"})
            return forwarder(request)

        uploader = ChunkedUploader(
            _client(handler),
            controller=AdaptiveController(derive_profile(downlink_mbps=0.4)),
            chunk_bytes=1024,
            max_retries=0,
            sleep=lambda seconds: None,
        )
        failed = uploader.upload(source, "clip.mp4")
        assert failed.status == JobStatus.failed
        assert failed.error.kind == "transient_request_error"
        sent_before = [path for method, path in forwarder.seen if "/chunks/" in path]
        assert [int(path.rsplit("/", 1)[1]) for path in sent_before] == [0, 1, 2]

        outage["active"] = False
        forwarder.seen.clear()
        resumed = uploader.resume(failed.session_id, source)

    assert resumed.status == JobStatus.complete, resumed.error
    assert resumed.session_id == failed.session_id
    chunk_posts = [int(path.rsplit("/", 1)[1]) for method, path in forwarder.seen if "/chunks/" in path]
    assert chunk_posts == [3, 4, 5]
    assert object_store.get_object(resumed.final_reference) == source.read_bytes()


def test_resume_of_committed_session_reports_existing_reference(tmp_path) -> None:
    _reset_state()
    source = tmp_path / "clip.mp4"
    source.write_bytes(os.urandom(3000))

    with TestClient(app) as test_client:
        forwarder = _Forwarder(test_client)
        uploader = ChunkedUploader(_client(forwarder), chunk_bytes=1024, sleep=lambda seconds: None)
        done = uploader.upload(source, "clip.mp4")
        forwarder.seen.clear()
        again = uploader.resume(done.session_id, source)

    assert again.status == JobStatus.complete
    assert again.final_reference == done.final_reference
    assert forwarder.seen == [("GET", f"/v1/sessions/{done.session_id}")]


def test_resume_rejects_unknown_chunk_size_or_changed_file(tmp_path) -> None:
    _reset_state()
    source = tmp_path / "clip.mp4"
    source.write_bytes(os.urandom(4096))

    with TestClient(app) as test_client:
        forwarder = _Forwarder(test_client)
        session = test_client.post(
            "/v1/sessions",
            json={"totalChunks": 4, "destinationKeyHint": "clip.mp4", "contentType": "video/mp4", "totalBytes": 4096},
            headers={"X-API-Key": "dev-key"},
        ).json()

        unknown = ChunkedUploader(_client(forwarder), sleep=lambda seconds: None).resume(session["sessionId"], source)
        mismatched = ChunkedUploader(_client(forwarder), chunk_bytes=2048, sleep=lambda seconds: None).resume(
            session["sessionId"], source
        )

    assert unknown.status == JobStatus.failed
    assert unknown.error.kind == "invalid_argument"
    assert mismatched.status == JobStatus.failed
    assert mismatched.error.kind == "invalid_argument"
    assert not [path for method, path in forwarder.seen if "/chunks/" in path]


def test_long_offline_period_fails_job_with_network_unavailable(tmp_path) -> None:
    _reset_state()
    source = tmp_path / "clip.mp4"
    source.write_bytes(os.urandom(2048))
    controller = AdaptiveController()
    controller.set_online(False)
    ticks = iter(range(0, 10_000, 100))

    with TestClient(app) as test_client:
        forwarder = _Forwarder(test_client)
        uploader = ChunkedUploader(
            _client(forwarder),
            controller=controller,
            chunk_bytes=1024,
            max_network_pauses=5,
            sleep=lambda seconds: None,
            clock=lambda: next(ticks),
        )
        job = uploader.upload(source, "clip.mp4")

    assert job.status == JobStatus.failed
    assert job.error.kind == "network_unavailable"
    assert job.error.retryable
    assert not [path for method, path in forwarder.seen if "/chunks/" in path]
