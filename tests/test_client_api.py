import json

import httpx
import pytest

from vidvault.client.api import UploadApi, error_from_response, send
from vidvault.errors import (
    CorruptedChunk,
    IndexOutOfRange,
    NetworkUnavailable,
    TransientRequestError,
    Unauthorized,
    VidvaultError,
)


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler), base_url="http://testserver")


def test_error_code_maps_back_to_taxonomy() -> None:
    response = httpx.Response(
        422, json={"detail": "digest mismatch for chunk 2", "error_code": "corrupted_chunk", "session_id": "s1"}
    )
    error = error_from_response(response)
    assert isinstance(error, CorruptedChunk)
    assert error.retryable
    assert error.session_id == "s1"
    assert error.detail == "digest mismatch for chunk 2"


@pytest.mark.parametrize(
    ("status", "body", "expected"),
    [
        (401, {"detail": "missing API key", "error_code": "unauthenticated"}, Unauthorized),
        (416, {"detail": "index 9", "error_code": "index_out_of_range"}, IndexOutOfRange),
        (429, {"detail": "slow down", "error_code": "throttled"}, TransientRequestError),
        (502, None, TransientRequestError),
        (418, {"detail": "teapot"}, VidvaultError),
    ],
)
def test_unknown_or_generic_errors_fall_back_by_status(status, body, expected) -> None:
    response = httpx.Response(status, json=body) if body is not None else httpx.Response(status, text="bad gateway")
    assert type(error_from_response(response)) is expected


def test_send_classifies_transport_failures() -> None:
    def _timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    def _refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientRequestError):
        send(_client(_timeout), "GET", "/health")
    with pytest.raises(NetworkUnavailable):
        send(_client(_refused), "GET", "/health")


def test_put_chunk_sends_raw_bytes_and_digest_header() -> None:
    seen = {}

    def _capture(request: httpx.Request) -> httpx.Response:
        seen.update(
            path=request.url.path,
            body=request.content,
            digest=request.headers.get("X-Chunk-SHA256"),
            content_type=request.headers["Content-Type"],
        )
        return httpx.Response(200, json={"receivedCount": 1, "totalChunks": 2, "complete": False})

    receipt = UploadApi(_client(_capture)).put_chunk("s1", 1, b"\x00\x01", "ab" * 32)

    assert receipt["receivedCount"] == 1
    assert seen == {
        "path": "/v1/sessions/s1/chunks/1",
        "body": b"\x00\x01",
        "digest": "ab" * 32,
        "content_type": "application/octet-stream",
    }


def test_init_session_sends_camel_case_body() -> None:
    seen = {}

    def _capture(request: httpx.Request) -> httpx.Response:
        seen.update(json.loads(request.content))
        return httpx.Response(201, json={"sessionId": "s1", "totalChunks": 3})

    session = UploadApi(_client(_capture)).init_session(3, "clip.mp4", "video/mp4", {"title": "t"}, total_bytes=10)

    assert session["sessionId"] == "s1"
    assert seen == {
        "totalChunks": 3,
        "destinationKeyHint": "clip.mp4",
        "contentType": "video/mp4",
        "metadata": {"title": "t"},
        "totalBytes": 10,
    }
