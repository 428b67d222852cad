"""Thin synchronous wrapper over the upload service HTTP surface.

Every failure leaves this module as a ``VidvaultError`` subclass: service
error bodies are mapped back by ``error_code``, transport failures become
``NetworkUnavailable`` and timeouts become ``TransientRequestError``.
"""

from typing import Any

import httpx

from vidvault.errors import (
    ERRORS_BY_KIND,
    NetworkUnavailable,
    TransientRequestError,
    Unauthorized,
    VidvaultError,
)


def error_from_response(response: httpx.Response) -> VidvaultError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    detail = str(body.get("detail") or response.reason_phrase or f"HTTP {response.status_code}")
    kind = body.get("error_code")
    if kind in ERRORS_BY_KIND:
        error = ERRORS_BY_KIND[kind](detail)
    elif response.status_code in (401, 403):
        error = Unauthorized(detail)
    elif response.status_code == 429 or response.status_code >= 500:
        error = TransientRequestError(detail)
    else:
        error = VidvaultError(detail)
    error.session_id = body.get("session_id")
    return error


def send(client: httpx.Client, method: str, url: str, **kwargs: Any) -> httpx.Response:
    try:
        response = client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise TransientRequestError(f"{method} {url} timed out: {exc}") from exc
    except httpx.TransportError as exc:
        raise NetworkUnavailable(f"{method} {url} failed: {exc}") from exc
    if response.is_error:
        raise error_from_response(response)
    return response


class UploadApi:
    def __init__(self, client: httpx.Client) -> None:
        self.client = client

    def init_session(
        self,
        total_chunks: int,
        destination_key_hint: str,
        content_type: str,
        metadata: dict[str, str],
        total_bytes: int | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "totalChunks": total_chunks,
            "destinationKeyHint": destination_key_hint,
            "contentType": content_type,
            "metadata": metadata,
        }
        if total_bytes is not None:
            payload["totalBytes"] = total_bytes
        return send(self.client, "POST", "/v1/sessions", json=payload).json()

    def put_chunk(self, session_id: str, index: int, payload: bytes, digest: str | None = None) -> dict[str, Any]:
        headers = {"Content-Type": "application/octet-stream"}
        if digest:
            headers["X-Chunk-SHA256"] = digest
        url = f"/v1/sessions/{session_id}/chunks/{index}"
        return send(self.client, "POST", url, content=payload, headers=headers).json()

    def session_status(self, session_id: str) -> dict[str, Any]:
        return send(self.client, "GET", f"/v1/sessions/{session_id}").json()

    def abandon(self, session_id: str) -> None:
        send(self.client, "DELETE", f"/v1/sessions/{session_id}")

    def playback_grant(self, content_id: str) -> dict[str, Any]:
        return send(self.client, "GET", f"/v1/playback/{content_id}").json()
