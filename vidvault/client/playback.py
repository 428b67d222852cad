"""Client-side playback of uploaded, possibly encrypted, video.

Ciphertext is fetched through the short-lived URL from a playback grant,
never through the permanent object key, and decrypted in memory. Plaintext
lives only inside a ``PlayableHandle`` until it is revoked.
"""

import logging
from collections.abc import Iterator

import httpx

from vidvault.client import crypto
from vidvault.client.api import UploadApi, send
from vidvault.client.worker import EncryptionWorker
from vidvault.errors import PlaybackRevoked, UndecryptableContent

logger = logging.getLogger(__name__)


class PlayableHandle:
    def __init__(
        self,
        content_id: str,
        plaintext: bytes,
        content_type: str,
        mode: crypto.CipherMode | None = None,
    ) -> None:
        self.content_id = content_id
        self.content_type = content_type
        self.mode = mode
        self._buffer: bytearray | None = bytearray(plaintext)
        self._view: memoryview | None = memoryview(self._buffer)

    @property
    def revoked(self) -> bool:
        return self._view is None

    def __len__(self) -> int:
        return len(self._live())

    def _live(self) -> memoryview:
        if self._view is None:
            raise PlaybackRevoked(f"playback handle for {self.content_id} was revoked")
        return self._view

    def read(self) -> bytes:
        return self._live().tobytes()

    def stream(self, chunk_size: int = 1024 * 1024) -> Iterator[bytes]:
        offset = 0
        while True:
            view = self._live()
            if offset >= len(view):
                return
            yield view[offset : offset + chunk_size].tobytes()
            offset += chunk_size

    def revoke(self) -> None:
        if self._view is None:
            return
        self._view.release()
        self._buffer[:] = bytes(len(self._buffer))
        self._view = None
        self._buffer = None
        logger.info("revoked playback handle for %s", self.content_id)

    def __enter__(self) -> "PlayableHandle":
        return self

    def __exit__(self, *exc_info) -> None:
        self.revoke()


class PlaybackClient:
    def __init__(
        self,
        client: httpx.Client,
        fetch_client: httpx.Client | None = None,
        worker: EncryptionWorker | None = None,
    ) -> None:
        self.api = UploadApi(client)
        # grant URLs are self-authorizing; service credentials stay on ``client``
        self.fetch_client = fetch_client or httpx.Client(timeout=60.0)
        self.worker = worker

    def open(self, content_id: str) -> PlayableHandle:
        grant = self.api.playback_grant(content_id)
        data = send(self.fetch_client, "GET", grant["url"]).content
        content_type = grant.get("contentType", "application/octet-stream")
        if not grant.get("encrypted"):
            return PlayableHandle(content_id, data, content_type)

        key_hex = grant.get("encryptionKey")
        if not key_hex:
            raise UndecryptableContent(f"grant for {content_id} carries no key material")
        key = crypto.parse_key(key_hex)
        if self.worker is not None and self.worker.running:
            decrypted = self.worker.decrypt(data, key)
        else:
            decrypted = crypto.decrypt(data, key)
        logger.info("decrypted %s with %s", content_id, decrypted.mode.value)
        return PlayableHandle(content_id, decrypted.plaintext, content_type, decrypted.mode)
