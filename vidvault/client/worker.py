"""Background process for encryption work.

The worker process and the caller talk over two queues. Each request carries
a correlation id; a dispatcher thread in the caller resolves the matching
``Future`` when the response arrives, so responses may come back in any
order. Errors cross the channel as ``(kind, message)`` and are re-raised as
the matching ``VidvaultError`` subclass. If the worker process dies, every
pending ``Future`` fails instead of waiting forever.
"""

import logging
import multiprocessing
import queue
import threading
import uuid
from concurrent.futures import Future
from pathlib import Path

from vidvault.client import crypto
from vidvault.errors import VidvaultError, error_from_kind

logger = logging.getLogger(__name__)

DISPATCH_POLL_SECONDS = 0.5


def _encrypt(plaintext: bytes, key: bytes) -> bytes:
    return crypto.encrypt(plaintext, key).to_bytes()


def _decrypt(data: bytes, key: bytes) -> tuple[bytes, str]:
    decrypted = crypto.decrypt(data, key)
    return decrypted.plaintext, decrypted.mode.value


def _encrypt_file(src: str, dst: str, key: bytes) -> int:
    return crypto.encrypt_file(src, dst, key)


def _decrypt_file(src: str, dst: str, key: bytes) -> str:
    return crypto.decrypt_file(src, dst, key).value


OPERATIONS = {
    "encrypt": _encrypt,
    "decrypt": _decrypt,
    "encrypt_file": _encrypt_file,
    "decrypt_file": _decrypt_file,
}


def serve(requests, responses) -> None:
    while True:
        message = requests.get()
        if message is None:
            break
        correlation_id, operation, args = message
        try:
            handler = OPERATIONS[operation]
        except KeyError:
            responses.put((correlation_id, False, ("invalid_argument", f"unknown operation {operation!r}")))
            continue
        try:
            responses.put((correlation_id, True, handler(*args)))
        except VidvaultError as exc:
            responses.put((correlation_id, False, (exc.kind, exc.detail)))
        except Exception as exc:
            responses.put((correlation_id, False, ("internal_error", f"{type(exc).__name__}: {exc}")))


class EncryptionWorker:
    def __init__(self, start_method: str = "spawn") -> None:
        self._context = multiprocessing.get_context(start_method)
        self._requests = None
        self._responses = None
        self._pending: dict[str, Future] = {}
        self._lock = threading.Lock()
        self._process = None
        self._dispatcher: threading.Thread | None = None
        self._broken: BaseException | None = None
        self._closing = False

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.is_alive()

    def start(self) -> "EncryptionWorker":
        if self.running:
            return self
        # a killed worker may die holding a queue lock, so every start gets fresh queues
        self._requests = self._context.Queue()
        self._responses = self._context.Queue()
        self._process = self._context.Process(
            target=serve, args=(self._requests, self._responses), name="vidvault-encryption", daemon=True
        )
        self._process.start()
        self._broken = None
        self._closing = False
        self._dispatcher = threading.Thread(target=self._dispatch, name="vidvault-encryption-dispatch", daemon=True)
        self._dispatcher.start()
        return self

    def _dispatch(self) -> None:
        process = self._process
        drained = False
        while True:
            try:
                message = self._responses.get(timeout=DISPATCH_POLL_SECONDS)
            except queue.Empty:
                if process.is_alive():
                    continue
                if not drained:
                    # one more poll for responses flushed right before the exit
                    drained = True
                    continue
                if self._closing:
                    break
                error = VidvaultError(f"encryption worker exited unexpectedly (exit code {process.exitcode})")
                logger.error("%s; failing pending requests", error.detail)
                self._fail_pending(error)
                break
            correlation_id, ok, value = message
            with self._lock:
                future = self._pending.pop(correlation_id, None)
            if future is None:
                logger.warning("dropping encryption response for unknown correlation id %s", correlation_id)
                continue
            if ok:
                future.set_result(value)
            else:
                kind, detail = value
                future.set_exception(error_from_kind(kind, detail))

    def _fail_pending(self, error: BaseException) -> None:
        with self._lock:
            pending, self._pending = self._pending, {}
            self._broken = error
        for future in pending.values():
            if not future.cancelled():
                future.set_exception(error)

    def submit(self, operation: str, *args) -> Future:
        if not self.running:
            raise RuntimeError("encryption worker is not running")
        correlation_id = uuid.uuid4().hex
        future: Future = Future()
        with self._lock:
            if self._broken is not None:
                raise RuntimeError(f"encryption worker is not running: {self._broken}")
            self._pending[correlation_id] = future
        self._requests.put((correlation_id, operation, args))
        return future

    def encrypt(self, plaintext: bytes, key: bytes, timeout: float | None = None) -> bytes:
        return self.submit("encrypt", plaintext, key).result(timeout)

    def decrypt(self, data: bytes, key: bytes, timeout: float | None = None) -> crypto.Decrypted:
        plaintext, mode = self.submit("decrypt", data, key).result(timeout)
        return crypto.Decrypted(plaintext=plaintext, mode=crypto.CipherMode(mode))

    def encrypt_file(self, src: str | Path, dst: str | Path, key: bytes, timeout: float | None = None) -> int:
        return self.submit("encrypt_file", str(src), str(dst), key).result(timeout)

    def decrypt_file(
        self, src: str | Path, dst: str | Path, key: bytes, timeout: float | None = None
    ) -> crypto.CipherMode:
        return crypto.CipherMode(self.submit("decrypt_file", str(src), str(dst), key).result(timeout))

    def close(self, timeout: float = 5.0) -> None:
        if self._process is None:
            return
        self._closing = True
        self._requests.put(None)
        self._process.join(timeout)
        if self._process.is_alive():
            self._process.terminate()
            self._process.join(timeout)
        if self._dispatcher is not None:
            self._dispatcher.join(timeout)
        self._fail_pending(RuntimeError("encryption worker stopped"))
        self._process = None
        self._dispatcher = None

    def __enter__(self) -> "EncryptionWorker":
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.close()
