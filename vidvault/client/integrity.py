import hashlib
import hmac
import threading
import time
from dataclasses import dataclass


@dataclass(frozen=True)
class IntegrityResult:
    index: int
    expected: str
    actual: str
    ok: bool
    checked_at: float


class ChunkIntegrityVerifier:
    """Per-chunk digests over the exact bytes put on the wire.

    The last verification result for each index is kept for audit.
    """

    def __init__(self, algorithm: str = "sha256") -> None:
        hashlib.new(algorithm)
        self.algorithm = algorithm
        self._results: dict[int, IntegrityResult] = {}
        self._lock = threading.Lock()

    def compute(self, index: int, payload: bytes) -> str:
        digest = hashlib.new(self.algorithm)
        digest.update(payload)
        return digest.hexdigest()

    def verify(self, index: int, payload: bytes, expected: str) -> bool:
        actual = self.compute(index, payload)
        ok = hmac.compare_digest(actual, expected.lower())
        with self._lock:
            self._results[index] = IntegrityResult(
                index=index, expected=expected.lower(), actual=actual, ok=ok, checked_at=time.time()
            )
        return ok

    def results(self) -> dict[int, IntegrityResult]:
        with self._lock:
            return dict(self._results)

    def clear(self) -> None:
        with self._lock:
            self._results.clear()
