from threading import Lock

from fastapi import HTTPException

from vidvault.metrics import inflight_chunks, throttled_requests_total

THROTTLE_HEADERS = {"Retry-After": "1", "X-RateLimit-Reason": "session_inflight_limit"}


class PerSessionInflightLimiter:
    """Caps concurrent chunk requests per session.

    The client window never exceeds 8; anything above the limit is a
    misbehaving client and gets a retryable 429.
    """

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self._counts: dict[str, int] = {}
        self._lock = Lock()
        self._total = 0

    def acquire(self, session_id: str) -> None:
        with self._lock:
            current = self._counts.get(session_id, 0)
            if current >= self.limit:
                throttled_requests_total.inc()
                raise HTTPException(
                    status_code=429,
                    detail="per-session inflight chunk limit reached",
                    headers=THROTTLE_HEADERS,
                )
            self._counts[session_id] = current + 1
            self._total += 1
            inflight_chunks.set(self._total)

    def release(self, session_id: str) -> None:
        with self._lock:
            next_value = max(0, self._counts.get(session_id, 0) - 1)
            if next_value == 0:
                self._counts.pop(session_id, None)
            else:
                self._counts[session_id] = next_value
            self._total = max(0, self._total - 1)
            inflight_chunks.set(self._total)
