import time
from datetime import datetime, timezone

from vidvault.errors import StorageUnavailable
from vidvault.metrics import commit_failures_total, commit_latency_seconds
from vidvault.session_store import UploadSession
from vidvault.storage import ObjectStore


class DurableStoreCommitter:
    """Writes a reassembled payload to the object store.

    No retries: the reassembled bytes are dropped after a failed commit, so a
    caller has to start a fresh session.
    """

    def __init__(self, store: ObjectStore) -> None:
        self.store = store

    def commit(self, session: UploadSession, payload: bytes) -> str:
        metadata = {
            **session.metadata,
            "uploaded-by": session.owner_id,
            "uploaded-at": datetime.now(timezone.utc).isoformat(),
            "session-id": session.session_id,
        }
        start = time.perf_counter()
        try:
            stored = self.store.put_object(session.destination_key, payload, session.content_type, metadata)
        except Exception as exc:
            commit_failures_total.inc()
            raise StorageUnavailable(f"object store write failed: {exc}", session_id=session.session_id) from exc
        commit_latency_seconds.observe(time.perf_counter() - start)
        return stored.key
