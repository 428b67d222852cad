from vidvault.tracker import UploadSessionTracker


def sweep_once(tracker: UploadSessionTracker) -> dict[str, int]:
    stats = tracker.sweep_expired()

    orphan_buffers = 0
    for session_id in tracker.buffer.session_ids():
        with tracker.store.lock(session_id):
            if tracker.store.get(session_id) is None:
                tracker.buffer.discard(session_id)
                orphan_buffers += 1

    return {**stats, "orphan_buffers_deleted": orphan_buffers}
