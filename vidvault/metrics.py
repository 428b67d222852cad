from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

sessions_initialized_total = Counter("sessions_initialized_total", "Upload sessions initialized")
chunks_accepted_total = Counter("chunks_accepted_total", "Chunks accepted into a session bitmap")
chunk_bytes_received_total = Counter("chunk_bytes_received_total", "Chunk payload bytes received")
corrupted_chunks_total = Counter("corrupted_chunks_total", "Chunks rejected on digest mismatch")
reassemblies_total = Counter("reassemblies_total", "Sessions reassembled")
commit_failures_total = Counter("commit_failures_total", "Commits that failed against the object store")
sessions_failed_total = Counter("sessions_failed_total", "Sessions transitioned to FAILED", ["reason"])
sessions_swept_total = Counter("sessions_swept_total", "Sessions released by the expiry sweeper")
throttled_requests_total = Counter("throttled_requests_total", "Total throttled requests")

inflight_chunks = Gauge("inflight_chunks", "Current inflight chunk requests")

commit_latency_seconds = Histogram("commit_latency_seconds", "Object store commit latency in seconds")
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
