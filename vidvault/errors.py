"""Error taxonomy shared by the upload service and the client.

Every error carries a ``kind`` (the wire ``error_code``), an HTTP status for
the service side, and whether a caller may retry the same operation.
"""


class VidvaultError(Exception):
    kind = "internal_error"
    status_code = 500
    retryable = False

    def __init__(self, detail: str = "", *, session_id: str | None = None) -> None:
        super().__init__(detail or self.kind)
        self.detail = detail or self.kind
        self.session_id = session_id


class InvalidArgument(VidvaultError):
    kind = "invalid_argument"
    status_code = 400


class Unauthorized(VidvaultError):
    kind = "unauthorized"
    status_code = 403


class SessionNotFound(VidvaultError):
    kind = "session_not_found"
    status_code = 404


class IndexOutOfRange(VidvaultError):
    kind = "index_out_of_range"
    status_code = 416


class CorruptedChunk(VidvaultError):
    kind = "corrupted_chunk"
    status_code = 422
    retryable = True


class IncompleteUpload(VidvaultError):
    kind = "incomplete_upload"
    status_code = 409


class StorageUnavailable(VidvaultError):
    kind = "storage_unavailable"
    status_code = 503


class UndecryptableContent(VidvaultError):
    kind = "undecryptable_content"
    status_code = 422


class NetworkUnavailable(VidvaultError):
    kind = "network_unavailable"
    status_code = 503
    retryable = True


class TransientRequestError(VidvaultError):
    kind = "transient_request_error"
    status_code = 503
    retryable = True


class PlaybackRevoked(VidvaultError):
    kind = "playback_revoked"
    status_code = 410


ERRORS_BY_KIND: dict[str, type[VidvaultError]] = {
    cls.kind: cls
    for cls in (
        InvalidArgument,
        Unauthorized,
        SessionNotFound,
        IndexOutOfRange,
        CorruptedChunk,
        IncompleteUpload,
        StorageUnavailable,
        UndecryptableContent,
        NetworkUnavailable,
        TransientRequestError,
        PlaybackRevoked,
    )
}


def error_from_kind(kind: str | None, detail: str) -> VidvaultError:
    cls = ERRORS_BY_KIND.get(kind or "", VidvaultError)
    return cls(detail)
