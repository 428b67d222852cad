import asyncio
import os
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from vidvault.auth import Principal, require_admin, require_principal, require_uploader
from vidvault.catalog import ContentCatalog
from vidvault.chunk_buffer import build_chunk_buffer
from vidvault.committer import DurableStoreCommitter
from vidvault.config import settings
from vidvault.db import get_db, init_db
from vidvault.errors import InvalidArgument, SessionNotFound, VidvaultError
from vidvault.limits import PerSessionInflightLimiter
from vidvault.maintenance import sweep_once
from vidvault.metrics import http_request_duration_seconds, metrics_response
from vidvault.models import SessionState
from vidvault.observability import audit_event, log_event, setup_tracing, trace_id
from vidvault.schemas import (
    ChunkReceiptResponse,
    EntitlementRequest,
    ErrorResponse,
    InitSessionRequest,
    InitSessionResponse,
    PlaybackGrantResponse,
    RegisterContentRequest,
    RegisterContentResponse,
    SessionStatusResponse,
)
from vidvault.session_store import build_session_store
from vidvault.storage import LocalObjectStore, build_object_store, resolve_object_token
from vidvault.tracker import UploadSessionTracker

object_store = build_object_store()
tracker = UploadSessionTracker(
    store=build_session_store(),
    buffer=build_chunk_buffer(),
    committer=DurableStoreCommitter(object_store),
)
catalog = ContentCatalog(object_store)
session_limiter = PerSessionInflightLimiter(settings.max_inflight_chunks_per_session)
PROBE_PAYLOAD = os.urandom(settings.probe_payload_bytes)


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []

    async def _periodic_sweep_loop() -> None:
        while not stop_event.is_set():
            try:
                stats = await asyncio.to_thread(sweep_once, tracker)
                if any(stats.values()):
                    log_event({"event": "sweep_completed", **stats})
            except Exception as exc:
                log_event({"event": "sweep_error", "detail": str(exc), "error_class": "maintenance_error"})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, settings.sweep_interval_seconds))
            except asyncio.TimeoutError:
                pass

    if settings.sweep_enabled:
        tasks.append(asyncio.create_task(_periodic_sweep_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task


app = FastAPI(title=settings.app_name, lifespan=lifespan)
setup_tracing(app)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _session_id(request: Request) -> str | None:
    return request.path_params.get("session_id")


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "invalid_argument",
        401: "unauthenticated",
        403: "unauthorized",
        404: "not_found",
        409: "conflict",
        429: "throttled",
        500: "internal_error",
    }
    return mapping.get(status_code, f"http_{status_code}")


def _error_response(request: Request, status_code: int, detail: str, error_code: str, session_id: str | None, headers=None):
    log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "session_id": session_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "error_class": error_code,
            "detail": detail,
        }
    )
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": detail,
            "error_code": error_code,
            "request_id": _request_id(request),
            "session_id": session_id,
            "trace_id": trace_id(),
        },
        headers=headers or {},
    )


COMMON_ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing credentials"},
    403: {"model": ErrorResponse, "description": "Unauthorized"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Vidvault-App-Version"] = settings.app_version
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    log_event(
        {
            "event": "request_completed",
            "request_id": request_id,
            "session_id": _session_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.exception_handler(VidvaultError)
async def vidvault_error_handler(request: Request, exc: VidvaultError):
    return _error_response(request, exc.status_code, exc.detail, exc.kind, exc.session_id or _session_id(request))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return _error_response(
        request,
        exc.status_code,
        str(exc.detail),
        _error_code_for_status(exc.status_code),
        _session_id(request),
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    detail = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors())
    return _error_response(request, 400, detail, InvalidArgument.kind, _session_id(request))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_event({"event": "unhandled_exception", "path": request.url.path, "detail": str(exc)})
    return _error_response(request, 500, "internal server error", "internal_error", _session_id(request))


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "storage_backend": settings.storage_backend,
        "side_cache_backend": settings.side_cache_backend,
    }


@app.get("/metrics")
def metrics() -> Response:
    return metrics_response()


@app.get("/v1/network/probe")
def network_probe() -> Response:
    return Response(
        content=PROBE_PAYLOAD,
        media_type="application/octet-stream",
        headers={"Cache-Control": "no-store"},
    )


@app.post("/v1/admin/sweep", responses={**COMMON_ERROR_RESPONSES})
def run_sweep(principal: Principal = Depends(require_admin)) -> dict:
    stats = sweep_once(tracker)
    return {"status": "ok", "requested_by": principal.user_id, **stats}


@app.post(
    "/v1/sessions",
    response_model=InitSessionResponse,
    status_code=201,
    responses={**COMMON_ERROR_RESPONSES, 400: {"model": ErrorResponse, "description": "Invalid argument"}},
)
def init_session(
    request: Request,
    payload: InitSessionRequest,
    principal: Principal = Depends(require_uploader),
) -> InitSessionResponse:
    session = tracker.initialize(
        total_chunks=payload.total_chunks,
        destination_key_hint=payload.destination_key_hint,
        content_type=payload.content_type,
        metadata=payload.metadata,
        owner_id=principal.user_id,
        total_bytes=payload.total_bytes,
    )
    audit_event(
        {
            "event": "audit",
            "action": "session_init",
            "request_id": _request_id(request),
            "session_id": session.session_id,
            "user_id": principal.user_id,
            "total_chunks": session.total_chunks,
            "total_bytes": session.total_bytes,
            "destination_key": session.destination_key,
        }
    )
    return InitSessionResponse(
        session_id=session.session_id,
        destination_key=session.destination_key,
        total_chunks=session.total_chunks,
        expires_at=session.expires_at,
    )


@app.post(
    "/v1/sessions/{session_id}/chunks/{index}",
    response_model=ChunkReceiptResponse,
    response_model_exclude_none=True,
    responses={
        **COMMON_ERROR_RESPONSES,
        404: {"model": ErrorResponse, "description": "Session not found or expired"},
        409: {"model": ErrorResponse, "description": "Incomplete upload"},
        416: {"model": ErrorResponse, "description": "Chunk index out of range"},
        422: {"model": ErrorResponse, "description": "Corrupted chunk"},
        429: {"model": ErrorResponse, "description": "Throttled request"},
        503: {"model": ErrorResponse, "description": "Storage unavailable"},
    },
)
async def upload_chunk(
    session_id: str,
    index: int,
    request: Request,
    chunk_sha256: str | None = Header(default=None, alias="X-Chunk-SHA256"),
    principal: Principal = Depends(require_principal),
) -> ChunkReceiptResponse:
    body = await request.body()
    if len(body) > settings.max_chunk_bytes:
        raise InvalidArgument(f"chunk exceeds {settings.max_chunk_bytes} bytes", session_id=session_id)

    session_limiter.acquire(session_id)
    try:
        receipt = await asyncio.to_thread(
            tracker.accept_chunk, session_id, index, body, principal.user_id, chunk_sha256
        )
    finally:
        session_limiter.release(session_id)

    if receipt.complete:
        audit_event(
            {
                "event": "audit",
                "action": "session_committed",
                "request_id": _request_id(request),
                "session_id": session_id,
                "user_id": principal.user_id,
                "final_reference": receipt.final_reference,
            }
        )
    return ChunkReceiptResponse(
        received_count=receipt.received_count,
        total_chunks=receipt.total_chunks,
        complete=receipt.complete,
        final_reference=receipt.final_reference,
    )


@app.get(
    "/v1/sessions/{session_id}",
    response_model=SessionStatusResponse,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Session not found"}},
)
def session_status(session_id: str, principal: Principal = Depends(require_principal)) -> SessionStatusResponse:
    session = tracker.status(session_id, principal.user_id)
    return SessionStatusResponse(
        session_id=session.session_id,
        state=session.state.value,
        received_count=session.received_count,
        total_chunks=session.total_chunks,
        total_bytes=session.total_bytes,
        complete=session.state in (SessionState.complete, SessionState.committed),
        missing_chunk_indexes=session.missing_indexes(),
        final_reference=session.final_reference,
        failure=session.failure,
        expires_at=session.expires_at,
    )


@app.delete("/v1/sessions/{session_id}", status_code=204, responses={**COMMON_ERROR_RESPONSES})
def abandon_session(
    request: Request, session_id: str, principal: Principal = Depends(require_principal)
) -> Response:
    released = tracker.abandon(session_id, principal.user_id)
    audit_event(
        {
            "event": "audit",
            "action": "session_abandon",
            "request_id": _request_id(request),
            "session_id": session_id,
            "user_id": principal.user_id,
            "released": released,
        }
    )
    return Response(status_code=204)


@app.post(
    "/v1/content",
    response_model=RegisterContentResponse,
    status_code=201,
    responses={**COMMON_ERROR_RESPONSES},
)
def register_content(
    payload: RegisterContentRequest,
    principal: Principal = Depends(require_uploader),
    db: Session = Depends(get_db),
) -> RegisterContentResponse:
    record = catalog.register(
        db,
        principal,
        content_id=payload.content_id,
        object_key=payload.object_key,
        content_type=payload.content_type,
        encrypted=payload.encrypted,
        encryption_key=payload.encryption_key,
        is_preview=payload.is_preview,
    )
    return RegisterContentResponse(content_id=record.content_id, encrypted=record.is_encrypted)


@app.post("/v1/content/{content_id}/entitlements", status_code=201, responses={**COMMON_ERROR_RESPONSES})
def add_entitlement(
    content_id: str,
    payload: EntitlementRequest,
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> dict[str, str]:
    entitlement = catalog.entitle(db, principal, content_id, payload.user_id)
    return {"contentId": entitlement.content_id, "userId": entitlement.user_id}


@app.get(
    "/v1/playback/{content_id}",
    response_model=PlaybackGrantResponse,
    response_model_exclude_none=True,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Content not found"}},
)
def playback_grant(
    request: Request,
    content_id: str,
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> PlaybackGrantResponse:
    grant = catalog.grant(db, principal, content_id)
    audit_event(
        {
            "event": "audit",
            "action": "playback_grant",
            "request_id": _request_id(request),
            "content_id": content_id,
            "user_id": principal.user_id,
            "encrypted": grant.encrypted,
            "expires_in": grant.expires_in,
        }
    )
    return PlaybackGrantResponse(
        content_id=grant.content_id,
        url=grant.url,
        expires_in=grant.expires_in,
        encrypted=grant.encrypted,
        content_type=grant.content_type,
        encryption_key=grant.encryption_key,
    )


@app.get("/v1/objects/{token}", responses={404: {"model": ErrorResponse, "description": "Object not found"}})
def read_object(token: str) -> Response:
    if not isinstance(object_store, LocalObjectStore):
        raise HTTPException(status_code=404, detail="object references are served by the object store")
    key = resolve_object_token(token)
    try:
        data = object_store.get_object(key)
    except FileNotFoundError as exc:
        raise SessionNotFound("object not found") from exc
    return Response(
        content=data,
        media_type=object_store.content_type(key),
        headers={"Cache-Control": "private, no-store"},
    )
