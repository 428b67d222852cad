from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InitSessionRequest(CamelModel):
    total_chunks: int = Field(gt=0)
    destination_key_hint: str = Field(min_length=1, max_length=512)
    content_type: str = Field(min_length=1, max_length=255)
    metadata: dict[str, str] = Field(default_factory=dict)
    total_bytes: int | None = Field(default=None, ge=0)


class InitSessionResponse(CamelModel):
    session_id: str
    destination_key: str
    total_chunks: int
    expires_at: datetime


class ChunkReceiptResponse(CamelModel):
    received_count: int
    total_chunks: int
    complete: bool
    final_reference: str | None = None


class SessionStatusResponse(CamelModel):
    session_id: str
    state: str
    received_count: int
    total_chunks: int
    total_bytes: int | None = None
    complete: bool
    missing_chunk_indexes: list[int]
    final_reference: str | None = None
    failure: str | None = None
    expires_at: datetime


class RegisterContentRequest(CamelModel):
    content_id: str = Field(min_length=1, max_length=128)
    object_key: str = Field(min_length=1)
    content_type: str = "video/mp4"
    encrypted: bool = False
    encryption_key: str | None = None
    is_preview: bool = False


class RegisterContentResponse(CamelModel):
    content_id: str
    encrypted: bool


class EntitlementRequest(CamelModel):
    user_id: str = Field(min_length=1, max_length=128)


class PlaybackGrantResponse(CamelModel):
    content_id: str
    url: str
    expires_in: int
    encrypted: bool
    content_type: str
    encryption_key: str | None = None


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    request_id: str | None = None
    session_id: str | None = None
    trace_id: str | None = None
