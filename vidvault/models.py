import enum
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vidvault.db import Base


class SessionState(str, enum.Enum):
    initialized = "INITIALIZED"
    accumulating = "ACCUMULATING"
    complete = "COMPLETE"
    committed = "COMMITTED"
    failed = "FAILED"
    expired = "EXPIRED"


OPEN_STATES = (SessionState.initialized, SessionState.accumulating)
TERMINAL_STATES = (SessionState.committed, SessionState.failed, SessionState.expired)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UploadSessionRecord(Base):
    """Durable side-cache row: bitmap and metadata, never chunk bytes."""

    __tablename__ = "upload_sessions"
    __table_args__ = (Index("idx_upload_sessions_state_expiry", "state", "expires_at"),)

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)
    total_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    received_bitmap: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    destination_key: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[str] = mapped_column(String(255), nullable=False)
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    state: Mapped[str] = mapped_column(String(32), nullable=False, default=SessionState.initialized.value)
    final_reference: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)


class ContentRecord(Base):
    __tablename__ = "content_records"

    content_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    object_key: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[str] = mapped_column(String(255), nullable=False, default="video/mp4")
    is_encrypted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_preview: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    encryption_key_hex: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    entitlements: Mapped[list["Entitlement"]] = relationship(back_populates="content", cascade="all, delete-orphan")


class Entitlement(Base):
    __tablename__ = "entitlements"
    __table_args__ = (UniqueConstraint("content_id", "user_id", name="uq_entitlement_content_user"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    content_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("content_records.content_id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    content: Mapped[ContentRecord] = relationship(back_populates="entitlements")
