"""Content records and entitlements backing playback grants.

A grant never exposes the permanent object key: viewers get a time-boxed
read URL plus, for encrypted content they are entitled to, the key material.
"""

import re
from dataclasses import dataclass

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from vidvault.auth import Principal
from vidvault.config import settings
from vidvault.errors import InvalidArgument, Unauthorized
from vidvault.models import ContentRecord, Entitlement
from vidvault.storage import ObjectStore

_KEY_HEX = re.compile(r"^[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class PlaybackGrant:
    content_id: str
    url: str
    expires_in: int
    encrypted: bool
    content_type: str
    encryption_key: str | None = None


def _owner_prefix(owner_id: str) -> str:
    return f"{settings.destination_prefix}/{re.sub(r'[^a-zA-Z0-9.-]', '_', owner_id)}/"


class ContentCatalog:
    def __init__(self, store: ObjectStore, url_ttl_seconds: int | None = None) -> None:
        self.store = store
        self.url_ttl_seconds = url_ttl_seconds or settings.playback_url_ttl_seconds

    def register(
        self,
        db: Session,
        principal: Principal,
        content_id: str,
        object_key: str,
        content_type: str,
        encrypted: bool,
        encryption_key: str | None,
        is_preview: bool = False,
    ) -> ContentRecord:
        if not principal.is_admin and not object_key.startswith(_owner_prefix(principal.user_id)):
            raise Unauthorized("object key does not belong to this creator")
        if encrypted and (not encryption_key or not _KEY_HEX.match(encryption_key)):
            raise InvalidArgument("encrypted content needs a 256-bit hex encryption key")
        if not encrypted and encryption_key:
            raise InvalidArgument("encryption key given for unencrypted content")

        record = db.get(ContentRecord, content_id)
        if record is not None and record.owner_id != principal.user_id and not principal.is_admin:
            raise Unauthorized("content id belongs to a different owner")
        if record is None:
            record = ContentRecord(content_id=content_id, owner_id=principal.user_id)
            db.add(record)
        record.object_key = object_key
        record.content_type = content_type
        record.is_encrypted = encrypted
        record.encryption_key_hex = encryption_key.lower() if encryption_key else None
        record.is_preview = is_preview
        db.commit()
        return record

    def entitle(self, db: Session, principal: Principal, content_id: str, user_id: str) -> Entitlement:
        record = self._get(db, content_id)
        if record.owner_id != principal.user_id and not principal.is_admin:
            raise Unauthorized("only the content owner can grant entitlements")
        existing = db.scalar(
            select(Entitlement).where(Entitlement.content_id == content_id, Entitlement.user_id == user_id)
        )
        if existing:
            return existing
        entitlement = Entitlement(content_id=content_id, user_id=user_id)
        db.add(entitlement)
        db.commit()
        return entitlement

    def is_entitled(self, db: Session, principal: Principal, record: ContentRecord) -> bool:
        if principal.is_admin or record.owner_id == principal.user_id:
            return True
        entitled = db.scalar(
            select(Entitlement.id).where(
                Entitlement.content_id == record.content_id, Entitlement.user_id == principal.user_id
            )
        )
        return entitled is not None

    def grant(self, db: Session, principal: Principal, content_id: str) -> PlaybackGrant:
        record = self._get(db, content_id)
        entitled = self.is_entitled(db, principal, record)
        if not entitled and not record.is_preview:
            raise Unauthorized("not entitled to this content")
        if record.is_encrypted and not entitled:
            # previews of encrypted content would be useless without the key
            raise Unauthorized("not entitled to encrypted content")
        return PlaybackGrant(
            content_id=record.content_id,
            url=self.store.presigned_url(record.object_key, self.url_ttl_seconds),
            expires_in=self.url_ttl_seconds,
            encrypted=record.is_encrypted,
            content_type=record.content_type,
            encryption_key=record.encryption_key_hex if record.is_encrypted else None,
        )

    @staticmethod
    def _get(db: Session, content_id: str) -> ContentRecord:
        record = db.get(ContentRecord, content_id)
        if record is None:
            raise HTTPException(status_code=404, detail="content not found")
        return record
