import json
import time
from dataclasses import dataclass
from pathlib import Path

import jwt
from jwt import InvalidTokenError

from vidvault.config import settings
from vidvault.errors import InvalidArgument, Unauthorized

OBJECT_TOKEN_AUDIENCE = "vidvault:object-read"


@dataclass(frozen=True)
class StoredObject:
    key: str
    etag: str | None = None


class ObjectStore:
    def put_object(self, key: str, data: bytes, content_type: str, metadata: dict[str, str]) -> StoredObject:
        raise NotImplementedError

    def get_object(self, key: str) -> bytes:
        raise NotImplementedError

    def presigned_url(self, key: str, ttl_seconds: int) -> str:
        raise NotImplementedError

    def list_keys(self, prefix: str = "") -> list[str]:
        raise NotImplementedError

    def delete_key(self, key: str) -> None:
        raise NotImplementedError


def issue_object_token(key: str, ttl_seconds: int) -> str:
    now = int(time.time())
    claims = {"key": key, "iat": now, "exp": now + max(1, ttl_seconds), "aud": OBJECT_TOKEN_AUDIENCE}
    return jwt.encode(claims, settings.object_token_secret, algorithm="HS256")


def resolve_object_token(token: str) -> str:
    try:
        claims = jwt.decode(
            token,
            key=settings.object_token_secret,
            algorithms=["HS256"],
            audience=OBJECT_TOKEN_AUDIENCE,
        )
    except jwt.ExpiredSignatureError as exc:
        raise Unauthorized("object reference expired") from exc
    except InvalidTokenError as exc:
        raise InvalidArgument(f"invalid object reference: {exc}") from exc
    return str(claims["key"])


class LocalObjectStore(ObjectStore):
    def __init__(self, root: str) -> None:
        self.root = (Path(root) / "objects").resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        target = (self.root / key).resolve()
        if not target.is_relative_to(self.root):
            raise InvalidArgument("object key escapes storage root")
        return target

    def put_object(self, key: str, data: bytes, content_type: str, metadata: dict[str, str]) -> StoredObject:
        target = self._path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        sidecar = target.with_name(target.name + ".meta.json")
        sidecar.write_text(json.dumps({"content_type": content_type, "metadata": metadata}, sort_keys=True))
        return StoredObject(key=key)

    def get_object(self, key: str) -> bytes:
        return self._path(key).read_bytes()

    def content_type(self, key: str) -> str:
        sidecar = self._path(key).with_name(self._path(key).name + ".meta.json")
        if not sidecar.exists():
            return "application/octet-stream"
        return json.loads(sidecar.read_text()).get("content_type", "application/octet-stream")

    def presigned_url(self, key: str, ttl_seconds: int) -> str:
        token = issue_object_token(key, ttl_seconds)
        return f"{settings.public_base_url.rstrip('/')}/v1/objects/{token}"

    def list_keys(self, prefix: str = "") -> list[str]:
        base = self.root / prefix if prefix else self.root
        if not base.exists():
            return []
        root = self.root
        return [
            str(path.relative_to(root)).replace("\\", "/")
            for path in base.rglob("*")
            if path.is_file() and not path.name.endswith(".meta.json")
        ]

    def delete_key(self, key: str) -> None:
        target = self._path(key)
        for path in (target, target.with_name(target.name + ".meta.json")):
            if path.exists():
                path.unlink()


class S3ObjectStore(ObjectStore):
    def __init__(
        self,
        bucket: str,
        region: str,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
    ) -> None:
        if not bucket:
            raise ValueError("bucket must be set for s3-compatible backends")
        import boto3

        self.bucket = bucket
        client_kwargs = {"region_name": region}
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url
        if access_key_id and secret_access_key:
            client_kwargs["aws_access_key_id"] = access_key_id
            client_kwargs["aws_secret_access_key"] = secret_access_key
        self.client = boto3.client("s3", **client_kwargs)

    def put_object(self, key: str, data: bytes, content_type: str, metadata: dict[str, str]) -> StoredObject:
        result = self.client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
            Metadata={name: str(value) for name, value in metadata.items()},
        )
        return StoredObject(key=key, etag=result.get("ETag"))

    def get_object(self, key: str) -> bytes:
        obj = self.client.get_object(Bucket=self.bucket, Key=key)
        return obj["Body"].read()

    def presigned_url(self, key: str, ttl_seconds: int) -> str:
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=max(1, ttl_seconds),
        )

    def list_keys(self, prefix: str = "") -> list[str]:
        keys: list[str] = []
        continuation_token = None
        while True:
            params = {"Bucket": self.bucket, "Prefix": prefix}
            if continuation_token:
                params["ContinuationToken"] = continuation_token
            response = self.client.list_objects_v2(**params)
            for item in response.get("Contents", []):
                key = item.get("Key")
                if key:
                    keys.append(key)
            if not response.get("IsTruncated"):
                break
            continuation_token = response.get("NextContinuationToken")
        return keys

    def delete_key(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)


def build_object_store() -> ObjectStore:
    backend = settings.storage_backend.lower()
    if backend == "local":
        return LocalObjectStore(settings.storage_root)
    if backend == "s3":
        return S3ObjectStore(
            bucket=settings.s3_bucket,
            region=settings.s3_region,
            endpoint_url=settings.s3_endpoint_url or None,
            access_key_id=settings.s3_access_key_id or None,
            secret_access_key=settings.s3_secret_access_key or None,
        )
    raise ValueError(f"unsupported storage backend: {settings.storage_backend}")
