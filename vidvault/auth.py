from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException
import jwt
from jwt import InvalidTokenError

from vidvault.config import settings

ROLE_ADMIN = "admin"
ROLE_CREATOR = "creator"
ROLE_VIEWER = "viewer"
KNOWN_ROLES = {ROLE_ADMIN, ROLE_CREATOR, ROLE_VIEWER}


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: str = ROLE_VIEWER
    source: str = "api_key"

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def can_upload(self) -> bool:
        return self.role in (ROLE_ADMIN, ROLE_CREATOR)


def _split_ids(raw: str) -> set[str]:
    return {item.strip() for item in raw.split(",") if item.strip()}


def _parse_api_key_mappings() -> dict[str, str]:
    mapping: dict[str, str] = {}
    for item in settings.api_key_mappings.split(","):
        pair = item.strip()
        if ":" not in pair:
            continue
        api_key, user_id = (part.strip() for part in pair.split(":", 1))
        if api_key and user_id:
            mapping[api_key] = user_id
    return mapping


def _configured_role(user_id: str) -> str:
    if user_id in _split_ids(settings.admin_user_ids):
        return ROLE_ADMIN
    if user_id in _split_ids(settings.creator_user_ids):
        return ROLE_CREATOR
    return ROLE_VIEWER


def _parse_bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="missing bearer token")
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise HTTPException(status_code=401, detail="invalid authorization header")
    token = authorization[len(prefix) :].strip()
    if not token:
        raise HTTPException(status_code=401, detail="missing bearer token")
    return token


def _resolve_from_jwt(authorization: str | None) -> Principal:
    if not settings.jwt_secret:
        raise HTTPException(status_code=500, detail="jwt auth is enabled but jwt_secret is not configured")
    token = _parse_bearer_token(authorization)
    decode_kwargs = {
        "key": settings.jwt_secret,
        "algorithms": [settings.jwt_algorithm],
    }
    if settings.jwt_audience:
        decode_kwargs["audience"] = settings.jwt_audience
    if settings.jwt_issuer:
        decode_kwargs["issuer"] = settings.jwt_issuer
    try:
        payload = jwt.decode(token, **decode_kwargs)
    except InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail=f"invalid bearer token: {exc}") from exc
    user_id = str(payload.get("sub") or payload.get("user_id") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="jwt missing subject claim")
    role = str(payload.get("role") or "").strip().lower()
    if role not in KNOWN_ROLES:
        role = _configured_role(user_id)
    return Principal(user_id=user_id, role=role, source="jwt")


def _resolve_from_api_key(x_api_key: str | None) -> Principal:
    if not x_api_key:
        raise HTTPException(status_code=401, detail="missing API key")
    user_id = _parse_api_key_mappings().get(x_api_key)
    if not user_id:
        raise HTTPException(status_code=403, detail="invalid API key")
    return Principal(user_id=user_id, role=_configured_role(user_id), source="api_key")


def require_principal(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    mode = settings.auth_mode.lower().strip()
    if mode == "jwt":
        return _resolve_from_jwt(authorization)
    if mode == "hybrid":
        if authorization:
            return _resolve_from_jwt(authorization)
        return _resolve_from_api_key(x_api_key)
    if mode == "api_key":
        return _resolve_from_api_key(x_api_key)
    raise HTTPException(status_code=500, detail=f"unsupported auth_mode: {settings.auth_mode}")


def require_uploader(principal: Principal = Depends(require_principal)) -> Principal:
    if not principal.can_upload:
        raise HTTPException(status_code=403, detail="creator role required to upload")
    return principal


def require_admin(principal: Principal = Depends(require_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="admin access required")
    return principal
