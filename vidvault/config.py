from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "vidvault"
    app_version: str = "dev"
    host: str = "0.0.0.0"
    port: int = 8000
    public_base_url: str = "http://testserver"
    database_url: str = "sqlite:///./vidvault.db"

    storage_backend: str = "local"
    storage_root: str = "./data"
    s3_bucket: str = ""
    s3_region: str = "us-east-1"
    s3_endpoint_url: str = ""
    s3_access_key_id: str = ""
    s3_secret_access_key: str = ""
    destination_prefix: str = "videos"

    side_cache_backend: str = "database"
    chunk_buffer_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "vidvault:session"
    redis_lock_timeout_seconds: int = 120

    auth_mode: str = "api_key"
    api_key_mappings: str = "dev-key:dev-user"
    admin_user_ids: str = "dev-user"
    creator_user_ids: str = ""
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    jwt_audience: str = ""
    jwt_issuer: str = ""
    object_token_secret: str = "change-me-object-token-secret-32b"

    tracing_enabled: bool = False
    tracing_service_name: str = "vidvault"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True

    session_ttl_seconds: int = 4 * 60 * 60
    max_total_chunks: int = 100_000
    max_chunk_bytes: int = 16 * 1024 * 1024
    max_inflight_chunks_per_session: int = 8
    sweep_enabled: bool = True
    sweep_interval_seconds: int = 3600
    playback_url_ttl_seconds: int = 300
    probe_payload_bytes: int = 256 * 1024


settings = Settings()
