"""
Multipublish Configuration
==========================
Explicit configuration injected into adapters, storage and the token store.

`Settings.from_env()` is the only place that reads the process environment;
business logic receives these dataclasses at construction time.
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional


def _env(environ: Mapping[str, str], *names: str, default: str = "") -> str:
    for name in names:
        value = environ.get(name, "")
        if value:
            return value
    return default


@dataclass(frozen=True)
class YouTubeConfig:
    client_id: str = ""
    client_secret: str = ""
    token_url: str = "https://oauth2.googleapis.com/token"
    upload_url: str = "https://www.googleapis.com/upload/youtube/v3/videos"
    category_id: str = "22"  # People & Blogs
    default_privacy: str = "private"

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass(frozen=True)
class InstagramConfig:
    app_id: str = ""
    app_secret: str = ""
    graph_url: str = "https://graph.instagram.com"
    api_version: str = "v21.0"

    @property
    def configured(self) -> bool:
        return bool(self.app_id and self.app_secret)


@dataclass(frozen=True)
class TikTokConfig:
    client_key: str = ""
    client_secret: str = ""
    api_url: str = "https://open.tiktokapis.com/v2"
    # Unaudited API clients may only post privately
    privacy_level: str = "SELF_ONLY"
    chunk_retries: int = 3
    chunk_retry_delay: float = 2.0

    @property
    def configured(self) -> bool:
        return bool(self.client_key and self.client_secret)


@dataclass(frozen=True)
class StorageConfig:
    account_id: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    bucket_name: str = "multipublish-tmp"
    endpoint: str = ""
    public_url: str = ""
    key_prefix: str = "tmp/"

    @property
    def configured(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key and (self.account_id or self.endpoint))

    def endpoint_url(self) -> str:
        return self.endpoint or f"https://{self.account_id}.r2.cloudflarestorage.com"


@dataclass(frozen=True)
class PollConfig:
    interval_seconds: float = 2.0
    max_attempts: int = 90          # 3 minutes at the default interval
    max_seconds: Optional[float] = None


@dataclass(frozen=True)
class Settings:
    youtube: YouTubeConfig = field(default_factory=YouTubeConfig)
    instagram: InstagramConfig = field(default_factory=InstagramConfig)
    tiktok: TikTokConfig = field(default_factory=TikTokConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    poll: PollConfig = field(default_factory=PollConfig)

    database_url: str = ""
    token_enc_keys: str = ""
    jwt_secret: str = ""
    jwt_audience: str = "multipublish-app"
    token_refresh_skew_sec: int = 300   # refresh 5 min early
    http_timeout: float = 120.0
    compress_target_mb: int = 0          # 0 = compression disabled
    log_level: str = "INFO"
    allowed_origins: str = ""
    session_retention_sec: int = 3600   # finished sessions stay readable this long
    port: int = 8000

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        max_seconds = _env(env, "POLL_MAX_SECONDS")
        return cls(
            youtube=YouTubeConfig(
                client_id=_env(env, "GOOGLE_CLIENT_ID", "YOUTUBE_CLIENT_ID"),
                client_secret=_env(env, "GOOGLE_CLIENT_SECRET", "YOUTUBE_CLIENT_SECRET"),
                default_privacy=_env(env, "YOUTUBE_DEFAULT_PRIVACY", default="private"),
            ),
            instagram=InstagramConfig(
                app_id=_env(env, "INSTAGRAM_APP_ID", "AUTH_INSTAGRAM_ID"),
                app_secret=_env(env, "INSTAGRAM_APP_SECRET", "AUTH_INSTAGRAM_SECRET"),
                api_version=_env(env, "INSTAGRAM_API_VERSION", default="v21.0"),
            ),
            tiktok=TikTokConfig(
                client_key=_env(env, "TIKTOK_CLIENT_KEY"),
                client_secret=_env(env, "TIKTOK_CLIENT_SECRET"),
                privacy_level=_env(env, "TIKTOK_PRIVACY_LEVEL", default="SELF_ONLY"),
            ),
            storage=StorageConfig(
                account_id=_env(env, "R2_ACCOUNT_ID"),
                access_key_id=_env(env, "R2_ACCESS_KEY_ID"),
                secret_access_key=_env(env, "R2_SECRET_ACCESS_KEY"),
                bucket_name=_env(env, "R2_BUCKET_NAME", default="multipublish-tmp"),
                endpoint=_env(env, "R2_ENDPOINT"),
                public_url=_env(env, "R2_PUBLIC_URL"),
            ),
            poll=PollConfig(
                interval_seconds=float(_env(env, "POLL_INTERVAL_SECONDS", default="2.0")),
                max_attempts=int(_env(env, "POLL_MAX_ATTEMPTS", default="90")),
                max_seconds=float(max_seconds) if max_seconds else None,
            ),
            database_url=_env(env, "DATABASE_URL"),
            token_enc_keys=_env(env, "TOKEN_ENC_KEYS"),
            jwt_secret=_env(env, "JWT_SECRET"),
            jwt_audience=_env(env, "JWT_AUDIENCE", default="multipublish-app"),
            token_refresh_skew_sec=int(_env(env, "TOKEN_REFRESH_SKEW_SEC", default="300")),
            http_timeout=float(_env(env, "HTTP_TIMEOUT_SECONDS", default="120")),
            compress_target_mb=int(_env(env, "COMPRESS_TARGET_MB", default="0")),
            log_level=_env(env, "LOG_LEVEL", default="INFO").upper(),
            allowed_origins=_env(env, "ALLOWED_ORIGINS"),
            session_retention_sec=int(_env(env, "SESSION_RETENTION_SEC", default="3600")),
            port=int(_env(env, "PORT", default="8000")),
        )
