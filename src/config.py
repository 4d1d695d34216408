from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal, Optional
from urllib.parse import urlparse

# Application version
VERSION = "1.0.0"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    LOG_LEVEL: str = "info"
    ENVIRONMENT: Literal["development", "production"] = "development"

    # Upstream origin - every relayed path is appended to this base URL
    STREAM_URL: str = "http://kst.moonplex.net:8080"

    # Route Configuration
    STREAM_ROUTE: str = "/stream"
    # Manifest path of the channel, used by the stream test endpoint and the player page
    STREAM_PATH: str = "/CH2/tracks-v1a1/mono.m3u8"
    # Optional directory holding index.html and player.js. If unset, the
    # static/ directory next to src/ is used.
    STATIC_DIR: Optional[str] = None

    # Manifest cache TTL (seconds). A live playlist rolls every few seconds,
    # production runs with the tighter window.
    MANIFEST_CACHE_TTL: float = 2.0
    MANIFEST_CACHE_TTL_PRODUCTION: float = 1.0

    # Upstream HTTP client
    # Manifests block player startup, so they get the shorter budget
    MANIFEST_TIMEOUT: float = 5.0
    SEGMENT_TIMEOUT: float = 10.0
    MAX_REDIRECTS: int = 5
    MAX_KEEPALIVE_CONNECTIONS: int = 20
    MAX_CONNECTIONS: int = 100
    KEEPALIVE_EXPIRY: float = 30.0
    DEFAULT_USER_AGENT: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/115.0.0.0 Safari/537.36"
    # Read size used when piping segment bodies downstream
    SEGMENT_CHUNK_SIZE: int = 32768

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",  # No prefix, read directly from .env
        extra="ignore"  # Ignore extra environment variables from container
    )

    @field_validator('STREAM_URL')
    @classmethod
    def validate_stream_url(cls, v):
        parsed = urlparse(v.strip())
        if parsed.scheme.lower() not in ['http', 'https']:
            raise ValueError("STREAM_URL must use HTTP or HTTPS protocol")
        if not parsed.netloc:
            raise ValueError("STREAM_URL must have a valid host")
        return v.strip().rstrip('/')

    @field_validator('STREAM_ROUTE')
    @classmethod
    def validate_stream_route(cls, v):
        route = '/' + v.strip().strip('/')
        if route == '/':
            raise ValueError("STREAM_ROUTE cannot be the root path")
        return route

    @field_validator('ENVIRONMENT', mode='before')
    @classmethod
    def normalize_environment(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def manifest_cache_ttl(self) -> float:
        """TTL applied to cached manifests in the current environment"""
        if self.is_production:
            return self.MANIFEST_CACHE_TTL_PRODUCTION
        return self.MANIFEST_CACHE_TTL

    @property
    def stream_manifest_url(self) -> str:
        """Origin URL of the channel manifest"""
        return f"{self.STREAM_URL}{self.STREAM_PATH}"


# Global settings instance
settings = Settings()
