"""Application settings via Pydantic Settings."""

from functools import lru_cache
import json
from typing import Annotated
from urllib.parse import quote_plus

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    app_name: str = "Ethio Shop API"
    app_version: str = "1.0.0"
    environment: str = Field(
        default="development",
        validation_alias=AliasChoices("ENVIRONMENT", "APP_ENV"),
    )
    debug: bool = False

    # Server
    host: str = "0.0.0.0"
    port: int = 8080
    shutdown_grace_seconds: float = Field(default=10.0, gt=0)
    startup_strict: bool = Field(
        default=False,
        description="If True, a store that fails to connect aborts startup.",
    )

    # Database (PostgreSQL)
    database_url: str = ""
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "ethio_shop"
    db_user: str = "ethio_user"
    db_password: str = "ethio_password"
    db_ssl: bool = False
    db_application_name: str = "ethio-shop-api"
    db_pool_min: int = Field(default=5, ge=1)
    db_pool_max: int = Field(default=20, ge=1)
    db_pool_idle: float = Field(
        default=10.0,
        gt=0,
        description="Seconds a pooled connection may live before it is recycled",
    )
    db_pool_acquire: float = Field(
        default=30.0,
        gt=0,
        description="Seconds to wait for a free pooled connection",
    )
    db_connect_timeout: float = Field(default=10.0, gt=0)
    db_health_timeout: float = Field(default=2.0, gt=0)
    db_drain_timeout: float = Field(default=5.0, ge=0)

    @property
    def async_database_url(self) -> str:
        """Get database URL with asyncpg driver.

        DATABASE_URL wins when set; hosted providers hand out postgresql:// so
        the driver is swapped in. Otherwise the URL is built from DB_* parts.
        """
        url = self.database_url
        if not url:
            url = (
                f"postgresql+asyncpg://{quote_plus(self.db_user)}:{quote_plus(self.db_password)}"
                f"@{self.db_host}:{self.db_port}/{self.db_name}"
            )
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url

    # Redis
    redis_url: str = ""
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str | None = None
    redis_connect_timeout: float = Field(default=5.0, gt=0)
    redis_socket_timeout: float = Field(default=5.0, gt=0)
    redis_reconnect_base_delay: float = Field(default=0.1, ge=0)
    redis_reconnect_max_delay: float = Field(default=3.0, ge=0)
    redis_reconnect_max_attempts: int = Field(default=10, ge=0)
    redis_health_timeout: float = Field(default=2.0, gt=0)

    @property
    def effective_redis_url(self) -> str:
        """REDIS_URL when set, otherwise built from REDIS_* parts."""
        if self.redis_url:
            return self.redis_url
        auth = f":{quote_plus(self.redis_password)}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # CORS
    # NoDecode: the raw env string goes to _parse_cors_origins, not json.loads.
    cors_origins: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["http://localhost:3000"],
        validation_alias=AliasChoices("CORS_ORIGINS", "ALLOWED_ORIGINS"),
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v: object) -> list[str]:
        """
        Accept either:
        - JSON array string: '["https://a.com","http://localhost:3000"]'
        - Comma-separated string: "https://a.com,http://localhost:3000"
        - Already-parsed list[str]
        """
        if v is None:
            return []
        if isinstance(v, list):
            return [str(x).strip() for x in v if str(x).strip()]
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return []
            if s.startswith("["):
                try:
                    parsed = json.loads(s)
                except json.JSONDecodeError:
                    parsed = s.split(",")
                if isinstance(parsed, list):
                    return [str(x).strip() for x in parsed if str(x).strip()]
                return [str(parsed).strip()]
            return [part.strip() for part in s.split(",") if part.strip()]
        return [str(v).strip()] if str(v).strip() else []

    @model_validator(mode="after")
    def _check_bounds(self) -> "Settings":
        if self.db_pool_min > self.db_pool_max:
            raise ValueError(
                f"DB_POOL_MIN ({self.db_pool_min}) must not exceed DB_POOL_MAX ({self.db_pool_max})"
            )
        if self.redis_reconnect_base_delay > self.redis_reconnect_max_delay:
            raise ValueError("REDIS_RECONNECT_BASE_DELAY must not exceed REDIS_RECONNECT_MAX_DELAY")
        return self

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
