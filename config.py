from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_JWT_SECRET = "change-me"


class Settings(BaseSettings):
    """
    Application settings.

    Loaded from environment variables and an optional .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./expense_tracker.db",
        description="SQLAlchemy async database URL"
    )

    # Token signing
    jwt_secret: str = Field(default=DEFAULT_JWT_SECRET)
    jwt_algorithm: str = Field(default="HS256")
    jwt_expire_minutes: int = Field(default=60, ge=1)

    bcrypt_rounds: int = Field(
        default=10,
        ge=4,
        le=31,
        description="bcrypt work factor"
    )
    db_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Busy timeout for the store and pool checkout timeout"
    )

    debug: bool = Field(
        default=False,
        description="Expose error details in responses"
    )
    log_level: str = Field(default="INFO")
    cors_origins: str = Field(
        default="*",
        description="Comma-separated list of allowed origins"
    )

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
