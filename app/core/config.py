from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    database_url: str = Field(..., alias="DATABASE_URL")

    jwt_secret_key: str = Field(..., alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field("HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(60, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # Authorization cache: 15 minute snapshots, load bounded to 8 seconds
    auth_cache_ttl_seconds: int = Field(15 * 60, alias="AUTH_CACHE_TTL_SECONDS")
    auth_cache_max_entries: int = Field(10000, alias="AUTH_CACHE_MAX_ENTRIES")
    auth_load_timeout_seconds: float = Field(8.0, alias="AUTH_LOAD_TIMEOUT_SECONDS")

    revoked_token_capacity: int = Field(10000, alias="REVOKED_TOKEN_CAPACITY")
    rate_limit_max_tracked_users: int = Field(50000, alias="RATE_LIMIT_MAX_TRACKED_USERS")

    # JSON file overriding the built-in role hierarchy / patterns / tiers / approval chain
    rbac_policy_file: Optional[str] = Field(None, alias="RBAC_POLICY_FILE")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    initial_admin_email: Optional[str] = Field(None, alias="INITIAL_ADMIN_EMAIL")
    initial_admin_password: Optional[str] = Field(None, alias="INITIAL_ADMIN_PASSWORD")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
