"""
Environment-backed settings for the UMKM directory API.
"""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    app_env: Literal["development", "production"] = "development"
    port: int = 3000

    # Supabase (managed Postgres + storage)
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    avatar_bucket: str = "avatars"

    # Tokens
    jwt_secret: str = "change-this-secret"
    jwt_algorithm: str = "HS256"
    jwt_expire_days: int = 7

    # Case the User.role column stores; reads are always lowercased
    role_storage_case: Literal["lower", "capitalized"] = "lower"

    # Comma separated list of allowed origins
    cors_origins: str = ""

    # Comma separated proxy addresses whose X-Forwarded-For is trusted ("*" for any)
    forwarded_allow_ips: str = "127.0.0.1"

    login_rate_limit: int = 20
    login_rate_window_seconds: int = 10 * 60
    global_rate_limit: int = 1000
    global_rate_window_seconds: int = 15 * 60

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def cors_origin_list(self) -> List[str]:
        origins = [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        if origins:
            return origins
        return [] if self.is_production else ["*"]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
