"""Server settings, loaded from SEAL_SERVER_* environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    """Settings for the key directory and ciphertext relay"""

    model_config = SettingsConfigDict(env_prefix="SEAL_SERVER_", env_file=".env", extra="ignore")

    database_url: str = "sqlite+aiosqlite:///./seal.db"

    # JWT; override secret_key in production
    secret_key: str = "change-this-secret-key-in-production"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = Field(default=60 * 24, ge=1)

    host: str = "0.0.0.0"
    port: int = 8000


settings = ServerSettings()
