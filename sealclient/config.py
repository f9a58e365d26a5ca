"""Client settings, loaded from SEAL_CLIENT_* environment variables."""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Settings for one device profile"""

    model_config = SettingsConfigDict(env_prefix="SEAL_CLIENT_", env_file=".env", extra="ignore")

    server_url: str = "http://localhost:8000"

    # Local key custody; one file per device profile, never synced
    keystore_path: str = "client_data/keys.db"
    keystore_passphrase: Optional[str] = None

    # Search indexing; the server serves at most 1000 rows per request
    search_window: int = Field(default=500, ge=1, le=1000)
    decrypt_concurrency: int = Field(default=8, ge=1)
