from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class SecretConfig(BaseSettings):
    """
    Sensitive config.

    This module is safe to commit: it contains *no* secrets, only loading logic.
    Real secret values should come from:
      - environment variables (preferred in production)
      - optional local `.env.secrets` file (developer convenience)
    """

    model_config = SettingsConfigDict(
        env_file=".env.secrets",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Shared key for staff screens (call-next, start, complete, expire).
    # Unset => staff routes are open (local/dev workshop LAN).
    staff_api_token: SecretStr | None = Field(default=None, alias="STAFF_API_TOKEN")
