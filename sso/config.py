"""
Application settings, loaded from the environment (SSO_ prefix) and an optional .env file.
"""

import secrets
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVEL = Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]


class Settings(BaseSettings):
    """SSO server settings."""

    model_config = SettingsConfigDict(
        env_prefix="SSO_",
        env_file=".env",
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 8888
    # Empty issuer means http://localhost:{port}.
    issuer: str = ""
    database_url: str = "sqlite+aiosqlite:///./data/sso.db"

    # HMAC key for token signatures and federation state; random per process unless set.
    global_secret: SecretStr = Field(default_factory=lambda: SecretStr(secrets.token_hex(32)))
    # PEM encoded RSA private key used to sign ID tokens; generated at startup if unset.
    signing_key_path: Optional[str] = None
    signing_key_id: str = "sso-1"

    upstream_timeout: float = 5.0
    cookie_secure: bool = False
    log_level: LOG_LEVEL = "INFO"
    log_json: bool = False

    @field_validator("global_secret")
    @classmethod
    def validate_global_secret(cls, v):
        if len(v.get_secret_value()) < 32:
            raise ValueError("global_secret must be at least 32 characters")
        return v

    @property
    def issuer_url(self) -> str:
        """Issuer without a trailing slash."""
        issuer = self.issuer or f"http://localhost:{self.port}"
        return issuer.rstrip("/")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
