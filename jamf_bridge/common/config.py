from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


class Settings(BaseSettings):
    """
    Runtime configuration.

    Notes:
    - Loaded once and passed by reference into the client; nothing re-reads the
      environment per call.
    - Frozen: components can share the instance without defensive copies.
    - Durations are configured in the backend's conventional units (ms for
      retry/verification delays) and exposed in seconds via properties.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore", frozen=True)

    APP_NAME: str = "jamf-bridge"
    LOG_LEVEL: str = "INFO"

    # Server
    JAMF_URL: str = Field(default="", validation_alias=AliasChoices("JAMF_URL", "JAMF_BASE_URL"))
    # Set true only for development servers with self-signed certificates.
    JAMF_ALLOW_INSECURE: bool = False
    JAMF_HTTP_TIMEOUT_S: float = 10.0

    # OAuth2 client credentials (Modern API)
    JAMF_CLIENT_ID: Optional[str] = None
    JAMF_CLIENT_SECRET: Optional[SecretStr] = None
    # Username/password (Basic -> bearer token, works on both families)
    JAMF_USERNAME: Optional[str] = None
    JAMF_PASSWORD: Optional[SecretStr] = None
    # Refresh a token once its remaining lifetime drops below this.
    JAMF_TOKEN_REFRESH_BUFFER_S: float = 300.0

    # Write authority
    JAMF_READ_ONLY: bool = False
    JAMF_WRITE_ENABLED: Optional[bool] = None
    # Unattended/automation execution context; defaults writes off.
    MCP_MODE: bool = False

    # Optimistic-concurrency retry
    JAMF_CONFLICT_RETRY_MAX: int = Field(default=3, ge=0)
    JAMF_CONFLICT_RETRY_DELAY_MS: int = Field(default=500, ge=0)

    # Post-write verification
    JAMF_VERIFY_ATTEMPTS: int = Field(default=5, ge=1)
    JAMF_VERIFY_DELAY_MS: int = Field(default=1000, ge=0)
    JAMF_VERIFY_REQUIRED_CONSISTENT_READS: int = Field(default=2, ge=1)
    JAMF_VERIFY_REQUIRE_XML: bool = True
    JAMF_VERIFY_COUNT_IMMEDIATE_READ: bool = False

    # Generic retry (transient failures)
    JAMF_MAX_RETRIES: int = Field(default=3, ge=0)
    JAMF_RETRY_DELAY: int = Field(default=1000, ge=0)
    JAMF_RETRY_MAX_DELAY: int = Field(default=10000, ge=0)
    JAMF_RETRY_BACKOFF_MULTIPLIER: float = Field(default=2.0, ge=1.0)

    # Circuit breaker
    JAMF_ENABLE_CIRCUIT_BREAKER: bool = True
    JAMF_CIRCUIT_FAILURE_THRESHOLD: int = Field(default=5, ge=1)
    JAMF_CIRCUIT_RESET_TIMEOUT_MS: int = Field(default=60000, ge=0)
    JAMF_CIRCUIT_HALF_OPEN_REQUESTS: int = Field(default=3, ge=1)

    @field_validator("JAMF_URL")
    @classmethod
    def _strip_url(cls, v: str) -> str:
        return str(v or "").strip().rstrip("/")

    @property
    def base_url(self) -> str:
        return self.JAMF_URL

    @property
    def tls_verify(self) -> bool:
        return not self.JAMF_ALLOW_INSECURE

    @property
    def has_oauth2(self) -> bool:
        return bool(self.JAMF_CLIENT_ID and self.JAMF_CLIENT_SECRET and self.JAMF_CLIENT_SECRET.get_secret_value())

    @property
    def has_basic_auth(self) -> bool:
        return bool(self.JAMF_USERNAME and self.JAMF_PASSWORD and self.JAMF_PASSWORD.get_secret_value())

    def read_only_state(self) -> tuple[bool, Optional[str]]:
        """
        Returns (read_only, source).

        - JAMF_READ_ONLY=true always wins.
        - Automation contexts (MCP_MODE) are read-only unless JAMF_WRITE_ENABLED=true.
        """
        if self.JAMF_READ_ONLY:
            return True, "env:JAMF_READ_ONLY"
        if self.MCP_MODE and self.JAMF_WRITE_ENABLED is not True:
            return True, "automation:MCP_MODE"
        return False, None

    @property
    def read_only(self) -> bool:
        return self.read_only_state()[0]

    @property
    def conflict_retry_delay_s(self) -> float:
        return self.JAMF_CONFLICT_RETRY_DELAY_MS / 1000.0

    @property
    def verify_delay_s(self) -> float:
        return self.JAMF_VERIFY_DELAY_MS / 1000.0

    @property
    def circuit_reset_timeout_s(self) -> float:
        return self.JAMF_CIRCUIT_RESET_TIMEOUT_MS / 1000.0

    def validate_for_client(self) -> None:
        """
        Fail fast at construction when the client cannot possibly authenticate.
        """
        if not self.base_url:
            raise ConfigurationError("JAMF_URL is not set")
        if not self.base_url.startswith(("https://", "http://")):
            raise ConfigurationError(f"JAMF_URL must be an http(s) URL: {self.base_url}")
        if not self.has_oauth2 and not self.has_basic_auth:
            raise ConfigurationError(
                "No authentication credentials provided. Need either OAuth2 "
                "(JAMF_CLIENT_ID/JAMF_CLIENT_SECRET) or Basic Auth (JAMF_USERNAME/JAMF_PASSWORD)"
            )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.validate_for_client()
    return settings
