"""Configuration management using Pydantic Settings."""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fieldintel.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase Configuration
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: SecretStr = SecretStr("")
    SUPABASE_STORAGE_BUCKET: str = "audio-recordings"

    # Speech-to-text (OpenAI Whisper)
    OPENAI_API_KEY: SecretStr = SecretStr("")
    TRANSCRIPTION_MODEL: str = "whisper-1"

    # Extraction (Anthropic Claude)
    ANTHROPIC_API_KEY: SecretStr = SecretStr("")
    ANALYSIS_MODEL: str = "claude-sonnet-4-20250514"
    ANALYSIS_MAX_TOKENS: int = 4096
    ANALYSIS_TEMPERATURE: float = 0.1
    ANALYSIS_STRICT_EXTRACTION: bool = False
    AUTO_SYNC_CONFIDENCE_THRESHOLD: float = 0.8

    # Salesforce OAuth Configuration
    SALESFORCE_CLIENT_ID: str = ""
    SALESFORCE_CLIENT_SECRET: SecretStr = SecretStr("")
    SALESFORCE_REDIRECT_URI: str = "http://localhost:5173/settings/crm/callback/salesforce"
    SALESFORCE_LOGIN_URL: str = "https://login.salesforce.com"
    SALESFORCE_API_VERSION: str = "v58.0"
    SALESFORCE_SCOPE: str = "api refresh_token offline_access"

    # Pipeline event relay
    EVENT_RELAY_ENABLED: bool = True
    EVENT_RELAY_INTERVAL_SECONDS: int = 60
    EVENT_RELAY_GRACE_SECONDS: int = 120
    EVENT_RELAY_MAX_ATTEMPTS: int = 5

    # Application Settings
    APP_SECRET_KEY: SecretStr = SecretStr("")
    APP_ENV: Literal["development", "staging", "production"] = "development"

    # Logging
    LOG_FORMAT: Literal["text", "json"] = "text"
    LOG_LEVEL: str = "INFO"

    # CORS Configuration
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @field_validator("SUPABASE_URL")
    @classmethod
    def validate_supabase_url(cls, v: str) -> str:
        """Validate that SUPABASE_URL is a valid URL."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("SUPABASE_URL must start with http:// or https://")
        return v.rstrip("/") if v else v

    @field_validator("SALESFORCE_LOGIN_URL")
    @classmethod
    def strip_login_url(cls, v: str) -> str:
        """Normalize the Salesforce login host."""
        return v.rstrip("/")

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.APP_ENV == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.APP_ENV == "production"

    @property
    def session_secret(self) -> str:
        """Secret used to sign the OAuth session cookie.

        Only development may run on the built-in fallback.

        Raises:
            ConfigurationError: APP_SECRET_KEY is unset outside development.
        """
        secret = self.APP_SECRET_KEY.get_secret_value()
        if secret:
            return secret
        if not self.is_development:
            raise ConfigurationError(["APP_SECRET_KEY"])
        return "fieldintel-dev-session-secret"

    def pipeline_config(self) -> "PipelineConfig":
        """Build the explicit provider configuration handed to each stage."""
        return PipelineConfig(
            speech_provider_key=self.OPENAI_API_KEY.get_secret_value(),
            text_gen_provider_key=self.ANTHROPIC_API_KEY.get_secret_value(),
            crm_client_id=self.SALESFORCE_CLIENT_ID,
            crm_client_secret=self.SALESFORCE_CLIENT_SECRET.get_secret_value(),
            storage_endpoint=self.SUPABASE_URL,
            storage_service_key=self.SUPABASE_SERVICE_ROLE_KEY.get_secret_value(),
            storage_bucket=self.SUPABASE_STORAGE_BUCKET,
            transcription_model=self.TRANSCRIPTION_MODEL,
            analysis_model=self.ANALYSIS_MODEL,
            analysis_max_tokens=self.ANALYSIS_MAX_TOKENS,
            analysis_temperature=self.ANALYSIS_TEMPERATURE,
            strict_extraction=self.ANALYSIS_STRICT_EXTRACTION,
            auto_sync_threshold=self.AUTO_SYNC_CONFIDENCE_THRESHOLD,
            crm_login_url=self.SALESFORCE_LOGIN_URL,
            crm_redirect_uri=self.SALESFORCE_REDIRECT_URI,
            crm_api_version=self.SALESFORCE_API_VERSION,
            crm_scope=self.SALESFORCE_SCOPE,
        )


@dataclass(frozen=True)
class PipelineConfig:
    """Provider credentials and tuning injected into each stage.

    Stages never read the process environment themselves, so every stage
    can be constructed in tests with fake credentials.
    """

    speech_provider_key: str = ""
    text_gen_provider_key: str = ""
    crm_client_id: str = ""
    crm_client_secret: str = ""
    storage_endpoint: str = ""
    storage_service_key: str = ""
    storage_bucket: str = "audio-recordings"
    transcription_model: str = "whisper-1"
    analysis_model: str = "claude-sonnet-4-20250514"
    analysis_max_tokens: int = 4096
    analysis_temperature: float = 0.1
    strict_extraction: bool = False
    auto_sync_threshold: float = 0.8
    crm_login_url: str = "https://login.salesforce.com"
    crm_redirect_uri: str = ""
    crm_api_version: str = "v58.0"
    crm_scope: str = "api refresh_token offline_access"

    def require(self, *fields: str) -> None:
        """Fail fast when any of the named credentials is empty.

        Args:
            *fields: Attribute names that must be non-empty.

        Raises:
            ConfigurationError: Listing every missing field (names only).
        """
        missing = [name for name in fields if not getattr(self, name, "")]
        if missing:
            logger.error("Pipeline configuration incomplete", extra={"missing": missing})
            raise ConfigurationError(missing)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance loaded from the environment.
    """
    return Settings()


# Global settings instance - import this for easy access
settings = get_settings()
