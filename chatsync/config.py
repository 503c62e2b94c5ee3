from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required
    DATABASE_URL: str

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Identity tokens (HS256 JWTs issued by the auth service) - required
    AUTH_JWT_SECRET: str
    AUTH_JWT_AUDIENCE: str = "authenticated"

    # Messaging provider
    PROVIDER_BASE_URL: str = "https://api.green-api.com"
    PROVIDER_TIMEOUT_SECONDS: float = 15.0

    # Legacy shared credential pair, used when a subject has none of its own
    DEFAULT_PROVIDER_INSTANCE_ID: Optional[str] = None
    DEFAULT_PROVIDER_TOKEN: Optional[str] = None

    # Sync run tunables
    SYNC_BUDGET_SECONDS: float = 40.0
    SYNC_MAX_CONVERSATIONS: int = 5
    SYNC_MAX_CONVERSATIONS_CEILING: int = 20
    SYNC_HISTORY_COUNT: int = 50
    SYNC_MAX_MEDIA_RESOLUTIONS: int = 5
    SYNC_CONVERSATION_DELAY_SECONDS: float = 1.0
    SYNC_SUBJECT_SENDER_LABEL: str = "Me"

    # Outbound retry policy
    RETRY_MAX_RETRIES: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 3.0
    RETRY_MAX_DELAY_SECONDS: float = 15.0
    RETRY_NETWORK_DELAY_SECONDS: float = 2.0

    def default_credentials(self):
        """Return the legacy fallback pair, or None unless both halves are set."""
        from chatsync.credentials import ProviderCredentials

        if self.DEFAULT_PROVIDER_INSTANCE_ID and self.DEFAULT_PROVIDER_TOKEN:
            return ProviderCredentials(
                instance_id=self.DEFAULT_PROVIDER_INSTANCE_ID,
                token=self.DEFAULT_PROVIDER_TOKEN,
            )
        return None


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
