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

    # Webhook Security - without the app secret every POST is rejected and
    # /health/ready reports not_ready; verify token only for GET challenge
    WHATSAPP_APP_SECRET: Optional[str] = None
    WEBHOOK_VERIFY_TOKEN: Optional[str] = None

    # WhatsApp Cloud API (media download)
    WHATSAPP_ACCESS_TOKEN: Optional[str] = None
    WHATSAPP_API_VERSION: str = "v18.0"
    MEDIA_HTTP_TIMEOUT_SECONDS: float = 10.0

    # Durable media storage (S3 / MinIO / R2)
    MEDIA_BUCKET: str = "whatsapp-media"
    S3_ENDPOINT_URL: Optional[str] = None
    S3_ACCESS_KEY: Optional[str] = None
    S3_SECRET_KEY: Optional[str] = None
    S3_REGION: str = "us-east-1"
    MEDIA_PUBLIC_BASE_URL: Optional[str] = None

    @property
    def graph_api_base_url(self) -> str:
        return f"https://graph.facebook.com/{self.WHATSAPP_API_VERSION}"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
