from typing import List, Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Extract configuration loaded from environment variables."""

    # Autodesk Platform Services credentials (client credentials grant)
    APS_CLIENT_ID: str = ""
    APS_CLIENT_SECRET: str = ""
    APS_SCOPES: List[str] = ["data:read"]
    APS_BASE_URL: str = "https://developer.api.autodesk.com"

    # Application Configuration
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Data Extract input and enriched output locations
    INPUT_DIR: str = "."
    OUTPUT_DIR: str = "."

    # Batching
    CHUNK_SIZE: int = 50  # Max urns per ListItems / versions:batch-get request

    # Rate Limiting
    MAX_RATE_LIMIT_RETRIES: Optional[int] = None  # None = honour retry-after forever

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True
    )

    @field_validator("CHUNK_SIZE")
    @classmethod
    def validate_chunk_size(cls, v):
        if v < 1:
            raise ValueError("CHUNK_SIZE must be at least 1")
        return v

    @field_validator("MAX_RATE_LIMIT_RETRIES")
    @classmethod
    def validate_max_retries(cls, v):
        if v is not None and v < 0:
            raise ValueError("MAX_RATE_LIMIT_RETRIES cannot be negative")
        return v

    @property
    def token_url(self) -> str:
        """APS two-legged OAuth token URL."""
        return f"{self.APS_BASE_URL.rstrip('/')}/authentication/v2/token"

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.ENVIRONMENT.lower() == "production"


# Global settings instance
settings = Settings()
