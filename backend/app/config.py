"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    # General
    APP_NAME: str = "Workflow Execution Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, production, testing

    # Scheduler
    WORKFLOW_MAX_CONCURRENT: int = 10
    WORKFLOW_MAX_RETRIES: int = 3
    WORKFLOW_RETRY_DELAY_MS: int = 1000
    WORKFLOW_BACKOFF_MULTIPLIER: float = 2.0
    WORKFLOW_MAX_RETRY_DELAY_MS: int = 60000
    WORKFLOW_JOB_TIMEOUT_MS: int = 30000
    WORKFLOW_MAX_EVENT_DEPTH: int = 3  # Chained entity events (workflow -> query -> workflow)

    # Outbound HTTP (webhook steps)
    HTTP_TIMEOUT_MS: int = 30000
    HTTP_MAX_PAYLOAD_BYTES: int = 10 * 1024 * 1024  # 10MB
    HTTP_RETRIES: int = 3
    HTTP_RETRY_DELAY_MS: int = 1000
    HTTP_MAX_RETRY_DELAY_MS: int = 10000
    HTTP_BACKOFF_MULTIPLIER: float = 2.0
    HTTP_CIRCUIT_BREAKER_THRESHOLD: int = 5
    HTTP_CIRCUIT_BREAKER_RESET_MS: int = 60000
    HTTP_USER_AGENT: str = "Workflow-Engine/1.0"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get engine settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
