"""Configuration settings for the agent service."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pydantic settings class for the agent service."""

    # Loaded from environment variables or a .env file if not provided
    API_PORT: int = 3010
    DEBUG: bool = False
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    # Model backend configuration
    MODEL_BACKEND: str | None = None  # Options: openai, anthropic (auto-detected when unset)
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4.1-mini"
    OPENAI_BASE_URL: str | None = None
    ANTHROPIC_API_KEY: str | None = None
    ANTHROPIC_MODEL: str = "claude-3-5-haiku-latest"
    ANTHROPIC_MAX_TOKENS: int = 4096

    # Finance Data Service
    FINANCE_API_BASE_URL: str = "http://localhost:3000/api/data"
    FINANCE_API_TIMEOUT: float = 10.0

    # Orchestration
    MAX_TURNS: int = 5
    HISTORY_LIMIT: int = 20
    DEFAULT_TIMEZONE: str = "Asia/Taipei"
    DEFAULT_LOCALE: str = "zh-TW"
    INFER_UI_FROM_TEXT: bool = True

    class Config:
        """Configuration for Pydantic settings."""

        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
