"""Configuration settings for the application."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    API_PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical

    # Oracle configuration
    ORACLE: str = "openai"  # Options: openai, openrouter, anthropic, scripted
    OPENROUTER_API_KEY: str | None = None
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    MODEL: str = "mistralai/devstral-2512:free"
    ANTHROPIC_API_KEY: str | None = None
    ANTHROPIC_MODEL: str = "claude-3-5-haiku-latest"

    # Sampling parameters and limits
    TEMPERATURE: float = 0.2  # Low temperature keeps tool selection repeatable
    MAX_TOKENS: int = 1000
    ORACLE_TIMEOUT: float = 10.0  # Seconds per oracle call
    ORACLE_RETRIES: int = 1  # Attempts per oracle call; 1 disables retrying
    MAX_ROUNDS: int = 8  # Oracle round-trips per request
    SYSTEM_PROMPT: str | None = None  # Overrides the built-in weather assistant prompt

    class Config:
        """Configuration for Pydantic settings."""

        # Load environment variables from a .env file
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
