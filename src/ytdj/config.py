"""Configuration settings for ytdj."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # OpenRouter (OpenAI-compatible API for multi-model support)
    # Optional so offline commands (show/lock) run without a key.
    openrouter_api_key: str | None = Field(default=None, alias="OPENROUTER_API_KEY")
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        alias="OPENROUTER_BASE_URL",
    )

    # Model per provider name; the tier decides which names are allowed.
    openai_model: str = Field(default="openai/gpt-4o-mini", alias="YTDJ_OPENAI_MODEL")
    claude_model: str = Field(
        default="anthropic/claude-sonnet-4",
        alias="YTDJ_CLAUDE_MODEL",
    )
    gemini_model: str = Field(default="google/gemini-2.0-flash-001", alias="YTDJ_GEMINI_MODEL")

    provider_timeout_s: float = Field(default=45.0, alias="YTDJ_PROVIDER_TIMEOUT_S")
    provider_temperature: float = Field(default=0.9, alias="YTDJ_PROVIDER_TEMPERATURE")

    # Generation defaults
    default_track_count: int = Field(default=15, alias="YTDJ_DEFAULT_TRACK_COUNT")
    average_track_seconds: float = Field(default=240.0, alias="YTDJ_AVERAGE_TRACK_SECONDS")

    # Local ledger seed for the CLI
    tier: str = Field(default="free", alias="YTDJ_TIER")
    credits: int | None = Field(default=None, alias="YTDJ_CREDITS")
    identity: str = Field(default="local", alias="YTDJ_IDENTITY")

    log_level: str = Field(default="INFO", alias="YTDJ_LOG_LEVEL")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    def model_for(self, provider: str) -> str:
        models = {
            "openai": self.openai_model,
            "claude": self.claude_model,
            "gemini": self.gemini_model,
        }
        if provider not in models:
            available = ", ".join(models)
            raise ValueError(f"Unknown provider '{provider}'. Available: {available}")
        return models[provider]


@lru_cache
def get_settings() -> Settings:
    """Get settings instance (lazy-loaded, cached)."""
    return Settings()
