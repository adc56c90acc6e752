from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_PROMPT = (
    "You are Epic Tech AI, a fun, helpful, and slightly savage tech-savvy "
    "assistant. Use emojis 🔥, keep replies engaging and concise."
)


class Settings(BaseSettings):
    """Runtime configuration for the relay service."""

    LLM_API_KEY: str = Field(
        default="", validation_alias=AliasChoices("LLM_API_KEY", "GROK_API_KEY")
    )
    LLM_MODEL_URL: str = "https://api.x.ai/v1/"
    LLM_MODEL_NAME: str = "grok-beta"
    LLM_TEMPERATURE: float = Field(default=0.8, ge=0.0, le=1.0)
    LLM_MAX_TOKENS: int = Field(default=500, gt=0)
    LLM_TIMEOUT: float | None = 60.0

    SYSTEM_PROMPT: str = DEFAULT_SYSTEM_PROMPT
    MAX_HISTORY_TURNS: int = Field(default=10, gt=0)

    HOST: str = "0.0.0.0"
    PORT: int = 3000
    CORS_ORIGINS: list[str] = ["*"]
    STATIC_DIR: str = "public"

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


def get_settings() -> Settings:
    """Load configuration values from the environment."""
    return Settings()


settings = get_settings()
