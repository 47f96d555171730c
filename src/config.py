"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Moach configuration. All values come from environment variables."""

    # Database: Turso (hosted libSQL). When unset, database_path is used.
    turso_database_url: str = Field(default="")
    turso_auth_token: str = Field(default="")
    database_path: Path = Field(default=Path("data/moach.db"))
    require_database_url: bool = Field(default=True)

    # Anthropic (chat + titles)
    anthropic_api_key: str = Field(default="")
    default_chat_model: str = Field(default="sonnet")
    title_model: str = Field(default="haiku")
    max_output_tokens: int = Field(default=4096)
    thinking_budget_tokens: int = Field(default=0)

    # OpenAI (embeddings)
    openai_api_key: str = Field(default="")
    embedding_model: str = Field(default="text-embedding-3-small")
    embedding_dimensions: int = Field(default=1536)

    # Chat turn limits
    max_tool_rounds: int = Field(default=15)
    turn_timeout_seconds: float = Field(default=300.0)
    web_search_max_uses: int = Field(default=5)

    # Auth collaborator fallback when no X-User-Id header is present
    default_user_id: str = Field(default="test_user")

    # HTTP server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)

    # Logging
    log_level: str = Field(default="INFO")
    frontend_log_level: str = Field(default="DEBUG")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def database_configured(self) -> bool:
        """True when a usable database target is configured."""
        if self.turso_database_url.strip():
            return True
        return not self.require_database_url


settings = Settings()
