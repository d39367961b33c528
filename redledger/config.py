"""
Application configuration using Pydantic Settings.
"""
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from redledger.models import ChatSettings, ProviderName


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    database_path: Path = Path("data/redledger.db")
    log_level: str = "INFO"

    # Visible-store update cadence and thinking indicator window
    stream_flush_interval_ms: int = 50
    thinking_idle_window_ms: int = 1500

    active_provider: ProviderName = "anthropic"
    default_model: str = "claude-sonnet-4-5"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4096, ge=1, le=128000)
    workspace_path: Optional[str] = None

    claude_code_oauth_token: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def chat_settings(self) -> ChatSettings:
        """Project the user-facing chat preferences."""
        return ChatSettings(
            active_provider=self.active_provider,
            default_model=self.default_model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            workspace_path=self.workspace_path,
        )


# Global settings instance
settings = Settings()
