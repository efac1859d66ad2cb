"""
MiniChat Configuration.

Centralized configuration management using Pydantic Settings.
Loads configuration from environment variables.
"""

import os
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_PROMPT = (
    "You are MiniChat, a helpful, knowledgeable and courteous AI assistant. "
    "You answer clearly, structure longer answers with Markdown, admit when "
    "you are unsure, and never claim to be human. When the user has shared "
    "personal details, you remember them and use them accurately."
)


def get_xdg_state_dir() -> str:
    """
    Get XDG-compliant state directory for MiniChat logs.

    Follows XDG Base Directory Specification:
    - Uses $XDG_STATE_HOME/minichat if XDG_STATE_HOME is set
    - Falls back to $HOME/.local/state/minichat if not set
    - Returns relative path ./logs if HOME not available (dev/testing)

    Returns:
        str: Path to state/logs directory
    """
    xdg_state_home = os.getenv("XDG_STATE_HOME")
    if xdg_state_home:
        return str(Path(xdg_state_home) / "minichat" / "logs")

    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".local" / "state" / "minichat" / "logs")

    return "./logs"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite:///./minichat.db"
    db_echo: bool = False
    db_pool_size: int = 5
    db_pool_max_overflow: int = 5
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800

    # Tokenizer
    tokenizer_encoding: str = "cl100k_base"
    tokenizer_allow_unknown: bool = False  # Count as zero tokens if tiktoken fails

    # Context window
    context_window: int = 8192  # Model truncation length
    response_reserve: int = 1000  # Tokens kept free for the reply

    # Inference server (llama.cpp compatible /completion endpoint)
    llm_base_url: str = "http://localhost:8080"
    llm_timeout: float = 120.0
    llm_temperature: float = 0.3
    llm_top_p: float = 0.92
    llm_min_p: float = 0.05
    llm_top_k: int = 40
    llm_n_predict: int = 2048
    llm_repeat_penalty: float = 1.15
    llm_presence_penalty: float = 0.35
    llm_frequency_penalty: float = 0.35
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Conversations
    title_max_length: int = 40

    # Logging
    log_level: str = "INFO"
    log_dir: str = ""  # XDG-compliant log directory (defaults to XDG state dir if empty)
    log_format: str = "standard"  # standard or json
    log_console_enabled: bool = True
    log_file_enabled: bool = True
    log_max_bytes: int = 10_485_760  # 10MB per log file
    log_backup_count: int = 5

    @field_validator("log_format")
    @classmethod
    def _known_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("standard", "json"):
            raise ValueError(f"log_format must be 'standard' or 'json', got {value!r}")
        return value

    @field_validator("context_window", "response_reserve", "title_max_length")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be non-negative")
        return value

    @property
    def history_budget(self) -> int:
        """Tokens available for conversation history before facts are added."""
        return max(0, self.context_window - self.response_reserve)

    @property
    def log_directory(self) -> Path:
        """Get the log directory path, using XDG default if not specified."""
        if self.log_dir:
            return Path(self.log_dir).expanduser()
        return Path(get_xdg_state_dir())


# Global settings instance
settings = Settings()
