"""
Chiron Configuration.

Centralized configuration management using Pydantic Settings.
Loads configuration from environment variables.
"""

import os
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_xdg_data_dir() -> str:
    """
    Get XDG-compliant data directory for Chiron sessions.

    Follows XDG Base Directory Specification:
    - Uses $XDG_DATA_HOME/chiron/sessions if XDG_DATA_HOME is set
    - Falls back to $HOME/.local/share/chiron/sessions if not set
    - Returns relative path .chiron/sessions if HOME not available (dev/testing)

    Returns:
        str: Path to session storage directory
    """
    xdg_data_home = os.getenv("XDG_DATA_HOME")
    if xdg_data_home:
        return str(Path(xdg_data_home) / "chiron" / "sessions")

    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".local" / "share" / "chiron" / "sessions")

    return ".chiron/sessions"


def get_xdg_state_dir() -> str:
    """
    Get XDG-compliant state directory for Chiron logs.

    Returns:
        str: Path to state/logs directory
    """
    xdg_state_home = os.getenv("XDG_STATE_HOME")
    if xdg_state_home:
        return str(Path(xdg_state_home) / "chiron" / "logs")

    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".local" / "state" / "chiron" / "logs")

    return "./logs"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Session storage
    sessions_dir: str = ""  # Empty = XDG data dir
    autosave_every_messages: int = 4  # Autosave cadence (messages appended)

    # Ollama
    ollama_host: str = "http://localhost:11434"
    ollama_model: str = "gemma3n:e4b"
    ollama_timeout: float = 120.0
    ollama_max_retries: int = 2

    # Conversation
    context_window_messages: int = 10  # Recent messages included in the prompt

    # Crisis detection
    crisis_extra_keywords: str = ""  # Additional severity phrases, comma-separated

    # Research agent (off by default)
    research_enabled: bool = False
    research_allowed_domains: str = "en.wikipedia.org,www.psychologytoday.com,psychologytoday.com"
    research_wikipedia_api: str = "https://en.wikipedia.org/w/api.php"
    research_timeout: float = 15.0

    # Metadata aggregation policy
    phase_assessment_after_turns: int = 2
    phase_intervention_after_turns: int = 4
    phase_monitoring_after_turns: int = 8
    phase_closure_after_turns: int = 14
    phase_monitoring_min_techniques: int = 2
    aggregator_smoothing_alpha: float = 0.3
    engagement_word_target: int = 40

    # Logging
    log_level: str = "INFO"
    log_dir: str = ""  # XDG-compliant log directory (defaults to XDG state dir if empty)
    log_format: str = "standard"  # standard or json
    log_console_enabled: bool = True
    log_file_enabled: bool = True
    log_max_bytes: int = 10_485_760  # 10MB per log file
    log_backup_count: int = 5

    @field_validator("aggregator_smoothing_alpha")
    @classmethod
    def _check_alpha(cls, value: float) -> float:
        if not 0.0 < value <= 1.0:
            raise ValueError("aggregator_smoothing_alpha must be in (0, 1]")
        return value

    @property
    def crisis_keywords(self) -> list[str]:
        """Extra crisis phrases parsed from the comma-separated setting."""
        return [part.strip() for part in self.crisis_extra_keywords.split(",") if part.strip()]

    @property
    def research_domains(self) -> list[str]:
        """Whitelisted research domains parsed from the comma-separated setting."""
        return [part.strip() for part in self.research_allowed_domains.split(",") if part.strip()]

    @property
    def sessions_directory(self) -> Path:
        """Get the session storage path, using XDG default if not specified."""
        if self.sessions_dir:
            return Path(self.sessions_dir).expanduser()
        return Path(get_xdg_data_dir())

    @property
    def log_directory(self) -> Path:
        """Get the log directory path, using XDG default if not specified."""
        if self.log_dir:
            return Path(self.log_dir).expanduser()
        return Path(get_xdg_state_dir())


# Global settings instance
settings = Settings()
