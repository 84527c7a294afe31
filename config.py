# config.py
"""Configuration settings for the StoryForge AI orchestration layer.
Uses Pydantic BaseSettings for automatic environment variable loading.
"""

from __future__ import annotations

import structlog
from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

logger = structlog.get_logger()


class ForgeSettings(BaseSettings):
    """Full configuration for the AI request orchestration layer."""

    # Vendor endpoints
    OPENAI_API_URL: str = "https://api.openai.com/v1/chat/completions"
    CLAUDE_API_URL: str = "https://api.anthropic.com/v1/messages"
    ANTHROPIC_VERSION: str = "2023-06-01"
    GEMINI_API_BASE: str = "https://generativelanguage.googleapis.com/v1beta/models"
    GROK_API_URL: str = "https://api.x.ai/v1/chat/completions"

    # Local OpenAI-compatible server (LM Studio / Ollama)
    LOCAL_DEFAULT_ENDPOINT: str = "http://localhost:1234/v1/chat/completions"
    LOCAL_CHAT_COMPLETIONS_PATH: str = "/v1/chat/completions"
    LOCAL_MAX_PROMPT_CHARS: int = 3000
    LOCAL_MAX_TOKENS: int = 8192

    # Timeouts (seconds)
    DEFAULT_TIMEOUT_SECONDS: float = 60.0
    GEMINI_TIMEOUT_SECONDS: float | None = 120.0
    LOCAL_TIMEOUT_SECONDS: float | None = 120.0
    GENERATE_ALL_CHAPTERS_TIMEOUT_SECONDS: float = 600.0

    # Retry policies
    CLOUD_MAX_RETRIES: int = 3
    CLOUD_RETRY_BASE_DELAY_MS: int = 1000
    CLOUD_RETRY_MAX_DELAY_MS: int = 10000
    LOCAL_MAX_RETRIES: int = 2
    LOCAL_RETRY_BASE_DELAY_MS: int = 2000
    LOCAL_RETRY_MAX_DELAY_MS: int = 15000
    RETRY_BACKOFF_MULTIPLIER: float = 2.0

    # Transport
    # "desktop_bridge", "standard" or empty for auto-detection
    TRANSPORT_BACKEND: str | None = None
    DESKTOP_SHELL_ENV_VAR: str = "STORYFORGE_DESKTOP_SHELL"
    DESKTOP_BRIDGE_CONNECT_TIMEOUT_SECONDS: float = 10.0

    # Platform
    SUPPORTS_LOOPBACK_NETWORKING: bool = True

    # Prompt handling
    MAX_PROMPT_CHARS: int = 10000

    # Bounded stores
    MAX_HISTORY_SNAPSHOTS: int = 50
    MAX_IMPROVEMENT_LOGS: int = 20
    MAX_AI_LOGS: int = 100

    # Self-refine
    SELF_REFINE_MAX_DRAFT_CHARS: int = 4000
    CRITIQUE_SUMMARY_MAX_CHARS: int = 1500
    MIN_RECOVERED_TEXT_LENGTH: int = 100
    CRITIQUE_LOW_SCORE_THRESHOLD: int = 7

    # Default generation parameters
    DEFAULT_PROVIDER: str = "openai"
    DEFAULT_MODEL: str = "gpt-4o-mini"
    DEFAULT_TEMPERATURE: float = 0.7
    DEFAULT_MAX_TOKENS: int = 4000
    OPENAI_API_KEY: str = ""
    CLAUDE_API_KEY: str = ""
    GEMINI_API_KEY: str = ""
    GROK_API_KEY: str = ""

    # Logging & UI
    BASE_OUTPUT_DIR: str = "storyforge_output"
    LOG_LEVEL_STR: str = Field("INFO", alias="AGENT_LOG_LEVEL")
    LOG_FORMAT: str = (
        "%(asctime)s - %(levelname)s - [%(name)s:%(funcName)s:%(lineno)d] - %(message)s"
    )
    LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
    LOG_FILE: str | None = None
    ENABLE_RICH_PROGRESS: bool = True

    @model_validator(mode="after")
    def set_dynamic_timeout_defaults(self) -> ForgeSettings:
        if self.GEMINI_TIMEOUT_SECONDS is None:
            self.GEMINI_TIMEOUT_SECONDS = self.DEFAULT_TIMEOUT_SECONDS
        if self.LOCAL_TIMEOUT_SECONDS is None:
            self.LOCAL_TIMEOUT_SECONDS = self.DEFAULT_TIMEOUT_SECONDS
        if self.LOCAL_MAX_TOKENS <= 0:
            logger.warning(
                "LOCAL_MAX_TOKENS must be positive. Using 8192.",
                configured=self.LOCAL_MAX_TOKENS,
            )
            self.LOCAL_MAX_TOKENS = 8192
        return self

    model_config = SettingsConfigDict(env_prefix="", env_file=".env")


settings = ForgeSettings()
