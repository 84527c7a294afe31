# models/ai_models.py
"""Canonical request/response models shared by every provider adapter."""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from core.usage import TokenUsage


class Provider(str, Enum):
    """Supported LLM vendors."""

    OPENAI = "openai"
    CLAUDE = "claude"
    GEMINI = "gemini"
    GROK = "grok"
    LOCAL = "local"


class RequestType(str, Enum):
    """Feature category that issued a request."""

    CHARACTER = "character"
    PLOT = "plot"
    SYNOPSIS = "synopsis"
    CHAPTER = "chapter"
    DRAFT = "draft"
    WORLD = "world"
    FORESHADOWING = "foreshadowing"
    EVALUATION = "evaluation"
    IMAGE_TO_STORY = "imageToStory"


class AISettings(BaseModel):
    """User configuration read by the orchestration layer.

    ``api_keys`` holds the encrypted-at-rest key for each provider.
    """

    model_config = ConfigDict(frozen=True)

    provider: Provider
    model: str
    api_keys: dict[Provider, str] = Field(default_factory=dict)
    local_endpoint: str | None = None
    temperature: float = 0.7
    max_tokens: int = 4000

    def encrypted_key_for(self, provider: Provider | None = None) -> str:
        return self.api_keys.get(provider or self.provider, "")


class AIRequest(BaseModel):
    """A single dispatch to an LLM. Built fresh for every call."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    prompt: str
    type: RequestType
    settings: AISettings
    image: str | None = None  # data URL (data:image/png;base64,...)
    audio: str | None = None  # data URL
    stream_sink: Callable[[str], None] | None = None
    cancel_token: Any = None  # core.cancellation.CancelToken
    timeout_seconds: float | None = None

    @property
    def streaming(self) -> bool:
        return self.stream_sink is not None


class AIResponse(BaseModel):
    """Uniform result of ``AIService.generate_content``.

    ``content`` and ``error`` may coexist when a stream failed after partial
    output was received.
    """

    content: str = ""
    usage: TokenUsage | None = None
    error: str | None = None
    error_category: str | None = None
    cancelled: bool = False
    parsed: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def split_data_url(data_url: str) -> tuple[str, str]:
    """Return ``(mime_type, base64_payload)`` for a data URL."""
    if data_url.startswith("data:") and "," in data_url:
        header, payload = data_url.split(",", 1)
        mime_type = header[len("data:") :].split(";", 1)[0] or "image/png"
        return mime_type, payload
    return "image/png", data_url
