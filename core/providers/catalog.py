# core/providers/catalog.py
"""Static catalog of supported providers and their models."""

from __future__ import annotations

from dataclasses import dataclass

from config import settings
from models import Provider


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    max_tokens: int
    description: str = ""


@dataclass(frozen=True)
class ProviderInfo:
    id: Provider
    name: str
    requires_api_key: bool
    models: tuple[ModelInfo, ...]
    is_local: bool = False
    api_docs_url: str | None = None
    description: str = ""

    def model_ids(self) -> list[str]:
        return [m.id for m in self.models]


@dataclass(frozen=True)
class PlatformCapabilities:
    """What the host platform can do. Mobile sandboxes cannot reach loopback."""

    supports_loopback_networking: bool = True
    name: str = "desktop"


OPENAI = ProviderInfo(
    id=Provider.OPENAI,
    name="OpenAI",
    requires_api_key=True,
    api_docs_url="https://platform.openai.com/docs/api-reference/chat",
    description="GPT family models. Strong general drafting and reasoning.",
    models=(
        ModelInfo("gpt-5.2", "GPT-5.2", 250000, "Latest flagship reasoning model."),
        ModelInfo("gpt-5.2-mini", "GPT-5.2 Mini", 128000, "Fast, cost-efficient."),
        ModelInfo("gpt-4.5-preview", "GPT-4.5 Preview", 128000),
        ModelInfo("gpt-4o", "GPT-4o", 128000, "Multimodal text and vision."),
        ModelInfo("gpt-4o-mini", "GPT-4o Mini", 128000),
        ModelInfo("o3-mini", "o3-mini", 100000, "Reasoning model."),
    ),
)

CLAUDE = ProviderInfo(
    id=Provider.CLAUDE,
    name="Anthropic Claude",
    requires_api_key=True,
    api_docs_url="https://docs.anthropic.com/en/api/messages",
    description="Claude 4 / 4.5 family. Strong at long-form editing and consistency.",
    models=(
        ModelInfo("claude-opus-4-5-20251101", "Claude Opus 4.5", 64000),
        ModelInfo("claude-opus-4-20250514", "Claude Opus 4", 32000),
        ModelInfo("claude-sonnet-4-5-20250929", "Claude Sonnet 4.5", 64000),
        ModelInfo("claude-haiku-4-5-20251001", "Claude Haiku 4.5", 64000),
        ModelInfo("claude-3-5-haiku-20241022", "Claude 3.5 Haiku", 8192),
    ),
)

GEMINI = ProviderInfo(
    id=Provider.GEMINI,
    name="Google Gemini",
    requires_api_key=True,
    api_docs_url="https://ai.google.dev/api/generate-content",
    description="Gemini family. Long context and multimodal input.",
    models=(
        ModelInfo("gemini-3-pro-preview", "Gemini 3.0 Pro (Preview)", 65536),
        ModelInfo("gemini-3-flash-preview", "Gemini 3.0 Flash (Preview)", 65536),
        ModelInfo("gemini-2.5-pro", "Gemini 2.5 Pro", 65536),
        ModelInfo("gemini-2.5-flash", "Gemini 2.5 Flash", 65536),
        ModelInfo("gemini-2.5-flash-lite", "Gemini 2.5 Flash Lite", 65536),
    ),
)

GROK = ProviderInfo(
    id=Provider.GROK,
    name="xAI Grok",
    requires_api_key=True,
    api_docs_url="https://docs.x.ai/docs/models",
    description="Grok family via an OpenAI-compatible API.",
    models=(
        ModelInfo("grok-4-1-fast-reasoning", "Grok 4.1 Fast Reasoning", 30000),
        ModelInfo("grok-4-1-fast-non-reasoning", "Grok 4.1 Fast Non-Reasoning", 30000),
        ModelInfo("grok-4-0709", "Grok 4", 30000),
        ModelInfo("grok-3", "Grok 3", 16384),
        ModelInfo("grok-3-mini", "Grok 3 Mini", 16384),
    ),
)

LOCAL = ProviderInfo(
    id=Provider.LOCAL,
    name="Local LLM",
    requires_api_key=False,
    is_local=True,
    description="LM Studio / Ollama or any OpenAI-compatible server on your machine.",
    models=(ModelInfo("local-model", "Local model", 32768),),
)

PROVIDERS: dict[Provider, ProviderInfo] = {
    p.id: p for p in (OPENAI, CLAUDE, GEMINI, GROK, LOCAL)
}


def detect_platform() -> PlatformCapabilities:
    return PlatformCapabilities(
        supports_loopback_networking=settings.SUPPORTS_LOOPBACK_NETWORKING,
        name="desktop" if settings.SUPPORTS_LOOPBACK_NETWORKING else "mobile",
    )


def available_providers(
    platform: PlatformCapabilities | None = None,
) -> list[ProviderInfo]:
    """Providers usable on ``platform``; local servers need loopback access."""
    platform = platform or detect_platform()
    return [
        info
        for info in PROVIDERS.values()
        if platform.supports_loopback_networking or not info.is_local
    ]


def get_provider_info(provider: Provider | str) -> ProviderInfo:
    return PROVIDERS[Provider(provider)]
