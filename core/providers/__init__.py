"""Provider adapters keyed by the ``Provider`` enum."""

from __future__ import annotations

from core.providers.base import ProviderAdapter
from core.providers.claude import ClaudeAdapter
from core.providers.gemini import GeminiAdapter
from core.providers.grok import GrokAdapter
from core.providers.local import LocalAdapter
from core.providers.openai import OpenAIAdapter
from core.transport import HttpTransport
from models import Provider

ADAPTER_CLASSES: dict[Provider, type[ProviderAdapter]] = {
    Provider.OPENAI: OpenAIAdapter,
    Provider.CLAUDE: ClaudeAdapter,
    Provider.GEMINI: GeminiAdapter,
    Provider.GROK: GrokAdapter,
    Provider.LOCAL: LocalAdapter,
}

_missing = set(Provider) - set(ADAPTER_CLASSES)
if _missing:  # pragma: no cover
    raise RuntimeError(
        f"No adapter registered for: {sorted(p.value for p in _missing)}"
    )


def build_adapters(transport: HttpTransport) -> dict[Provider, ProviderAdapter]:
    return {provider: cls(transport) for provider, cls in ADAPTER_CLASSES.items()}


__all__ = ["ADAPTER_CLASSES", "ProviderAdapter", "build_adapters"]
