# core/providers/grok.py
"""xAI Grok adapter. The API is OpenAI chat-completions compatible."""

from __future__ import annotations

from config import settings
from core.providers.openai import OpenAIAdapter
from models import AIRequest, Provider


class GrokAdapter(OpenAIAdapter):
    provider = Provider.GROK

    def endpoint(self, request: AIRequest) -> str:
        return settings.GROK_API_URL
