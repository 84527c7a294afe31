# core/providers/openai.py
"""OpenAI chat-completions adapter (also the base for other compatible APIs)."""

from __future__ import annotations

import re
from typing import Any

import structlog

from config import settings
from core.providers.base import SYSTEM_PROMPT, SSEAdapter, StreamAccumulator
from core.usage import TokenUsage
from models import AIRequest, AIResponse, Provider, split_data_url

logger = structlog.get_logger(__name__)

# Reasoning model families reject ``max_tokens`` and non-default temperatures.
_REASONING_MODEL_RE = re.compile(r"^(o\d|gpt-5)", re.IGNORECASE)


def _completion_token_param(model: str) -> str:
    """Return the token count parameter expected for ``model``."""
    if _REASONING_MODEL_RE.match(model or ""):
        return "max_completion_tokens"
    return "max_tokens"


def _audio_format(mime_type: str) -> str:
    subtype = mime_type.split("/", 1)[-1].lower()
    return "mp3" if subtype in ("mpeg", "mp3") else "wav"


def build_chat_messages(request: AIRequest, prompt: str) -> list[dict[str, Any]]:
    """Build the system and user messages of a chat-completions request."""
    user_content: str | list[dict[str, Any]]
    if request.image or request.audio:
        parts: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
        if request.image:
            parts.append({"type": "image_url", "image_url": {"url": request.image}})
        if request.audio:
            mime_type, data = split_data_url(request.audio)
            parts.append(
                {
                    "type": "input_audio",
                    "input_audio": {"data": data, "format": _audio_format(mime_type)},
                }
            )
        user_content = parts
    else:
        user_content = prompt
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user_content},
    ]


def first_choice_content(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    choices = data.get("choices")
    if choices and isinstance(choices, list):
        message = choices[0].get("message") or {}
        return message.get("content") or ""
    return ""


class OpenAIAdapter(SSEAdapter):
    provider = Provider.OPENAI

    def endpoint(self, request: AIRequest) -> str:
        return settings.OPENAI_API_URL

    def build_request(
        self, request: AIRequest, api_key: str
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        model = request.settings.model
        body: dict[str, Any] = {
            "model": model,
            "messages": build_chat_messages(request, request.prompt),
            "stream": request.streaming,
        }
        token_param = _completion_token_param(model)
        body[token_param] = request.settings.max_tokens
        if token_param == "max_tokens":
            body["temperature"] = request.settings.temperature
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }
        return self.endpoint(request), headers, body

    def parse_response(self, data: Any) -> AIResponse:
        content = first_choice_content(data)
        if not content:
            logger.error(
                f"{self.provider.value}: invalid response structure - missing choices/content despite 200 OK",
                data=str(data)[:300],
            )
        usage = TokenUsage.from_openai(
            data.get("usage") if isinstance(data, dict) else None
        )
        return AIResponse(content=content, usage=usage)

    def handle_stream_event(
        self, event: dict[str, Any], acc: StreamAccumulator
    ) -> None:
        choices = event.get("choices") or []
        if choices:
            delta = choices[0].get("delta") or {}
            acc.emit(delta.get("content") or "")
        if event.get("usage"):
            acc.usage = TokenUsage.from_openai(event["usage"])
