# core/providers/claude.py
"""Anthropic messages API adapter."""

from __future__ import annotations

from typing import Any

import structlog

from config import settings
from core.errors import ClassifiedError, ErrorCategory
from core.providers.base import SYSTEM_PROMPT, SSEAdapter, StreamAccumulator
from core.usage import TokenUsage
from models import AIRequest, AIResponse, Provider, split_data_url

logger = structlog.get_logger(__name__)


class ClaudeAdapter(SSEAdapter):
    provider = Provider.CLAUDE

    def build_request(
        self, request: AIRequest, api_key: str
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        content: str | list[dict[str, Any]]
        if request.image:
            media_type, data = split_data_url(request.image)
            content = [
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": media_type, "data": data},
                },
                {"type": "text", "text": request.prompt},
            ]
        else:
            content = request.prompt
        if request.audio:
            logger.warning("Claude does not accept audio input; audio was dropped.")

        body: dict[str, Any] = {
            "model": request.settings.model,
            "max_tokens": request.settings.max_tokens,
            "temperature": request.settings.temperature,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": content}],
            "stream": request.streaming,
        }
        headers = {
            "Content-Type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": settings.ANTHROPIC_VERSION,
        }
        return settings.CLAUDE_API_URL, headers, body

    def parse_response(self, data: Any) -> AIResponse:
        if not isinstance(data, dict):
            data = {}
        blocks = data.get("content") or []
        content = "".join(
            block.get("text", "")
            for block in blocks
            if isinstance(block, dict) and block.get("type", "text") == "text"
        )
        if not content:
            logger.error(
                "Claude: response contained no text blocks",
                stop_reason=data.get("stop_reason"),
            )
        return AIResponse(
            content=content, usage=TokenUsage.from_anthropic(data.get("usage"))
        )

    def handle_stream_event(
        self, event: dict[str, Any], acc: StreamAccumulator
    ) -> None:
        event_type = event.get("type")
        if event_type == "content_block_delta":
            delta = event.get("delta") or {}
            acc.emit(delta.get("text") or "")
        elif event_type == "message_start":
            usage = (event.get("message") or {}).get("usage")
            acc.usage = TokenUsage.from_anthropic(usage)
        elif event_type == "message_delta" and event.get("usage"):
            output_tokens = int(event["usage"].get("output_tokens") or 0)
            if acc.usage is None:
                acc.usage = TokenUsage()
            acc.usage.completion_tokens = output_tokens
            acc.usage.total_tokens = acc.usage.prompt_tokens + output_tokens
        elif event_type == "error":
            error = event.get("error") or {}
            raise ClassifiedError(
                ErrorCategory.SERVER_ERROR,
                error.get("message") or "Claude stream reported an error",
                f"STREAM_{(error.get('type') or 'error').upper()}",
            )
