# core/providers/local.py
"""Adapter for a local OpenAI-compatible server (LM Studio, Ollama, ...)."""

from __future__ import annotations

from typing import Any

import structlog

from config import settings
from core.errors import ClassifiedError, ErrorCategory
from core.providers.base import SSEAdapter, StreamAccumulator
from core.providers.openai import build_chat_messages, first_choice_content
from core.security import validate_local_endpoint
from core.usage import TokenUsage
from models import AIRequest, AIResponse, Provider

logger = structlog.get_logger(__name__)

TRUNCATION_MARKER = "\n\n[The prompt was too long and has been truncated.]"


def truncate_prompt(prompt: str, limit: int | None = None) -> str:
    limit = settings.LOCAL_MAX_PROMPT_CHARS if limit is None else limit
    if len(prompt) <= limit:
        return prompt
    logger.info(
        "Local LLM prompt truncated", original_length=len(prompt), limit=limit
    )
    return prompt[:limit] + TRUNCATION_MARKER


class LocalAdapter(SSEAdapter):
    provider = Provider.LOCAL

    def default_timeout(self) -> float:
        return settings.LOCAL_TIMEOUT_SECONDS or settings.DEFAULT_TIMEOUT_SECONDS

    def build_request(
        self, request: AIRequest, api_key: str
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        # Raises invalid_request before any network activity.
        url = validate_local_endpoint(request.settings.local_endpoint)
        prompt = truncate_prompt(request.prompt)
        body: dict[str, Any] = {
            "model": request.settings.model or "local-model",
            "messages": build_chat_messages(request, prompt),
            "temperature": request.settings.temperature,
            "max_tokens": min(request.settings.max_tokens, settings.LOCAL_MAX_TOKENS),
            "stream": request.streaming,
        }
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return url, headers, body

    async def generate(self, request: AIRequest, api_key: str) -> AIResponse:
        try:
            return await super().generate(request, api_key)
        except ClassifiedError as exc:
            if exc.category is not ErrorCategory.NETWORK:
                raise
            endpoint = (
                request.settings.local_endpoint or settings.LOCAL_DEFAULT_ENDPOINT
            )
            raise ClassifiedError(
                ErrorCategory.NETWORK,
                "Cannot connect to the local LLM server. Check that it is running. "
                f"Endpoint: {endpoint}",
                exc.code,
                cause=exc.cause,
                partial_content=exc.partial_content,
            ) from exc

    def parse_response(self, data: Any) -> AIResponse:
        if not isinstance(data, dict):
            data = {}
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ClassifiedError(
                ErrorCategory.UNKNOWN,
                f"Local LLM server reported an error: {message}",
                "LOCAL_SERVER_ERROR",
            )
        content = (
            first_choice_content(data)
            or data.get("content")
            or data.get("response")
            or ""
        )
        if not content:
            logger.error(
                "Local LLM: unrecognized response format", keys=sorted(data.keys())
            )
        return AIResponse(
            content=content, usage=TokenUsage.from_openai(data.get("usage"))
        )

    def handle_stream_event(
        self, event: dict[str, Any], acc: StreamAccumulator
    ) -> None:
        choices = event.get("choices") or []
        if choices:
            delta = choices[0].get("delta") or {}
            acc.emit(delta.get("content") or "")
        elif isinstance(event.get("response"), str):
            acc.emit(event["response"])
        if event.get("usage"):
            acc.usage = TokenUsage.from_openai(event["usage"])
