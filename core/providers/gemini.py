# core/providers/gemini.py
"""Google Generative Language API adapter.

Streaming uses ``streamGenerateContent`` without ``alt=sse``, so the body is
one JSON array delivered in arbitrary fragments rather than SSE events. Text
is pulled out of the fragments as soon as each ``"text"`` string is complete.
"""

from __future__ import annotations

import json
import re
from typing import Any
from urllib.parse import quote

import structlog

from config import settings
from core.errors import ClassifiedError, ErrorCategory
from core.providers.base import (
    SYSTEM_PROMPT,
    ProviderAdapter,
    StreamAccumulator,
    StreamDecoder,
)
from core.usage import TokenUsage
from models import AIRequest, AIResponse, Provider, split_data_url

logger = structlog.get_logger(__name__)

_TEXT_FIELD_RE = re.compile(r'"text"\s*:\s*"((?:[^"\\]|\\.)*)"')
_BLOCKED_FINISH_REASONS = {
    "SAFETY",
    "RECITATION",
    "PROHIBITED_CONTENT",
    "BLOCKLIST",
    "SPII",
}


def _unescape_json_string(raw: str) -> str:
    try:
        return json.loads(f'"{raw}"')
    except json.JSONDecodeError:
        return raw.replace("\\n", "\n").replace('\\"', '"')


def safety_block_error(data: dict[str, Any]) -> ClassifiedError:
    """Build the error raised when Gemini returns no usable candidate."""
    feedback = data.get("promptFeedback") or {}
    details: list[str] = []
    if feedback.get("blockReason"):
        details.append(f"blockReason={feedback['blockReason']}")
    for rating in feedback.get("safetyRatings") or []:
        if rating.get("blocked") or rating.get("probability") in ("MEDIUM", "HIGH"):
            details.append(f"{rating.get('category')}={rating.get('probability')}")
    for candidate in data.get("candidates") or []:
        if candidate.get("finishReason"):
            details.append(f"finishReason={candidate['finishReason']}")
    suffix = f" ({', '.join(details)})" if details else ""
    return ClassifiedError(
        ErrorCategory.INVALID_REQUEST,
        "Gemini returned no content; the prompt or response was probably "
        f"blocked by the safety filter{suffix}. Rephrase the input and try again.",
        "SAFETY_BLOCKED",
    )


def candidate_text(data: dict[str, Any]) -> str:
    texts: list[str] = []
    for candidate in data.get("candidates") or []:
        parts = (candidate.get("content") or {}).get("parts") or []
        texts.extend(p.get("text", "") for p in parts if isinstance(p, dict))
        break
    return "".join(texts)


class GeminiStreamDecoder(StreamDecoder):
    def __init__(self, acc: StreamAccumulator) -> None:
        super().__init__(acc)
        self._buffer = ""
        self._scan_from = 0

    def feed(self, chunk: str) -> None:
        self._buffer += chunk
        for match in _TEXT_FIELD_RE.finditer(self._buffer, self._scan_from):
            self._scan_from = match.end()
            if self.acc.stopped:
                return
            self.acc.emit(_unescape_json_string(match.group(1)))

    def close(self) -> None:
        try:
            payload = json.loads(self._buffer)
        except json.JSONDecodeError:
            logger.debug("Gemini stream body is not a complete JSON document")
            payload = None
        frames = payload if isinstance(payload, list) else [payload] if payload else []
        for frame in reversed(frames):
            if isinstance(frame, dict) and frame.get("usageMetadata"):
                self.acc.usage = TokenUsage.from_gemini(frame["usageMetadata"])
                break
        if self.acc.text or self.acc.stopped or not frames:
            return
        merged: dict[str, Any] = {}
        for frame in frames:
            if isinstance(frame, dict):
                merged.update(frame)
        raise safety_block_error(merged)


class GeminiAdapter(ProviderAdapter):
    provider = Provider.GEMINI

    def default_timeout(self) -> float:
        return settings.GEMINI_TIMEOUT_SECONDS or settings.DEFAULT_TIMEOUT_SECONDS

    def build_request(
        self, request: AIRequest, api_key: str
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        parts: list[dict[str, Any]] = [{"text": request.prompt}]
        for data_url in (request.image, request.audio):
            if data_url:
                mime_type, data = split_data_url(data_url)
                parts.append({"inline_data": {"mime_type": mime_type, "data": data}})

        body: dict[str, Any] = {
            "contents": [{"parts": parts}],
            "systemInstruction": {"parts": [{"text": SYSTEM_PROMPT}]},
            "generationConfig": {
                "temperature": request.settings.temperature,
                "maxOutputTokens": request.settings.max_tokens,
            },
        }
        method = "streamGenerateContent" if request.streaming else "generateContent"
        url = (
            f"{settings.GEMINI_API_BASE}/{quote(request.settings.model, safe='.-_')}"
            f":{method}?key={quote(api_key, safe='')}"
        )
        headers = {"Content-Type": "application/json"}
        return url, headers, body

    def parse_response(self, data: Any) -> AIResponse:
        if not isinstance(data, dict):
            data = {}
        candidates = data.get("candidates") or []
        if not candidates:
            raise safety_block_error(data)
        content = candidate_text(data)
        if not content and candidates[0].get("finishReason") in _BLOCKED_FINISH_REASONS:
            raise safety_block_error(data)
        return AIResponse(
            content=content, usage=TokenUsage.from_gemini(data.get("usageMetadata"))
        )

    def stream_decoder(self, acc: StreamAccumulator) -> StreamDecoder:
        return GeminiStreamDecoder(acc)
