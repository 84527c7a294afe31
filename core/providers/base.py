# core/providers/base.py
"""Shared plumbing for provider adapters."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import structlog

from config import settings
from core.cancellation import CancelToken, RequestCancelled
from core.errors import (
    ClassifiedError,
    ErrorCategory,
    classify,
    extract_vendor_message,
)
from core.transport import HttpTransport, TransportResponse
from core.usage import TokenUsage
from models import AIRequest, AIResponse, Provider

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT = (
    "You are an experienced fiction editor and co-author. Follow the user's "
    "instructions precisely, keep the established tone and continuity of the "
    "story, and when a specific output format such as JSON is requested, reply "
    "in exactly that format."
)


class StreamAccumulator:
    """Collects streamed text and forwards each piece to the caller's sink."""

    def __init__(
        self,
        sink: Callable[[str], None] | None,
        cancel_token: CancelToken | None = None,
    ) -> None:
        self._sink = sink
        self._token = cancel_token
        self._parts: list[str] = []
        self.usage: TokenUsage | None = None

    @property
    def stopped(self) -> bool:
        return self._token is not None and self._token.cancelled

    def emit(self, text: str) -> None:
        if not text or self.stopped:
            return
        self._parts.append(text)
        if self._sink is not None:
            self._sink(text)

    @property
    def text(self) -> str:
        return "".join(self._parts)


class LineBuffer:
    """Splits arbitrary text chunks into complete lines."""

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, chunk: str) -> list[str]:
        self._pending += chunk
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        rest, self._pending = self._pending, ""
        return [rest.rstrip("\r")] if rest.strip() else []


class ProviderAdapter(ABC):
    """Translate canonical requests into one vendor's wire format and back."""

    provider: Provider

    def __init__(self, transport: HttpTransport) -> None:
        self.transport = transport

    def default_timeout(self) -> float:
        return settings.DEFAULT_TIMEOUT_SECONDS

    def timeout_for(self, request: AIRequest) -> float:
        return request.timeout_seconds or self.default_timeout()

    @abstractmethod
    def build_request(
        self, request: AIRequest, api_key: str
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return ``(url, headers, body)`` for ``request``."""

    @abstractmethod
    def parse_response(self, data: Any) -> AIResponse:
        """Convert a complete (non-streaming) JSON body into a response."""

    @abstractmethod
    def stream_decoder(self, acc: StreamAccumulator) -> StreamDecoder:
        """Return a decoder that turns raw stream chunks into text for ``acc``."""

    def raise_for_status(self, response: TransportResponse) -> None:
        if response.ok:
            return
        message = extract_vendor_message(response.body)
        raise classify(response.status, message)

    def _decode_json(self, body: str) -> Any:
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise ClassifiedError(
                ErrorCategory.UNKNOWN,
                f"{self.provider.value} returned a response that is not valid JSON: {body[:200]}",
                "INVALID_RESPONSE",
                cause=exc,
            ) from exc

    async def generate(self, request: AIRequest, api_key: str) -> AIResponse:
        url, headers, body = self.build_request(request, api_key)
        timeout = self.timeout_for(request)
        token = request.cancel_token

        if request.stream_sink is None:
            response = await self.transport.send(
                url, "POST", headers, body, timeout, token
            )
            self.raise_for_status(response)
            result = self.parse_response(self._decode_json(response.body))
            self.log_usage(request.settings.model, result.usage)
            return result

        acc = StreamAccumulator(request.stream_sink, token)
        decoder = self.stream_decoder(acc)
        try:
            response = await self.transport.send_stream(
                url, body, decoder.feed, headers, timeout, token
            )
        except RequestCancelled as exc:
            raise RequestCancelled(acc.text) from exc
        except ClassifiedError as exc:
            raise exc.with_partial(acc.text) from exc
        self.raise_for_status(response)
        decoder.close()
        self.log_usage(request.settings.model, acc.usage, streamed=True)
        return AIResponse(content=acc.text, usage=acc.usage)

    def log_usage(
        self, model_name: str, usage: TokenUsage | None, streamed: bool = False
    ) -> None:
        stream_prefix = "Streamed " if streamed else ""
        if usage:
            logger.info(
                f"{stream_prefix}LLM ('{self.provider.value}/{model_name}') Usage - "
                f"Prompt: {usage.prompt_tokens} tk, Comp: {usage.completion_tokens} tk, "
                f"Total: {usage.total_tokens} tk"
            )
        else:
            logger.debug(
                f"{stream_prefix}LLM ('{self.provider.value}/{model_name}') response missing usage information."
            )


class StreamDecoder:
    """Incrementally decodes one vendor's streaming format."""

    def __init__(self, acc: StreamAccumulator) -> None:
        self.acc = acc

    def feed(self, chunk: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Called once after the stream ended without error."""


class SSEDecoder(StreamDecoder):
    """Decodes Server-Sent-Events ``data:`` lines, stopping at ``[DONE]``."""

    def __init__(
        self,
        acc: StreamAccumulator,
        handle_event: Callable[[dict[str, Any], StreamAccumulator], None],
        label: str,
    ) -> None:
        super().__init__(acc)
        self._handle_event = handle_event
        self._label = label
        self._lines = LineBuffer()
        self.done = False

    def feed(self, chunk: str) -> None:
        self._process(self._lines.feed(chunk))

    def close(self) -> None:
        self._process(self._lines.flush())

    def _process(self, lines: list[str]) -> None:
        for line in lines:
            if self.done or self.acc.stopped:
                return
            if not line.startswith("data:"):
                continue
            payload = line[len("data:") :].strip()
            if not payload:
                continue
            if payload == "[DONE]":
                self.done = True
                return
            try:
                event = json.loads(payload)
            except json.JSONDecodeError:
                # incomplete or non-JSON keep-alive payloads are skipped
                logger.warning(
                    f"{self._label}: skipping undecodable SSE payload",
                    payload=payload[:200],
                )
                continue
            if isinstance(event, dict):
                self._handle_event(event, self.acc)


class SSEAdapter(ProviderAdapter):
    """Adapter whose streaming responses use Server-Sent-Events."""

    @abstractmethod
    def handle_stream_event(
        self, event: dict[str, Any], acc: StreamAccumulator
    ) -> None:
        """Apply one decoded SSE payload to the accumulator."""

    def stream_decoder(self, acc: StreamAccumulator) -> StreamDecoder:
        return SSEDecoder(acc, self.handle_stream_event, self.provider.value)
