# core/ai_service.py
"""Single entry point for every AI feature.

``AIService.generate_content`` selects the adapter for the configured
provider, sanitizes the prompt, drives the retry engine and normalizes the
outcome. It never raises: failures come back as ``AIResponse.error`` and a
cancelled call comes back with ``cancelled=True`` and no error.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

import structlog

import prompt_renderer
from config import settings
from core import retry
from core.cancellation import RequestCancelled
from core.errors import (
    ClassifiedError,
    invalid_request,
    missing_api_key,
    user_friendly_error,
)
from core.providers import build_adapters
from core.providers.base import ProviderAdapter
from core.retry import RetryObserver
from core.security import decrypt_api_key, mask_api_key, sanitize_input
from core.transport import HttpTransport, create_transport
from models import AILogEntry, AIRequest, AIResponse, Provider, RequestType
from parsing import RecoveryTier, recover_structured

logger = structlog.get_logger(__name__)

# The optional "reference synopsis" block: its header line, the line holding
# the placeholder, and the blank lines around them.
_SYNOPSIS_BLOCK_RE = re.compile(
    r"^[^\n]*(?:reference synopsis|参考あらすじ)[^\n]*\n(?:[ \t]*\n)*"
    r"[^\n]*\{synopsis\}[^\n]*(?:\n(?:[ \t]*\n)*)?",
    re.IGNORECASE | re.MULTILINE,
)
_SYNOPSIS_LINE_RE = re.compile(r"^[^\n]*\{synopsis\}[^\n]*\n?", re.MULTILINE)
_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


def build_prompt(
    category: str, name: str, variables: Mapping[str, Any] | None = None
) -> str:
    """Render a template with sanitized variables substituted for ``{name}``."""
    values = {
        key: sanitize_input("" if value is None else str(value))
        for key, value in (variables or {}).items()
    }
    template = prompt_renderer.render_template(category, name, values)

    if "synopsis" in values and not values["synopsis"].strip():
        template = _SYNOPSIS_BLOCK_RE.sub("", template)
        # a placeholder without a recognizable header still must not leak
        template = _SYNOPSIS_LINE_RE.sub("", template)

    # one pass, so placeholders inside substituted values stay literal
    return _PLACEHOLDER_RE.sub(
        lambda match: values.get(match.group(1), match.group(0)), template
    )


class AIService:
    """Provider-agnostic client used by all higher level features."""

    def __init__(
        self,
        transport: HttpTransport | None = None,
        adapters: Mapping[Provider, ProviderAdapter] | None = None,
        ai_log_store: Any = None,
    ) -> None:
        self.transport = transport or create_transport()
        self.adapters: dict[Provider, ProviderAdapter] = dict(
            adapters if adapters is not None else build_adapters(self.transport)
        )
        self.ai_log_store = ai_log_store
        logger.info(
            "AIService initialized",
            backend=self.transport.backend.value,
            providers=[p.value for p in self.adapters],
        )

    async def aclose(self) -> None:
        """Close the underlying transport."""
        await self.transport.aclose()

    def build_prompt(
        self, category: str, name: str, variables: Mapping[str, Any] | None = None
    ) -> str:
        return build_prompt(category, name, variables)

    def _adapter_for(self, provider: Provider) -> ProviderAdapter:
        try:
            return self.adapters[provider]
        except KeyError:
            raise invalid_request(
                f"Unsupported AI provider: {provider}", "UNSUPPORTED_PROVIDER"
            ) from None

    def _resolve_api_key(self, request: AIRequest) -> str:
        provider = request.settings.provider
        encrypted = request.settings.encrypted_key_for(provider)
        if provider is Provider.LOCAL:
            return decrypt_api_key(encrypted) if encrypted else ""
        if not encrypted:
            raise missing_api_key(provider.value)
        api_key = decrypt_api_key(encrypted)
        if not api_key:
            raise missing_api_key(provider.value)
        logger.debug(
            "Resolved API key", provider=provider.value, key=mask_api_key(api_key)
        )
        return api_key

    def _policy_for(self, request: AIRequest) -> retry.RetryPolicy:
        policy = (
            retry.local_policy()
            if request.settings.provider is Provider.LOCAL
            else retry.cloud_policy()
        )
        # partial stream content belongs to the caller, so never replay a stream
        if request.streaming:
            policy = policy.without_retries()
        return policy

    def _attach_parsed(self, request: AIRequest, response: AIResponse) -> None:
        """Best-effort structured parse for non-draft requests."""
        if request.type is RequestType.DRAFT or not response.content:
            return
        recovered = recover_structured(
            response.content, label=f"AI {request.type.value}"
        )
        if recovered.tier is RecoveryTier.JSON:
            response.parsed = recovered.data
        else:
            logger.debug(
                "Structured parse fell back; returning raw content",
                type=request.type.value,
                tier=recovered.tier.value,
            )

    async def _record(self, request: AIRequest, response: AIResponse) -> None:
        if self.ai_log_store is None:
            return
        entry = AILogEntry(
            type=request.type.value,
            prompt=request.prompt,
            response=response.content,
            error=response.error,
            provider=request.settings.provider.value,
            model=request.settings.model,
            cancelled=response.cancelled,
        )
        try:
            await self.ai_log_store.add(entry)
        except Exception as exc:  # audit logging must not fail the call
            logger.error("Failed to record AI log entry", error=str(exc), exc_info=True)

    async def generate_content(
        self, request: AIRequest, on_retry: RetryObserver | None = None
    ) -> AIResponse:
        """Run ``request`` and return a uniform response. Never raises."""
        response = await self._generate(request, on_retry)
        await self._record(request, response)
        return response

    async def _generate(
        self, request: AIRequest, on_retry: RetryObserver | None
    ) -> AIResponse:
        token = request.cancel_token
        provider = request.settings.provider
        try:
            prompt = sanitize_input(request.prompt)
            if not prompt.strip():
                raise invalid_request("Prompt is empty")
            api_key = self._resolve_api_key(request)
            adapter = self._adapter_for(provider)
            dispatched = request.model_copy(update={"prompt": prompt})

            logger.info(
                f"Dispatching {request.type.value} request to {provider.value}",
                model=request.settings.model,
                streaming=request.streaming,
                prompt_length=len(prompt),
            )
            response = await retry.execute(
                lambda: adapter.generate(dispatched, api_key),
                self._policy_for(request),
                token,
                on_retry,
                label=f"{provider.value}/{request.settings.model}",
            )
        except RequestCancelled as exc:
            logger.info(
                "AI request cancelled",
                provider=provider.value,
                partial_length=len(exc.partial_content),
            )
            return AIResponse(content=exc.partial_content, cancelled=True)
        except ClassifiedError as exc:
            logger.error(
                f"AI request failed: {exc.message}",
                provider=provider.value,
                category=exc.category.value,
                code=exc.code,
            )
            return AIResponse(
                content=exc.partial_content,
                error=exc.user_message(),
                error_category=exc.category.value,
            )
        except Exception as exc:
            logger.error(
                "Unexpected error during AI request",
                provider=provider.value,
                error=str(exc),
                exc_info=True,
            )
            return AIResponse(error=user_friendly_error(exc), error_category="unknown")

        if token is not None and token.cancelled:
            # cancelled after the last chunk arrived; still a silent outcome
            response.cancelled = True
            return response

        self._attach_parsed(request, response)
        return response


ai_service: AIService | None = None


def get_ai_service() -> AIService:
    """Process-wide service built on first use with the detected transport."""
    global ai_service
    if ai_service is None:
        ai_service = AIService()
    return ai_service


def long_running_timeout() -> float:
    """Timeout for "generate all chapters" style requests."""
    return settings.GENERATE_ALL_CHAPTERS_TIMEOUT_SECONDS
