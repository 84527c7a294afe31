# core/usage.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class TokenUsage:
    """LLM token usage metrics."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_openai(cls, usage: dict[str, Any] | None) -> TokenUsage | None:
        """Map an OpenAI-compatible ``usage`` object."""
        if not usage or not isinstance(usage, dict):
            return None
        prompt = int(usage.get("prompt_tokens") or 0)
        completion = int(usage.get("completion_tokens") or 0)
        total = int(usage.get("total_tokens") or prompt + completion)
        return cls(prompt, completion, total)

    @classmethod
    def from_anthropic(cls, usage: dict[str, Any] | None) -> TokenUsage | None:
        if not usage or not isinstance(usage, dict):
            return None
        prompt = int(usage.get("input_tokens") or 0)
        completion = int(usage.get("output_tokens") or 0)
        return cls(prompt, completion, prompt + completion)

    @classmethod
    def from_gemini(cls, metadata: dict[str, Any] | None) -> TokenUsage | None:
        if not metadata or not isinstance(metadata, dict):
            return None
        prompt = int(metadata.get("promptTokenCount") or 0)
        completion = int(metadata.get("candidatesTokenCount") or 0)
        total = int(metadata.get("totalTokenCount") or prompt + completion)
        return cls(prompt, completion, total)

    def add(self, usage: TokenUsage | dict[str, int] | None) -> None:
        """Accumulate usage values from another instance or dictionary."""
        if not usage:
            return
        if isinstance(usage, TokenUsage):
            self.prompt_tokens += usage.prompt_tokens
            self.completion_tokens += usage.completion_tokens
            self.total_tokens += usage.total_tokens
        else:
            self.prompt_tokens += usage.get("prompt_tokens", 0)
            self.completion_tokens += usage.get("completion_tokens", 0)
            self.total_tokens += usage.get("total_tokens", 0)
