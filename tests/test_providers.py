# tests/test_providers.py
import json

import httpx
import pytest

from config import settings
from core.errors import QUOTA_RATE_LIMIT_SOLUTION, ClassifiedError, ErrorCategory
from core.providers import ADAPTER_CLASSES, build_adapters
from core.providers.base import StreamAccumulator
from core.providers.claude import ClaudeAdapter
from core.providers.gemini import GeminiAdapter, GeminiStreamDecoder
from core.providers.grok import GrokAdapter
from core.providers.local import TRUNCATION_MARKER, LocalAdapter
from core.providers.openai import OpenAIAdapter
from core.transport import HttpTransport
from models import AIRequest, AISettings, Provider, RequestType


def make_transport(handler) -> HttpTransport:
    return HttpTransport(
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )


def _request(provider: Provider, model: str, prompt: str = "Write", **kwargs):
    settings_kwargs = {
        k: kwargs.pop(k) for k in ("local_endpoint", "max_tokens") if k in kwargs
    }
    return AIRequest(
        prompt=prompt,
        type=kwargs.pop("type", RequestType.DRAFT),
        settings=AISettings(provider=provider, model=model, **settings_kwargs),
        **kwargs,
    )


def _sse(*events) -> str:
    lines = [f"data: {json.dumps(e)}\n\n" for e in events]
    return "".join(lines) + "data: [DONE]\n\n"


def _unused(request):  # pragma: no cover - must not be reached
    raise AssertionError(f"unexpected request to {request.url}")


def test_every_provider_has_an_adapter():
    assert set(ADAPTER_CLASSES) == set(Provider)
    adapters = build_adapters(make_transport(_unused))
    assert {a.provider for a in adapters.values()} == set(Provider)


@pytest.mark.asyncio
async def test_openai_non_streaming_round_trip():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"content": "A quiet harbour."}}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 4},
            },
        )

    adapter = OpenAIAdapter(make_transport(handler))
    response = await adapter.generate(
        _request(Provider.OPENAI, "gpt-4o-mini"), "sk-test"
    )

    assert response.content == "A quiet harbour."
    assert response.usage.total_tokens == 16
    assert seen["url"] == settings.OPENAI_API_URL
    assert seen["auth"] == "Bearer sk-test"
    body = seen["body"]
    assert body["stream"] is False
    assert body["max_tokens"] == 4000
    assert body["temperature"] == 0.7
    assert body["messages"][0]["role"] == "system"
    assert body["messages"][1] == {"role": "user", "content": "Write"}


@pytest.mark.parametrize("model", ["o3-mini", "gpt-5.2", "O1"])
def test_reasoning_models_use_max_completion_tokens(model):
    adapter = OpenAIAdapter(make_transport(_unused))
    _, _, body = adapter.build_request(_request(Provider.OPENAI, model), "k")
    assert body["max_completion_tokens"] == 4000
    assert "max_tokens" not in body
    assert "temperature" not in body


def test_openai_image_becomes_content_part():
    adapter = OpenAIAdapter(make_transport(_unused))
    request = _request(
        Provider.OPENAI, "gpt-4o", image="data:image/png;base64,AAAA"
    )
    _, _, body = adapter.build_request(request, "k")
    parts = body["messages"][1]["content"]
    assert parts[0] == {"type": "text", "text": "Write"}
    assert parts[1]["image_url"]["url"] == "data:image/png;base64,AAAA"


def test_grok_uses_its_own_endpoint():
    adapter = GrokAdapter(make_transport(_unused))
    url, headers, _ = adapter.build_request(_request(Provider.GROK, "grok-3"), "xk")
    assert url == settings.GROK_API_URL
    assert headers["Authorization"] == "Bearer xk"


@pytest.mark.asyncio
async def test_openai_stream_emits_deltas_in_order():
    body = _sse(
        {"choices": [{"delta": {"content": "Once"}}]},
        {"choices": [{"delta": {}}]},
        {"choices": [{"delta": {"content": " upon"}}]},
        {"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 2}},
    )

    def handler(request):
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(
            200, text=body, headers={"content-type": "text/event-stream"}
        )

    received = []
    adapter = OpenAIAdapter(make_transport(handler))
    response = await adapter.generate(
        _request(Provider.OPENAI, "gpt-4o-mini", stream_sink=received.append),
        "sk-test",
    )

    assert received == ["Once", " upon"]
    assert response.content == "Once upon"
    assert response.usage.total_tokens == 5


@pytest.mark.asyncio
async def test_claude_headers_and_stream_usage():
    seen = {}
    body = _sse(
        {"type": "message_start", "message": {"usage": {"input_tokens": 9}}},
        {"type": "content_block_delta", "delta": {"text": "The tide"}},
        {"type": "content_block_delta", "delta": {"text": " turned."}},
        {"type": "message_delta", "usage": {"output_tokens": 5}},
    )

    def handler(request):
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, text=body)

    received = []
    adapter = ClaudeAdapter(make_transport(handler))
    response = await adapter.generate(
        _request(Provider.CLAUDE, "claude-haiku-4-5", stream_sink=received.append),
        "ak-test",
    )

    assert response.content == "The tide turned."
    assert received == ["The tide", " turned."]
    assert response.usage.prompt_tokens == 9
    assert response.usage.total_tokens == 14
    assert seen["headers"]["x-api-key"] == "ak-test"
    assert seen["headers"]["anthropic-version"] == settings.ANTHROPIC_VERSION
    assert "authorization" not in seen["headers"]
    assert seen["body"]["system"]
    assert seen["body"]["messages"] == [{"role": "user", "content": "Write"}]


@pytest.mark.asyncio
async def test_claude_stream_error_keeps_partial_content():
    body = _sse(
        {"type": "content_block_delta", "delta": {"text": "Half a"}},
        {"type": "error", "error": {"type": "overloaded_error", "message": "busy"}},
    )
    adapter = ClaudeAdapter(make_transport(lambda r: httpx.Response(200, text=body)))

    with pytest.raises(ClassifiedError) as exc_info:
        await adapter.generate(
            _request(Provider.CLAUDE, "claude-haiku-4-5", stream_sink=lambda t: None),
            "ak",
        )

    assert exc_info.value.category is ErrorCategory.SERVER_ERROR
    assert exc_info.value.code == "STREAM_OVERLOADED_ERROR"
    assert exc_info.value.partial_content == "Half a"


def test_claude_image_is_sent_as_base64_block():
    adapter = ClaudeAdapter(make_transport(_unused))
    request = _request(
        Provider.CLAUDE, "claude-haiku-4-5", image="data:image/jpeg;base64,QUJD"
    )
    _, _, body = adapter.build_request(request, "ak")
    image, text = body["messages"][0]["content"]
    assert image["source"] == {
        "type": "base64",
        "media_type": "image/jpeg",
        "data": "QUJD",
    }
    assert text == {"type": "text", "text": "Write"}


def test_gemini_url_carries_method_and_key():
    adapter = GeminiAdapter(make_transport(_unused))
    url, headers, body = adapter.build_request(
        _request(Provider.GEMINI, "gemini-2.5-flash"), "g key"
    )
    assert url == (
        f"{settings.GEMINI_API_BASE}/gemini-2.5-flash:generateContent?key=g%20key"
    )
    assert "Authorization" not in headers
    assert body["generationConfig"]["maxOutputTokens"] == 4000

    url, _, _ = adapter.build_request(
        _request(Provider.GEMINI, "gemini-2.5-flash", stream_sink=print), "k"
    )
    assert ":streamGenerateContent?key=k" in url


def test_gemini_stream_decoder_handles_fragmented_array():
    frames = [
        {"candidates": [{"content": {"parts": [{"text": "Salt \"and\" "}]}}]},
        {"candidates": [{"content": {"parts": [{"text": "wind\n"}]}}]},
        {
            "candidates": [{"content": {"parts": [{"text": "."}]}}],
            "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 6},
        },
    ]
    raw = json.dumps(frames)
    received = []
    acc = StreamAccumulator(received.append)
    decoder = GeminiStreamDecoder(acc)
    for start in range(0, len(raw), 7):
        decoder.feed(raw[start : start + 7])
    decoder.close()

    assert acc.text == 'Salt "and" wind\n.'
    assert received == ['Salt "and" ', "wind\n", "."]
    assert acc.usage.total_tokens == 10


def test_gemini_stream_without_text_is_a_safety_block():
    acc = StreamAccumulator(None)
    decoder = GeminiStreamDecoder(acc)
    decoder.feed(json.dumps([{"promptFeedback": {"blockReason": "SAFETY"}}]))
    with pytest.raises(ClassifiedError) as exc_info:
        decoder.close()
    assert exc_info.value.code == "SAFETY_BLOCKED"
    assert "blockReason=SAFETY" in exc_info.value.message


@pytest.mark.asyncio
async def test_gemini_empty_candidates_is_a_safety_block():
    def handler(request):
        return httpx.Response(
            200,
            json={
                "candidates": [],
                "promptFeedback": {
                    "blockReason": "SAFETY",
                    "safetyRatings": [
                        {"category": "HARM_CATEGORY_VIOLENCE", "probability": "HIGH"}
                    ],
                },
            },
        )

    adapter = GeminiAdapter(make_transport(handler))
    with pytest.raises(ClassifiedError) as exc_info:
        await adapter.generate(_request(Provider.GEMINI, "gemini-2.5-flash"), "k")

    error = exc_info.value
    assert error.category is ErrorCategory.INVALID_REQUEST
    assert not error.retryable
    assert "HARM_CATEGORY_VIOLENCE=HIGH" in error.message


@pytest.mark.asyncio
async def test_public_local_endpoint_is_rejected_before_network():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={})

    adapter = LocalAdapter(make_transport(handler))
    with pytest.raises(ClassifiedError) as exc_info:
        await adapter.generate(
            _request(
                Provider.LOCAL,
                "local-model",
                local_endpoint="http://203.0.113.5:1234/v1/chat/completions",
            ),
            "",
        )

    assert exc_info.value.category is ErrorCategory.INVALID_REQUEST
    assert calls == []


def test_local_prompt_is_truncated_and_tokens_clamped():
    adapter = LocalAdapter(make_transport(_unused))
    request = _request(
        Provider.LOCAL,
        "local-model",
        prompt="x" * 5000,
        local_endpoint="http://localhost:11434",
        max_tokens=20000,
    )
    url, headers, body = adapter.build_request(request, "")

    assert url == "http://localhost:11434/v1/chat/completions"
    assert "Authorization" not in headers
    user_content = body["messages"][1]["content"]
    assert user_content == "x" * settings.LOCAL_MAX_PROMPT_CHARS + TRUNCATION_MARKER
    assert body["max_tokens"] == settings.LOCAL_MAX_TOKENS


@pytest.mark.asyncio
async def test_local_connection_failure_names_the_endpoint():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    adapter = LocalAdapter(make_transport(handler))
    with pytest.raises(ClassifiedError) as exc_info:
        await adapter.generate(
            _request(
                Provider.LOCAL, "local-model", local_endpoint="http://127.0.0.1:1234"
            ),
            "",
        )

    assert exc_info.value.category is ErrorCategory.NETWORK
    assert "local LLM server" in exc_info.value.message
    assert "http://127.0.0.1:1234" in exc_info.value.message


@pytest.mark.asyncio
async def test_local_ollama_style_response_is_accepted():
    adapter = LocalAdapter(
        make_transport(lambda r: httpx.Response(200, json={"response": "Hi there"}))
    )
    response = await adapter.generate(_request(Provider.LOCAL, "llama3"), "")
    assert response.content == "Hi there"


@pytest.mark.asyncio
async def test_quota_429_is_rate_limit_with_quota_guidance():
    def handler(request):
        return httpx.Response(
            429,
            json=[{"error": {"code": 429, "message": "Resource has been exhausted"}}],
        )

    adapter = GeminiAdapter(make_transport(handler))
    with pytest.raises(ClassifiedError) as exc_info:
        await adapter.generate(_request(Provider.GEMINI, "gemini-2.5-pro"), "k")

    error = exc_info.value
    assert error.category is ErrorCategory.RATE_LIMIT
    assert error.status == 429
    assert error.message == "Resource has been exhausted"
    assert error.solution == QUOTA_RATE_LIMIT_SOLUTION


@pytest.mark.asyncio
async def test_stream_error_status_emits_nothing():
    received = []
    adapter = OpenAIAdapter(
        make_transport(
            lambda r: httpx.Response(500, json={"error": {"message": "upstream"}})
        )
    )
    with pytest.raises(ClassifiedError) as exc_info:
        await adapter.generate(
            _request(Provider.OPENAI, "gpt-4o", stream_sink=received.append), "k"
        )
    assert exc_info.value.category is ErrorCategory.SERVER_ERROR
    assert received == []


@pytest.mark.asyncio
async def test_non_json_success_body_is_reported():
    adapter = OpenAIAdapter(
        make_transport(lambda r: httpx.Response(200, text="<html>gateway</html>"))
    )
    with pytest.raises(ClassifiedError) as exc_info:
        await adapter.generate(_request(Provider.OPENAI, "gpt-4o"), "k")
    assert exc_info.value.code == "INVALID_RESPONSE"
