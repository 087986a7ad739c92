"""Provider adapter request/response contract tests over a mocked transport."""

from __future__ import annotations

import json

import httpx
import pytest

from prompt_flow_engine.config import AppConfig
from prompt_flow_engine.errors import ConfigurationError, ProviderError
from prompt_flow_engine.models import ProviderSettings
from prompt_flow_engine.providers import (
    AnthropicAdapter,
    GoogleAdapter,
    GroqAdapter,
    LlamaAdapter,
    OpenAIAdapter,
    build_default_adapters,
    get_adapter,
)


class RecordingTransport:
    """Mock transport handler that records requests and replays one response."""

    def __init__(self, response: httpx.Response | Exception) -> None:
        self.response = response
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))

    def body(self, index: int = 0) -> dict:
        return json.loads(self.requests[index].content)


def _settings(provider: str, model: str = "test-model") -> ProviderSettings:
    return ProviderSettings(
        provider=provider,
        model=model,
        temperature=0.5,
        max_tokens=256,
        api_key="sk-test",
    )


def _chat_completion(content: str | None) -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "test-model",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
    }


def test_openai_adapter_posts_chat_completion_and_reads_message_content() -> None:
    transport = RecordingTransport(httpx.Response(200, json=_chat_completion("bonjour")))
    adapter = OpenAIAdapter(http_client=transport.client())

    result = adapter.generate(_settings("openai", "gpt-4o"), "Translate hello to French")

    assert result.text == "bonjour"
    assert result.provider == "openai"
    assert result.raw["id"] == "chatcmpl-1"
    request = transport.requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://api.openai.com/v1/chat/completions"
    assert request.headers["authorization"] == "Bearer sk-test"
    assert transport.body() == {
        "model": "gpt-4o",
        "messages": [{"role": "user", "content": "Translate hello to French"}],
        "temperature": 0.5,
        "max_tokens": 256,
    }


def test_openai_adapter_returns_empty_text_for_null_content() -> None:
    transport = RecordingTransport(httpx.Response(200, json=_chat_completion(None)))
    adapter = OpenAIAdapter(http_client=transport.client())

    result = adapter.generate(_settings("openai"), "prompt")

    assert result.text == ""


def test_openai_adapter_uses_provider_error_message_and_does_not_retry() -> None:
    transport = RecordingTransport(
        httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}})
    )
    adapter = OpenAIAdapter(http_client=transport.client())

    with pytest.raises(ProviderError) as exc_info:
        adapter.generate(_settings("openai"), "prompt")

    assert exc_info.value.provider == "openai"
    assert exc_info.value.http_status == 401
    assert exc_info.value.message == "Incorrect API key provided"
    assert str(exc_info.value) == "OpenAI API error: Incorrect API key provided"
    assert len(transport.requests) == 1


def test_groq_adapter_sends_stream_false_to_fixed_endpoint() -> None:
    transport = RecordingTransport(httpx.Response(200, json=_chat_completion("fast answer")))
    adapter = GroqAdapter(http_client=transport.client())

    result = adapter.generate(_settings("groq", "llama3-8b-8192"), "Ping")

    assert result.text == "fast answer"
    assert str(transport.requests[0].url) == "https://api.groq.com/openai/v1/chat/completions"
    body = transport.body()
    assert body["stream"] is False
    assert body["model"] == "llama3-8b-8192"
    assert body["max_tokens"] == 256


def test_groq_adapter_falls_back_to_status_text_when_error_body_is_not_json() -> None:
    transport = RecordingTransport(httpx.Response(500, text="upstream exploded"))
    adapter = GroqAdapter(http_client=transport.client())

    with pytest.raises(ProviderError) as exc_info:
        adapter.generate(_settings("groq"), "Ping")

    assert exc_info.value.http_status == 500
    assert exc_info.value.message == "Internal Server Error"
    assert len(transport.requests) == 1


def test_llama_adapter_reads_generation_field_from_configured_endpoint() -> None:
    transport = RecordingTransport(httpx.Response(200, json={"generation": "llama says hi"}))
    adapter = LlamaAdapter(base_url="https://llama.example.test/v1/", http_client=transport.client())

    result = adapter.generate(_settings("llama", "llama-3-8b-instruct"), "Hi")

    assert result.text == "llama says hi"
    assert str(transport.requests[0].url) == "https://llama.example.test/v1/chat/completions"
    assert transport.requests[0].headers["authorization"] == "Bearer sk-test"


def test_llama_adapter_prefers_chat_message_content() -> None:
    transport = RecordingTransport(httpx.Response(200, json=_chat_completion("from choices")))
    adapter = LlamaAdapter(http_client=transport.client())

    result = adapter.generate(_settings("llama"), "Hi")

    assert result.text == "from choices"


def test_anthropic_adapter_sends_version_header_and_reads_first_content_block() -> None:
    payload = {"id": "msg_1", "content": [{"type": "text", "text": "claude reply"}]}
    transport = RecordingTransport(httpx.Response(200, json=payload))
    adapter = AnthropicAdapter(http_client=transport.client())

    result = adapter.generate(_settings("anthropic", "claude-3-haiku-20240307"), "Hello")

    assert result.text == "claude reply"
    assert result.raw == payload
    request = transport.requests[0]
    assert str(request.url) == "https://api.anthropic.com/v1/messages"
    assert request.headers["x-api-key"] == "sk-test"
    assert request.headers["anthropic-version"] == "2023-06-01"
    assert "authorization" not in request.headers
    assert transport.body() == {
        "model": "claude-3-haiku-20240307",
        "messages": [{"role": "user", "content": "Hello"}],
        "temperature": 0.5,
        "max_tokens": 256,
    }


def test_anthropic_adapter_rejects_unexpected_success_shape() -> None:
    transport = RecordingTransport(httpx.Response(200, json={"content": []}))
    adapter = AnthropicAdapter(http_client=transport.client())

    with pytest.raises(ProviderError, match="Invalid response format"):
        adapter.generate(_settings("anthropic"), "Hello")


def test_anthropic_adapter_reads_error_message_field() -> None:
    transport = RecordingTransport(
        httpx.Response(
            400,
            json={"type": "error", "error": {"type": "invalid_request_error", "message": "max_tokens too large"}},
        )
    )
    adapter = AnthropicAdapter(http_client=transport.client())

    with pytest.raises(ProviderError) as exc_info:
        adapter.generate(_settings("anthropic"), "Hello")

    assert exc_info.value.http_status == 400
    assert str(exc_info.value) == "Anthropic API error: max_tokens too large"


def test_google_adapter_puts_key_in_url_and_reads_candidate_text() -> None:
    payload = {"candidates": [{"content": {"parts": [{"text": "gemini reply"}]}}]}
    transport = RecordingTransport(httpx.Response(200, json=payload))
    adapter = GoogleAdapter(http_client=transport.client())

    result = adapter.generate(_settings("google", "gemini-1.5-flash"), "Hello")

    assert result.text == "gemini reply"
    request = transport.requests[0]
    assert request.url.path == "/v1beta/models/gemini-1.5-flash:generateContent"
    assert request.url.host == "generativelanguage.googleapis.com"
    assert request.url.params["key"] == "sk-test"
    assert transport.body() == {
        "contents": [{"parts": [{"text": "Hello"}]}],
        "generationConfig": {"temperature": 0.5, "maxOutputTokens": 256},
    }


def test_http_adapter_converts_network_errors() -> None:
    transport = RecordingTransport(httpx.ConnectError("connection refused"))
    adapter = GoogleAdapter(http_client=transport.client())

    with pytest.raises(ProviderError) as exc_info:
        adapter.generate(_settings("google"), "Hello")

    assert exc_info.value.http_status is None
    assert "Network or timeout error" in exc_info.value.message


@pytest.mark.parametrize(
    "error",
    [httpx.DecodingError("bad gzip stream"), httpx.TooManyRedirects("redirect loop")],
)
def test_http_adapter_converts_other_request_errors(error: Exception) -> None:
    transport = RecordingTransport(error)
    adapter = AnthropicAdapter(http_client=transport.client())

    with pytest.raises(ProviderError) as exc_info:
        adapter.generate(_settings("anthropic"), "Hello")

    assert exc_info.value.http_status is None
    assert exc_info.value.message == f"Request to Anthropic failed: {type(error).__name__}."


def test_openai_adapter_converts_network_errors() -> None:
    transport = RecordingTransport(httpx.ConnectError("connection refused"))
    adapter = OpenAIAdapter(http_client=transport.client())

    with pytest.raises(ProviderError) as exc_info:
        adapter.generate(_settings("openai"), "Hello")

    assert exc_info.value.http_status is None
    assert len(transport.requests) == 1


def test_adapter_rejects_missing_api_key_without_sending() -> None:
    transport = RecordingTransport(httpx.Response(200, json=_chat_completion("unused")))
    adapter = GroqAdapter(http_client=transport.client())
    settings = ProviderSettings(provider="groq", api_key="   ")

    with pytest.raises(ProviderError, match="API key is missing"):
        adapter.generate(settings, "Ping")

    assert transport.requests == []


def test_build_default_adapters_covers_every_provider() -> None:
    config = AppConfig(llama_api_base_url="https://llama.example.test/v1", provider_timeout_seconds=9.0)

    adapters = build_default_adapters(config)

    assert set(adapters) == {"openai", "anthropic", "google", "llama", "groq"}
    assert adapters["llama"].base_url == "https://llama.example.test/v1"
    assert all(adapter.timeout_seconds == 9.0 for adapter in adapters.values())
    assert get_adapter(adapters, "groq") is adapters["groq"]


def test_get_adapter_rejects_unknown_provider() -> None:
    adapters = build_default_adapters(AppConfig())

    with pytest.raises(ConfigurationError, match="Unsupported provider"):
        get_adapter(adapters, "mistral")
