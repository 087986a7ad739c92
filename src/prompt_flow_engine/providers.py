"""Provider adapters: one request/response shape per text-generation service."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Any, Literal, Mapping

import httpx
from openai import APIConnectionError, APIStatusError, OpenAI

from prompt_flow_engine.config import AppConfig
from prompt_flow_engine.errors import PROVIDER_LABELS, ConfigurationError, ProviderError
from prompt_flow_engine.models import SUPPORTED_PROVIDERS, ProviderSettings

OPENAI_BASE_URL = "https://api.openai.com/v1"
GROQ_BASE_URL = "https://api.groq.com/openai/v1"
ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
GOOGLE_BASE_URL = "https://generativelanguage.googleapis.com"

LOGGER = logging.getLogger("prompt_flow_engine.providers")
if not LOGGER.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    LOGGER.addHandler(handler)
LOGGER.setLevel(logging.INFO)
LOGGER.propagate = False


@dataclass(frozen=True)
class ProviderResult:
    """Normalized generation result: extracted text plus the parsed response body."""

    text: str
    provider: str
    model: str
    raw: dict[str, Any] = field(default_factory=dict)


class ProviderAdapter:
    """Base adapter: one blocking POST per call, no retries, no streaming."""

    name: str = ""

    def __init__(
        self,
        *,
        timeout_seconds: float = 120.0,
        http_client: httpx.Client | None = None,
        verbose_logging: bool = False,
        verbose_log_max_chars: int = 4000,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.http_client = http_client
        self.verbose_logging = verbose_logging
        self.verbose_log_max_chars = verbose_log_max_chars

    @property
    def label(self) -> str:
        return PROVIDER_LABELS.get(self.name, self.name)

    def generate(self, settings: ProviderSettings, prompt: str) -> ProviderResult:
        """Send `prompt` with `settings` and return the normalized result."""
        started = time.monotonic()
        try:
            if not settings.has_api_key:
                raise ProviderError(self.name, None, f"{self.label} API key is missing or empty")
            http_status, raw = self._send(settings, prompt)
            text = self._extract_text_checked(raw, http_status)
        except ProviderError as exc:
            self._log_request(
                model=settings.model,
                prompt=prompt,
                outcome="error",
                http_status=exc.http_status,
                started=started,
            )
            raise
        self._log_request(
            model=settings.model,
            prompt=prompt,
            outcome="success",
            http_status=http_status,
            started=started,
        )
        if self.verbose_logging:
            self._log_excerpt("provider_prompt", prompt)
            self._log_excerpt("provider_response", text)
        return ProviderResult(text=text, provider=self.name, model=settings.model, raw=raw)

    def _send(self, settings: ProviderSettings, prompt: str) -> tuple[int, dict[str, Any]]:
        raise NotImplementedError

    def _extract_text(self, raw: Mapping[str, Any]) -> str:
        raise NotImplementedError

    def _extract_text_checked(self, raw: object, http_status: int) -> str:
        if not isinstance(raw, dict):
            raise ProviderError(self.name, http_status, f"Invalid response format from {self.label} API")
        try:
            text = self._extract_text(raw)
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(
                self.name, http_status, f"Invalid response format from {self.label} API"
            ) from exc
        return str(text or "")

    def _log_request(
        self,
        *,
        model: str,
        prompt: str,
        outcome: Literal["success", "error"],
        http_status: int | None,
        started: float,
    ) -> None:
        LOGGER.info(
            "provider_request provider=%s model=%s prompt_chars=%d outcome=%s http_status=%s duration_ms=%d",
            self.name,
            model,
            len(prompt),
            outcome,
            http_status if http_status is not None else "none",
            int((time.monotonic() - started) * 1000),
        )

    def _log_excerpt(self, event: str, text: str) -> None:
        excerpt = text
        if len(excerpt) > self.verbose_log_max_chars:
            excerpt = f"{excerpt[: self.verbose_log_max_chars - 3]}..."
        LOGGER.info("%s provider=%s chars=%d text=%s", event, self.name, len(text), excerpt)


def _compact_error_message(message: str, *, max_chars: int = 320) -> str:
    compact = " ".join(str(message).split())
    if len(compact) <= max_chars:
        return compact
    return f"{compact[: max_chars - 3]}..."


def error_message_from_response(response: httpx.Response) -> str:
    """Use the provider's own error message when the body parses, else the status text."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return _compact_error_message(str(error["message"]))
        if isinstance(error, str) and error.strip():
            return _compact_error_message(error)
        if payload.get("message"):
            return _compact_error_message(str(payload["message"]))
    return response.reason_phrase or f"HTTP {response.status_code}"


class OpenAICompatibleAdapter(ProviderAdapter):
    """Chat-completions adapter built on the OpenAI SDK with a fixed base URL."""

    base_url: str = OPENAI_BASE_URL
    extra_body: Mapping[str, Any] = {}

    def __init__(self, *, base_url: str | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if base_url:
            self.base_url = base_url.rstrip("/")

    def build_request(self, settings: ProviderSettings, prompt: str) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": settings.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": settings.temperature,
            "max_tokens": settings.max_tokens,
        }
        request.update(self.extra_body)
        return request

    def _send(self, settings: ProviderSettings, prompt: str) -> tuple[int, dict[str, Any]]:
        client = OpenAI(
            api_key=settings.api_key,
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            max_retries=0,
            http_client=self.http_client,
        )
        try:
            response = client.chat.completions.with_raw_response.create(
                **self.build_request(settings, prompt)
            )
            http_response = response.http_response
            try:
                raw = http_response.json()
            except ValueError as exc:
                raise ProviderError(
                    self.name,
                    http_response.status_code,
                    f"Invalid response format from {self.label} API",
                ) from exc
            return http_response.status_code, raw
        except APIStatusError as exc:
            raise ProviderError(
                self.name, exc.status_code, error_message_from_response(exc.response)
            ) from exc
        except APIConnectionError as exc:
            raise ProviderError(
                self.name, None, f"Network or timeout error while contacting {self.label}."
            ) from exc
        finally:
            if self.http_client is None:
                client.close()

    def _extract_text(self, raw: Mapping[str, Any]) -> str:
        return raw["choices"][0]["message"].get("content") or ""


class OpenAIAdapter(OpenAICompatibleAdapter):
    name = "openai"
    base_url = OPENAI_BASE_URL


class GroqAdapter(OpenAICompatibleAdapter):
    name = "groq"
    base_url = GROQ_BASE_URL
    extra_body = {"stream": False}


class LlamaAdapter(OpenAICompatibleAdapter):
    """Generic Llama host speaking the OpenAI wire format."""

    name = "llama"

    def _extract_text(self, raw: Mapping[str, Any]) -> str:
        choices = raw.get("choices")
        if choices:
            content = choices[0]["message"].get("content")
            return content or raw.get("generation") or ""
        if "generation" in raw:
            return raw.get("generation") or ""
        raise KeyError("choices")


class HttpJsonAdapter(ProviderAdapter):
    """Adapter issuing a raw JSON POST through httpx."""

    def build_request(self, settings: ProviderSettings, prompt: str) -> dict[str, Any]:
        raise NotImplementedError

    def _endpoint(self, settings: ProviderSettings) -> tuple[str, dict[str, str], dict[str, str]]:
        """Return (url, headers, query params) for one call."""
        raise NotImplementedError

    def _post(self, url: str, *, headers: dict[str, str], params: dict[str, str], body: dict[str, Any]) -> httpx.Response:
        if self.http_client is not None:
            return self.http_client.post(
                url, headers=headers, params=params, json=body, timeout=self.timeout_seconds
            )
        with httpx.Client(timeout=self.timeout_seconds) as client:
            return client.post(url, headers=headers, params=params, json=body)

    def _send(self, settings: ProviderSettings, prompt: str) -> tuple[int, dict[str, Any]]:
        url, headers, params = self._endpoint(settings)
        try:
            response = self._post(
                url, headers=headers, params=params, body=self.build_request(settings, prompt)
            )
        except httpx.TransportError as exc:
            raise ProviderError(
                self.name, None, f"Network or timeout error while contacting {self.label}."
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderError(
                self.name, None, f"Request to {self.label} failed: {type(exc).__name__}."
            ) from exc

        if not response.is_success:
            raise ProviderError(self.name, response.status_code, error_message_from_response(response))
        try:
            raw = response.json()
        except ValueError as exc:
            raise ProviderError(
                self.name, response.status_code, f"Invalid response format from {self.label} API"
            ) from exc
        return response.status_code, raw


class AnthropicAdapter(HttpJsonAdapter):
    name = "anthropic"

    def _endpoint(self, settings: ProviderSettings) -> tuple[str, dict[str, str], dict[str, str]]:
        headers = {
            "x-api-key": settings.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }
        return ANTHROPIC_MESSAGES_URL, headers, {}

    def build_request(self, settings: ProviderSettings, prompt: str) -> dict[str, Any]:
        return {
            "model": settings.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": settings.temperature,
            "max_tokens": settings.max_tokens,
        }

    def _extract_text(self, raw: Mapping[str, Any]) -> str:
        return raw["content"][0].get("text") or ""


class GoogleAdapter(HttpJsonAdapter):
    name = "google"

    def __init__(self, *, base_url: str = GOOGLE_BASE_URL, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")

    def _endpoint(self, settings: ProviderSettings) -> tuple[str, dict[str, str], dict[str, str]]:
        url = f"{self.base_url}/v1beta/models/{settings.model}:generateContent"
        return url, {}, {"key": settings.api_key}

    def build_request(self, settings: ProviderSettings, prompt: str) -> dict[str, Any]:
        return {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": settings.temperature,
                "maxOutputTokens": settings.max_tokens,
            },
        }

    def _extract_text(self, raw: Mapping[str, Any]) -> str:
        return raw["candidates"][0]["content"]["parts"][0].get("text") or ""


ADAPTER_TYPES: dict[str, type[ProviderAdapter]] = {
    "openai": OpenAIAdapter,
    "anthropic": AnthropicAdapter,
    "google": GoogleAdapter,
    "llama": LlamaAdapter,
    "groq": GroqAdapter,
}


def build_default_adapters(
    config: AppConfig,
    http_client: httpx.Client | None = None,
) -> dict[str, ProviderAdapter]:
    """Build one adapter per supported provider from runtime config."""
    common: dict[str, Any] = {
        "timeout_seconds": config.provider_timeout_seconds,
        "http_client": http_client,
        "verbose_logging": config.verbose_provider_logging,
        "verbose_log_max_chars": config.verbose_provider_log_max_chars,
    }
    adapters: dict[str, ProviderAdapter] = {}
    for name in SUPPORTED_PROVIDERS:
        if name == "llama":
            adapters[name] = LlamaAdapter(base_url=config.llama_api_base_url, **common)
        else:
            adapters[name] = ADAPTER_TYPES[name](**common)
    return adapters


def get_adapter(adapters: Mapping[str, ProviderAdapter], provider: str) -> ProviderAdapter:
    """Resolve the adapter for `provider` or raise ConfigurationError."""
    adapter = adapters.get(provider)
    if adapter is None:
        supported = ", ".join(sorted(adapters))
        raise ConfigurationError(f"Unsupported provider: {provider!r}; configured providers: {supported}")
    return adapter
