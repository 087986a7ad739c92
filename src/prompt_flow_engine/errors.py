"""Error taxonomy shared by the engine components."""

from __future__ import annotations

PROVIDER_LABELS = {
    "openai": "OpenAI",
    "anthropic": "Anthropic",
    "google": "Google",
    "llama": "Llama",
    "groq": "Groq",
}


class FlowEngineError(Exception):
    """Base class for engine errors carrying a user-readable message."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(FlowEngineError):
    """Missing credentials, unauthorized flow access, or invalid settings."""


class ExecutionInProgressError(FlowEngineError):
    """Raised when an orchestrator is asked to run while a run is in flight."""


class PersistenceError(FlowEngineError):
    """Repository CRUD failure."""


class ProviderError(FlowEngineError):
    """Normalized provider failure: non-2xx, network error, or unparseable body."""

    def __init__(self, provider: str, http_status: int | None, message: str) -> None:
        super().__init__(message)
        self.provider = provider
        self.http_status = http_status

    def __str__(self) -> str:
        label = PROVIDER_LABELS.get(self.provider, self.provider)
        return f"{label} API error: {self.message}"

    def __repr__(self) -> str:
        return (
            "ProviderError("
            f"provider={self.provider!r}, "
            f"http_status={self.http_status!r}, "
            f"message={self.message!r})"
        )
