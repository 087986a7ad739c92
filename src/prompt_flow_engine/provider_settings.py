"""Persist provider settings: plaintext parameters plus the encrypted API key."""

from __future__ import annotations

from prompt_flow_engine.config import AppConfig
from prompt_flow_engine.errors import ConfigurationError
from prompt_flow_engine.local_storage import LocalStorage
from prompt_flow_engine.models import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODEL,
    DEFAULT_PROVIDER,
    DEFAULT_TEMPERATURE,
    ProviderSettings,
)
from prompt_flow_engine.secret_store import SecretStore

PROVIDER_KEY = "flow_api_provider"
MODEL_KEY = "flow_api_model"
TEMPERATURE_KEY = "flow_api_temperature"
MAX_TOKENS_KEY = "flow_api_max_tokens"


class ProviderSettingsStore:
    """Round-trips ProviderSettings through local storage."""

    def __init__(self, storage: LocalStorage, secret_store: SecretStore | None = None) -> None:
        self.storage = storage
        self.secret_store = secret_store or SecretStore(storage)

    @classmethod
    def from_config(cls, config: AppConfig) -> "ProviderSettingsStore":
        return cls(LocalStorage(config.storage_path))

    def save(self, settings: ProviderSettings) -> None:
        """Validate and store settings; the API key is written encrypted only."""
        settings.validate()
        self.storage.set_item(PROVIDER_KEY, settings.provider)
        self.storage.set_item(MODEL_KEY, settings.model)
        self.storage.set_item(TEMPERATURE_KEY, repr(float(settings.temperature)))
        self.storage.set_item(MAX_TOKENS_KEY, str(int(settings.max_tokens)))
        if settings.has_api_key:
            self.secret_store.encrypt(settings.api_key.strip())
        else:
            self.secret_store.clear()

    def load(self) -> ProviderSettings:
        """Load stored settings, falling back to defaults for absent entries."""
        temperature_raw = self.storage.get_item(TEMPERATURE_KEY)
        max_tokens_raw = self.storage.get_item(MAX_TOKENS_KEY)
        try:
            temperature = float(temperature_raw) if temperature_raw else DEFAULT_TEMPERATURE
            max_tokens = int(max_tokens_raw) if max_tokens_raw else DEFAULT_MAX_TOKENS
        except ValueError as exc:
            raise ConfigurationError(f"Stored provider settings are invalid: {exc}") from exc

        settings = ProviderSettings(
            provider=self.storage.get_item(PROVIDER_KEY) or DEFAULT_PROVIDER,
            model=self.storage.get_item(MODEL_KEY) or DEFAULT_MODEL,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=self.secret_store.load_api_key() or "",
        )
        return settings.validate()
