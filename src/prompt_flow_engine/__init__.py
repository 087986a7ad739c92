"""Prompt Flow Engine package."""

from __future__ import annotations

__all__ = [
    "errors",
    "config",
    "models",
    "variables",
    "providers",
    "local_storage",
    "secret_store",
    "provider_settings",
    "database",
    "repository",
    "session",
    "orchestrator",
    "logging_config",
]
