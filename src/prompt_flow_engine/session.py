"""Explicit per-caller session: user identity, provider settings, selected flow."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from prompt_flow_engine.errors import ConfigurationError
from prompt_flow_engine.models import ProviderSettings


@dataclass
class FlowSession:
    """Caller state passed into every orchestrator call."""

    user_id: str
    settings: ProviderSettings
    selected_flow_id: str | None = None
    closed: bool = False

    def require_open(self) -> None:
        if self.closed:
            raise ConfigurationError("Session is closed.")

    def select_flow(self, flow_id: str) -> None:
        self.require_open()
        self.selected_flow_id = flow_id

    def clear_selection(self) -> None:
        self.selected_flow_id = None

    def update_settings(self, settings: ProviderSettings) -> None:
        self.require_open()
        self.settings = settings.validate()

    def close(self) -> None:
        self.selected_flow_id = None
        self.closed = True


def open_session(user_id: str, settings: ProviderSettings) -> FlowSession:
    """Create a session for an authenticated user."""
    if not str(user_id or "").strip():
        raise ConfigurationError("A user id is required to open a session.")
    return FlowSession(user_id=user_id, settings=settings.validate())


@contextmanager
def flow_session(user_id: str, settings: ProviderSettings) -> Iterator[FlowSession]:
    """Open a session and close it when the block exits."""
    session = open_session(user_id, settings)
    try:
        yield session
    finally:
        session.close()
