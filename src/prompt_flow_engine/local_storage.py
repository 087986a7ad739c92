"""JSON-file key-value storage for per-user local settings."""

from __future__ import annotations

import json
from pathlib import Path

from prompt_flow_engine.errors import PersistenceError


class LocalStorage:
    """Flat string-to-string store persisted as one JSON object on disk."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"Unable to read local storage at {self.path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise PersistenceError(f"Local storage root must be an object: {self.path}")
        return {str(key): str(value) for key, value in payload.items()}

    def _write(self, payload: dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps(payload, indent=2, ensure_ascii=True, sort_keys=True) + "\n",
                encoding="utf-8",
            )
        except OSError as exc:
            raise PersistenceError(f"Unable to write local storage at {self.path}: {exc}") from exc

    def get_item(self, key: str) -> str | None:
        return self._read().get(key)

    def set_item(self, key: str, value: str) -> None:
        payload = self._read()
        payload[key] = str(value)
        self._write(payload)

    def remove_item(self, key: str) -> None:
        payload = self._read()
        if payload.pop(key, None) is not None:
            self._write(payload)

    def keys(self) -> list[str]:
        return sorted(self._read())
