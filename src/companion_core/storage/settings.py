"""Settings system backed by JSON file, class-based."""

from __future__ import annotations

import json
import os
from typing import Any

from ..paths import Paths

DEFAULT_MODEL = "gemma3:4b"
DEFAULT_HOST = "https://ollama.com"

API_KEYS_ENV = "COMPANION_API_KEYS"

DEFAULTS: dict[str, Any] = {
    "bot_name": "Isiri",
    "model": "",
    "host": DEFAULT_HOST,
    "max_output_tokens": 8192,
    "temperature": 0.8,
    "max_retries": 3,
    "max_chat_history": 30,
    "timezone": "Asia/Colombo",
    "lock_scope": "document",
    "memory_updates": True,
    "system_prompt": "",
    "fallback_reply": "Sorry, my head is a bit slow right now. Can you say that again in a bit?",
}

_VALID_KEYS = set(DEFAULTS)


def parse_api_keys(raw: str | None) -> list[str]:
    """Split a comma-separated credential list, dropping blanks."""
    if not raw:
        return []
    return [key.strip() for key in raw.split(",") if key.strip()]


class Settings:
    """Settings backed by a JSON file.

    Usage:
        settings = Settings(paths)
        model = settings.get_model()
        settings.set("temperature", 0.5)
    """

    def __init__(self, paths: Paths) -> None:
        self.paths = paths

    def load(self) -> dict[str, Any]:
        """Read settings from disk, filling missing keys from defaults."""
        settings = dict(DEFAULTS)
        try:
            raw = self.paths.settings_file.read_text(encoding="utf-8")
            stored = json.loads(raw)
            settings.update(stored)
        except (FileNotFoundError, json.JSONDecodeError):
            pass
        return settings

    def save(self, settings: dict[str, Any]) -> None:
        """Write settings to disk."""
        self.paths.settings_file.parent.mkdir(parents=True, exist_ok=True)
        self.paths.settings_file.write_text(
            json.dumps(settings, indent=4) + "\n", encoding="utf-8",
        )

    def get(self, key: str) -> Any:
        """Return a single setting value."""
        return self.load().get(key, DEFAULTS.get(key))

    def set(self, key: str, value: Any) -> None:
        """Update a single setting and persist."""
        settings = self.load()
        settings[key] = value
        self.save(settings)

    @staticmethod
    def is_valid_key(key: str) -> bool:
        """Return True if *key* is a recognised setting name."""
        return key in _VALID_KEYS

    def get_model(self) -> str:
        """Resolve the model name: settings.model -> DEFAULT_MODEL."""
        return self.get("model") or DEFAULT_MODEL

    @staticmethod
    def api_keys() -> list[str]:
        """Return the credentials listed in the environment."""
        return parse_api_keys(os.environ.get(API_KEYS_ENV))
