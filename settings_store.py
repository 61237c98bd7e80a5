"""Persistence of SelectLingo settings in a JSON file in the user's home directory."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Optional

SETTINGS_FILE = Path.home() / ".selectlingo_settings.json"

CURSOR_ORIGINS = ("top-left", "bottom-left")

# Field name -> key used in the settings file.
_FILE_KEYS = {
    "shortcut": "shortcut",
    "ollama_model": "ollamaModel",
    "ollama_endpoint": "ollamaEndpoint",
    "provider": "provider",
    "claude_cli_path": "claudeCliPath",
    "cursor_origin": "cursorOrigin",
}

logger = logging.getLogger("selectlingo.settings")


class SettingsError(RuntimeError):
    """Raised when settings cannot be written to disk."""


@dataclass(frozen=True)
class AppSettings:
    shortcut: str = "CommandOrControl+J"
    ollama_model: str = "qwen2.5:3b"
    ollama_endpoint: str = "http://localhost:11434"
    provider: str = "ollama"
    claude_cli_path: Optional[str] = None
    cursor_origin: str = "top-left"

    def to_file_dict(self) -> dict:
        return {_FILE_KEYS[name]: value for name, value in asdict(self).items()}

    @classmethod
    def from_file_dict(cls, data: dict) -> "AppSettings":
        """Build settings from a decoded file, falling back to defaults per key."""

        defaults = cls()
        values = {}
        for name, key in _FILE_KEYS.items():
            value = data.get(key)
            default = getattr(defaults, name)
            if name == "claude_cli_path":
                values[name] = value if isinstance(value, str) and value.strip() else None
            elif isinstance(value, str) and value.strip():
                values[name] = value.strip()
            else:
                values[name] = default
        if values["cursor_origin"] not in CURSOR_ORIGINS:
            values["cursor_origin"] = defaults.cursor_origin
        return cls(**values)


class SettingsStore:
    """Load and save :class:`AppSettings`, keeping the last loaded value cached."""

    def __init__(self, path: Path = SETTINGS_FILE) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._settings: Optional[AppSettings] = None

    def load(self) -> AppSettings:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            data = {}
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable settings file %s: %s", self.path, exc)
            data = {}
        settings = AppSettings.from_file_dict(data if isinstance(data, dict) else {})
        with self._lock:
            self._settings = settings
        return settings

    def save(self, settings: AppSettings) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps(settings.to_file_dict(), indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
        except OSError as exc:
            raise SettingsError(f"Failed to save settings to {self.path}") from exc
        with self._lock:
            self._settings = settings

    def update(self, **changes: object) -> AppSettings:
        settings = replace(self.snapshot(), **changes)
        self.save(settings)
        return settings

    def reset(self) -> AppSettings:
        settings = AppSettings()
        self.save(settings)
        return settings

    def snapshot(self) -> AppSettings:
        """Return the current settings, loading them on first use."""

        with self._lock:
            settings = self._settings
        if settings is None:
            settings = self.load()
        return settings
