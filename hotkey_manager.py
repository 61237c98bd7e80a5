"""Global shortcut registration built on the ``keyboard`` package."""

from __future__ import annotations

import logging
import sys
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

try:  # pragma: no cover - keyboard hooks are unavailable on some platforms
    import keyboard  # type: ignore
except Exception:  # pragma: no cover - handled in ShortcutManager
    keyboard = None  # type: ignore


VALID_MODIFIERS = (
    "command",
    "cmd",
    "control",
    "ctrl",
    "commandorcontrol",
    "cmdorctrl",
    "alt",
    "option",
    "shift",
    "super",
    "meta",
)

logger = logging.getLogger("selectlingo.hotkeys")


class ShortcutError(ValueError):
    """Raised for malformed shortcuts or failed (un)registration."""


@dataclass(frozen=True)
class ShortcutStatus:
    current_shortcut: Optional[str] = None
    is_registered: bool = False


def validate_shortcut(shortcut: str) -> None:
    """Validate an accelerator such as ``"CommandOrControl+Shift+T"``.

    Every part but the last must be a known modifier; the last part is the key.
    """

    if not shortcut:
        raise ShortcutError("Shortcut is empty")
    parts = shortcut.split("+")
    if not parts[-1]:
        raise ShortcutError("No key specified")
    for part in parts[:-1]:
        if part.lower() not in VALID_MODIFIERS:
            raise ShortcutError(f"Invalid modifier: {part}")


def _modifier_name(token: str, platform: str) -> str:
    token = token.lower()
    if token in {"commandorcontrol", "cmdorctrl"}:
        return "command" if platform == "darwin" else "ctrl"
    if token in {"command", "cmd", "super", "meta"}:
        return "command" if platform == "darwin" else "windows"
    if token in {"control", "ctrl"}:
        return "ctrl"
    if token in {"alt", "option"}:
        return "alt"
    return token


def to_keyboard_combo(shortcut: str, platform: str = sys.platform) -> str:
    """Translate an accelerator string into ``keyboard`` hotkey syntax."""

    validate_shortcut(shortcut)
    *modifiers, key = shortcut.split("+")
    tokens = [_modifier_name(modifier, platform) for modifier in modifiers]
    tokens.append(key.lower())
    return "+".join(tokens)


class ShortcutManager:
    """Register one global shortcut and fan its presses out to subscribers.

    Callbacks run on the ``keyboard`` listener thread; subscribers that touch
    an event loop must hand the work over themselves.
    """

    def __init__(
        self,
        *,
        keyboard_module=keyboard,
        platform: str = sys.platform,
        logger: logging.Logger = logger,
    ) -> None:
        self._keyboard = keyboard_module
        self._platform = platform
        self._logger = logger
        self._lock = threading.Lock()
        self._subscribers: List[Callable[[], None]] = []
        self._handle: Optional[object] = None
        self._current: Optional[str] = None

    def register(self, shortcut: str) -> None:
        """Register ``shortcut``, replacing any previously registered one."""

        if self._keyboard is None:
            raise ShortcutError(
                "Registration failed: the 'keyboard' package is not available"
            )
        combo = to_keyboard_combo(shortcut, self._platform)
        self.unregister()
        try:
            handle = self._keyboard.add_hotkey(combo, self._on_hotkey)
        except Exception as exc:
            raise ShortcutError(f"Registration failed: {exc}") from exc
        with self._lock:
            self._handle = handle
            self._current = shortcut
        self._logger.info("Registered shortcut '%s' as %s", shortcut, combo)

    def unregister(self) -> None:
        with self._lock:
            handle, self._handle = self._handle, None
            previous, self._current = self._current, None
        if handle is None:
            return
        try:
            self._keyboard.remove_hotkey(handle)
        except Exception as exc:
            raise ShortcutError(f"Unregistration failed: {exc}") from exc
        self._logger.info("Unregistered shortcut '%s'", previous)

    def status(self) -> ShortcutStatus:
        with self._lock:
            return ShortcutStatus(current_shortcut=self._current, is_registered=self._handle is not None)

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _on_hotkey(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        self._logger.debug("Shortcut triggered (%d subscribers)", len(subscribers))
        for callback in subscribers:
            try:
                callback()
            except Exception:
                self._logger.exception("Shortcut subscriber failed")
