"""Read the text currently selected in the foreground application via the clipboard."""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Optional

try:  # pragma: no cover - executed during module import
    import pyperclip  # type: ignore
except ImportError:  # pragma: no cover - handled in __init__
    pyperclip = None  # type: ignore

try:  # pragma: no cover - keyboard hooks are unavailable on some platforms
    import keyboard  # type: ignore
except Exception:  # pragma: no cover - handled in __init__
    keyboard = None  # type: ignore


COPY_POLL_ATTEMPTS = 5
COPY_POLL_INTERVAL = 0.1
RESTORE_DELAY = 0.05

logger = logging.getLogger("selectlingo.selection")


class SelectionError(RuntimeError):
    """Raised when the selected text cannot be captured."""


@dataclass(frozen=True)
class SelectionContent:
    text: str
    success: bool

    @classmethod
    def empty(cls) -> "SelectionContent":
        return cls(text="", success=False)


def copy_combo(platform: str = sys.platform) -> str:
    return "command+c" if platform == "darwin" else "ctrl+c"


class ClipboardSelectionSource:
    """Capture the selection by sending the copy shortcut and reading the clipboard.

    The previous clipboard content is restored afterwards so the user's
    clipboard is left untouched.
    """

    def __init__(
        self,
        *,
        clipboard_module=pyperclip,
        keyboard_module=keyboard,
        platform: str = sys.platform,
        poll_attempts: int = COPY_POLL_ATTEMPTS,
        poll_interval: float = COPY_POLL_INTERVAL,
        restore_delay: float = RESTORE_DELAY,
    ) -> None:
        if clipboard_module is None:
            raise RuntimeError(
                "The 'pyperclip' package is required. Install it with 'pip install pyperclip'."
            )
        if keyboard_module is None:
            raise RuntimeError(
                "The 'keyboard' package is required. Install it with 'pip install keyboard'."
            )
        self._clipboard = clipboard_module
        self._keyboard = keyboard_module
        self._copy_combo = copy_combo(platform)
        self._poll_attempts = poll_attempts
        self._poll_interval = poll_interval
        self._restore_delay = restore_delay

    async def get_selected_text(self) -> SelectionContent:
        # Clipboard and keystroke calls block, so they run off the event loop.
        original = await asyncio.to_thread(self._read_clipboard)

        try:
            await asyncio.to_thread(self._keyboard.press_and_release, self._copy_combo)
        except Exception as exc:
            await asyncio.to_thread(self._restore, original)
            raise SelectionError("Failed to send the copy keystroke") from exc

        selected: Optional[str] = None
        for _ in range(self._poll_attempts):
            await asyncio.sleep(self._poll_interval)
            text = await asyncio.to_thread(self._read_clipboard)
            if text and text != original:
                selected = text
                break

        if selected is None:
            await asyncio.to_thread(self._restore, original)
            raise SelectionError(
                "Could not read the selected text. Check that accessibility "
                "permission is granted."
            )

        await asyncio.sleep(self._restore_delay)
        await asyncio.to_thread(self._restore, original)
        return SelectionContent(text=selected, success=True)

    def _read_clipboard(self) -> Optional[str]:
        try:
            return self._clipboard.paste()
        except Exception as exc:
            logger.debug("Clipboard read failed: %s", exc)
            return None

    def _restore(self, original: Optional[str]) -> None:
        if original is None:
            return
        try:
            self._clipboard.copy(original)
        except Exception as exc:
            logger.warning("Failed to restore clipboard content: %s", exc)
