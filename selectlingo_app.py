"""Desktop shell for SelectLingo: translate the selected text with a global shortcut."""

from __future__ import annotations

import argparse
import asyncio
import concurrent.futures
import contextlib
import logging
import queue
import sys
import tempfile
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import IO, Callable, List, Optional, Sequence

try:  # pragma: no cover - executed during module import
    import pyperclip  # type: ignore
except ImportError:  # pragma: no cover - copy button is disabled without it
    pyperclip = None  # type: ignore

try:
    import tkinter as tk
    from tkinter import messagebox, scrolledtext, font as tkfont
except ImportError as exc:  # pragma: no cover - tkinter ships with CPython
    raise SystemExit("tkinter is required to display the translation window") from exc

try:  # pragma: no cover - optional dependency for system tray support
    import pystray  # type: ignore
    from pystray import MenuItem  # type: ignore
except Exception:  # pragma: no cover - handled when starting the tray icon
    pystray = None  # type: ignore
    MenuItem = None  # type: ignore

try:  # pragma: no cover - optional dependency for system tray support
    from PIL import Image, ImageDraw  # type: ignore
except ImportError:  # pragma: no cover - handled when starting the tray icon
    Image = None  # type: ignore
    ImageDraw = None  # type: ignore

from hotkey_manager import ShortcutError, ShortcutManager, validate_shortcut
from language_detect import detect_language
from selection_capture import ClipboardSelectionSource
from settings_store import SETTINGS_FILE, AppSettings, SettingsError, SettingsStore
from translation_flow import (
    FlowError,
    FlowErrorKind,
    FlowSnapshot,
    FlowStatus,
    SelectionAcquirer,
    TranslationFlow,
    TranslationInvoker,
)
from translation_service import (
    PROVIDER_NAMES,
    OllamaClient,
    ProviderAvailable,
    TranslationError,
    TranslationProvider,
    create_provider,
    supports_writing_tools,
)
from window_placement import CursorOrigin, DisplayInfo, Point, Size, WindowPlacer


LOG_FILE_NAME = "selectlingo.log"
LOG_MAX_BYTES = 2_097_152
LOG_BACKUP_COUNT = 3

POPUP_SIZE = (440, 480)
WINDOW_POLL_MS = 50

APPLICATION_SERVICES = "/System/Library/Frameworks/ApplicationServices.framework/ApplicationServices"
PERMISSION_DENIED_MESSAGE = (
    "Accessibility permission is required to read the selection. Allow SelectLingo "
    "in System Settings > Privacy & Security > Accessibility, then restart it."
)


def configure_logging(debug: bool = False, log_dir: Path = SETTINGS_FILE.parent) -> logging.Logger:
    logger = logging.getLogger("selectlingo")
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    if logger.handlers:
        return logger

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_dir / LOG_FILE_NAME,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError:
        handler = None
    if handler is not None:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)
    return logger


class SingleInstanceError(RuntimeError):
    """Raised when another instance of the application is already running."""


class SingleInstanceGuard:
    """Prevent a second copy of the app from registering the same shortcut."""

    def __init__(self, name: str) -> None:
        self._lock_path = Path(tempfile.gettempdir()) / f"{name}.lock"
        self._lock_file: Optional[IO[str]] = None

    def acquire(self) -> None:
        if self._lock_file is not None:
            return
        self._lock_file = open(self._lock_path, "a+")
        try:
            _set_file_lock(self._lock_file, exclusive=True)
        except OSError as exc:
            self._lock_file.close()
            self._lock_file = None
            raise SingleInstanceError("Another instance is already running") from exc

    def release(self) -> None:
        if self._lock_file is None:
            return
        with contextlib.suppress(OSError):
            _set_file_lock(self._lock_file, exclusive=False)
        self._lock_file.close()
        self._lock_file = None
        with contextlib.suppress(OSError):
            self._lock_path.unlink()

    def __enter__(self) -> "SingleInstanceGuard":
        self.acquire()
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.release()


def _set_file_lock(handle: IO[str], *, exclusive: bool) -> None:
    if sys.platform == "win32":  # pragma: no cover - platform specific
        import msvcrt  # type: ignore

        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK if exclusive else msvcrt.LK_UNLCK, 1)
    else:  # pragma: no cover - exercised on non-Windows platforms
        import fcntl  # type: ignore

        fcntl.flock(handle.fileno(), (fcntl.LOCK_EX | fcntl.LOCK_NB) if exclusive else fcntl.LOCK_UN)


def describe_snapshot(snapshot: FlowSnapshot) -> str:
    """Return the status line shown above the translation."""

    if snapshot.status is FlowStatus.ACQUIRING_SELECTION:
        return "Reading selection..."
    if snapshot.status is FlowStatus.TRANSLATING:
        return "Translating..."
    if snapshot.status is FlowStatus.COMPLETED:
        if snapshot.source_lang is None or snapshot.target_lang is None:
            return f"({snapshot.duration_ms} ms)"
        source, target = snapshot.source_lang, snapshot.target_lang
        return f"{source.display_name} → {target.display_name}  ({snapshot.duration_ms} ms)"
    if snapshot.status is FlowStatus.ERROR and snapshot.error is not None:
        return snapshot.error.message
    return ""


SUMMARY = "Summary"
REPLY = "Reply"

class ResultWindow:
    """Tk popup that renders flow snapshots.

    Tk lives on its own thread. Every interaction is queued as a callable and
    executed there by a polling ``after`` loop, which also makes the window
    usable as the asynchronous surface :class:`WindowPlacer` drives.
    """

    def __init__(
        self,
        *,
        on_close: Optional[Callable[[], None]] = None,
        on_summarize: Optional[Callable[[], object]] = None,
        on_reply: Optional[Callable[[], object]] = None,
        clipboard_module=pyperclip,
    ) -> None:
        self._on_close = on_close
        self._on_summarize = on_summarize
        self._on_reply = on_reply
        self._clipboard = clipboard_module
        self._commands: "queue.Queue[tuple[Callable[[tk.Tk], object], concurrent.futures.Future]]" = queue.Queue()
        self._ready = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._window: Optional[tk.Tk] = None
        self._status_label: Optional[tk.Label] = None
        self._original_box: Optional[scrolledtext.ScrolledText] = None
        self._translated_box: Optional[scrolledtext.ScrolledText] = None
        self._writing_label: Optional[tk.Label] = None
        self._writing_box: Optional[scrolledtext.ScrolledText] = None
        self._action_buttons: List[tk.Button] = []
        self._translated_text = ""

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._ready.clear()
        self._thread = threading.Thread(target=self._run_window, name="ResultWindow", daemon=True)
        self._thread.start()
        if not self._ready.wait(timeout=10):
            raise RuntimeError("Result window failed to initialize within timeout")

    def stop(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            self.call(lambda window: window.quit())
            self._thread.join(timeout=2)
        self._thread = None

    def call(self, func: Callable[[tk.Tk], object]) -> concurrent.futures.Future:
        """Run ``func(window)`` on the Tk thread and return a future for its result."""

        self.start()
        future: concurrent.futures.Future = concurrent.futures.Future()
        self._commands.put((func, future))
        return future

    async def run(self, func: Callable[[tk.Tk], object]) -> object:
        return await asyncio.wrap_future(self.call(func))

    # ResultSurface ----------------------------------------------------

    async def outer_size(self) -> Size:
        return await self.run(self._measure)  # type: ignore[return-value]

    async def set_position(self, x: float, y: float) -> None:
        await self.run(lambda window: window.geometry(f"+{int(x)}+{int(y)}"))

    async def set_always_on_top(self, enabled: bool) -> None:
        await self.run(lambda window: window.attributes("-topmost", enabled))

    async def set_focus(self) -> None:
        await self.run(self._bring_to_front)

    # Rendering --------------------------------------------------------

    def render(self, snapshot: FlowSnapshot) -> None:
        self.call(lambda window: self._apply_snapshot(window, snapshot))

    def reveal(self) -> None:
        """Show the window where it last was, without repositioning it."""

        self.call(self._bring_to_front)

    def show_writing_result(self, title: str, text: str) -> None:
        """Show a summary or drafted reply below the translation."""

        self.call(lambda window: self._apply_writing_result(title, text))

    @staticmethod
    def _measure(window: tk.Tk) -> Size:
        window.update_idletasks()
        # Withdrawn windows report 1x1 until they are first mapped.
        width = max(window.winfo_width(), POPUP_SIZE[0])
        height = max(window.winfo_height(), POPUP_SIZE[1])
        return width, height

    @staticmethod
    def _bring_to_front(window: tk.Tk) -> None:
        window.deiconify()
        window.lift()
        window.focus_force()

    def _apply_snapshot(self, window: tk.Tk, snapshot: FlowSnapshot) -> None:
        if snapshot.status is FlowStatus.IDLE:
            window.withdraw()
        if self._status_label is not None:
            self._status_label.configure(text=describe_snapshot(snapshot))
        self._translated_text = snapshot.translated_text or ""
        self._set_text(self._original_box, snapshot.original_text)
        self._set_text(self._translated_box, self._translated_text)
        self._apply_writing_result("", "")
        state = tk.NORMAL if snapshot.status is FlowStatus.COMPLETED else tk.DISABLED
        for button in self._action_buttons:
            button.configure(state=state)

    def _apply_writing_result(self, title: str, text: str) -> None:
        if self._writing_label is not None:
            self._writing_label.configure(text=title)
        self._set_text(self._writing_box, text)

    @staticmethod
    def _set_text(box: Optional[scrolledtext.ScrolledText], text: str) -> None:
        if box is None:
            return
        box.configure(state=tk.NORMAL)
        box.delete("1.0", tk.END)
        box.insert(tk.END, text)
        box.configure(state=tk.DISABLED)

    def _copy_translation(self) -> None:
        if self._clipboard is None or not self._translated_text:
            return
        try:
            self._clipboard.copy(self._translated_text)
        except Exception as exc:
            logging.getLogger("selectlingo.window").warning("Failed to copy translation: %s", exc)

    @staticmethod
    def _action(callback: Optional[Callable[[], object]]) -> Callable[[], None]:
        def invoke() -> None:
            if callback is not None:
                callback()

        return invoke

    def _close(self) -> None:
        if self._window is not None:
            self._window.withdraw()
        if self._on_close is not None:
            self._on_close()

    def _run_window(self) -> None:
        window = tk.Tk()
        self._window = window
        window.title("SelectLingo")
        window.geometry(f"{POPUP_SIZE[0]}x{POPUP_SIZE[1]}")
        window.withdraw()

        base_family = tkfont.nametofont("TkDefaultFont").actual("family")
        label_font = tkfont.Font(family=base_family, size=10, weight="bold")
        text_font = tkfont.Font(family=base_family, size=12)

        status_label = tk.Label(window, anchor="w", font=label_font, fg="#5f6368")
        status_label.pack(fill=tk.X, padx=10, pady=(10, 4))
        self._status_label = status_label

        content_pane = tk.PanedWindow(window, orient=tk.VERTICAL, sashwidth=6)
        content_pane.pack(fill=tk.BOTH, expand=True, padx=10)

        boxes = []
        labels = []
        for title in ("Original", "Translated", ""):
            frame = tk.Frame(content_pane)
            content_pane.add(frame, minsize=60)
            label = tk.Label(frame, text=title, font=label_font)
            label.pack(anchor="w", pady=(0, 4))
            labels.append(label)
            box = scrolledtext.ScrolledText(frame, wrap=tk.WORD, height=6)
            box.configure(state=tk.DISABLED, font=text_font)
            box.pack(fill=tk.BOTH, expand=True)
            boxes.append(box)
        self._original_box, self._translated_box, self._writing_box = boxes
        self._writing_label = labels[-1]

        buttons = tk.Frame(window)
        buttons.pack(fill=tk.X, padx=10, pady=10)
        tk.Button(buttons, text="Close", command=self._close).pack(side=tk.RIGHT)
        tk.Button(buttons, text="Copy", command=self._copy_translation).pack(side=tk.RIGHT, padx=(0, 8))
        self._action_buttons = []
        for text, callback in (("Summarize", self._on_summarize), ("Reply", self._on_reply)):
            button = tk.Button(buttons, text=text, state=tk.DISABLED, command=self._action(callback))
            button.pack(side=tk.LEFT, padx=(0, 8))
            self._action_buttons.append(button)

        def handle_escape(event: tk.Event) -> str:
            self._close()
            return "break"

        window.protocol("WM_DELETE_WINDOW", self._close)
        window.bind("<Escape>", handle_escape)

        def drain() -> None:
            while True:
                try:
                    func, future = self._commands.get_nowait()
                except queue.Empty:
                    break
                if not future.set_running_or_notify_cancel():
                    continue
                try:
                    future.set_result(func(window))
                except Exception as exc:
                    future.set_exception(exc)
            window.after(WINDOW_POLL_MS, drain)

        self._ready.set()
        drain()
        window.mainloop()
        window.destroy()
        self._window = None
        self._status_label = None
        self._original_box = None
        self._translated_box = None
        self._writing_label = None
        self._writing_box = None
        self._action_buttons = []


def _win32_work_areas() -> List[DisplayInfo]:  # pragma: no cover - Windows only
    """Return the work area of every monitor through the Win32 API."""

    import ctypes
    from ctypes import wintypes

    user32 = ctypes.windll.user32  # type: ignore[attr-defined]

    class MONITORINFO(ctypes.Structure):
        _fields_ = [
            ("cbSize", wintypes.DWORD),
            ("rcMonitor", wintypes.RECT),
            ("rcWork", wintypes.RECT),
            ("dwFlags", wintypes.DWORD),
        ]

    areas: List[DisplayInfo] = []
    enum_proc = ctypes.WINFUNCTYPE(
        wintypes.BOOL,
        wintypes.HMONITOR,
        wintypes.HDC,
        ctypes.POINTER(wintypes.RECT),
        wintypes.LPARAM,
    )

    def collect(monitor, _hdc, _rect, _data) -> bool:
        info = MONITORINFO()
        info.cbSize = ctypes.sizeof(MONITORINFO)
        if user32.GetMonitorInfoW(monitor, ctypes.byref(info)):
            work = info.rcWork
            areas.append(
                DisplayInfo(
                    origin_physical=(work.left, work.top),
                    size_physical=(work.right - work.left, work.bottom - work.top),
                )
            )
        return True

    user32.EnumDisplayMonitors(None, None, enum_proc(collect), 0)
    return areas


def accessibility_granted(platform: str = sys.platform) -> bool:
    """Return whether the process may send keystrokes and read other apps' selection.

    Only macOS gates this behind a permission; other platforms always allow it.
    """

    if platform != "darwin":
        return True

    import ctypes

    try:
        services = ctypes.cdll.LoadLibrary(APPLICATION_SERVICES)
    except OSError as exc:
        logging.getLogger("selectlingo.app").warning("Could not check accessibility permission: %s", exc)
        return True
    services.AXIsProcessTrusted.restype = ctypes.c_bool
    return bool(services.AXIsProcessTrusted())


class TkDisplayEnvironment:
    """Cursor and display geometry as seen by Tk.

    Tk positions windows in its own pixel space, so displays are reported
    with a scale factor of 1.
    """

    def __init__(self, window: ResultWindow, *, cursor_origin: CursorOrigin = CursorOrigin.TOP_LEFT) -> None:
        self._window = window
        self.cursor_origin = cursor_origin

    async def cursor_position(self) -> Point:
        return await self._window.run(  # type: ignore[return-value]
            lambda window: (window.winfo_pointerx(), window.winfo_pointery())
        )

    async def displays(self) -> Sequence[DisplayInfo]:
        if sys.platform == "win32":
            areas = await asyncio.to_thread(_win32_work_areas)
            if areas:
                return areas
        return await self._window.run(  # type: ignore[return-value]
            lambda window: [
                DisplayInfo(
                    origin_physical=(0, 0),
                    size_physical=(window.winfo_screenwidth(), window.winfo_screenheight()),
                )
            ]
        )


class LoopShortcutSource:
    """Deliver shortcut presses from the keyboard thread onto an asyncio loop."""

    def __init__(self, manager: ShortcutManager, loop: asyncio.AbstractEventLoop) -> None:
        self._manager = manager
        self._loop = loop

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self._manager.subscribe(lambda: self._loop.call_soon_threadsafe(callback))


class SystemTrayController:
    """Tray icon with Translate, a shortcut on/off toggle and Exit."""

    def __init__(self, app: "SelectLingoApp") -> None:
        self._app = app
        self._icon: Optional["pystray.Icon"] = None

    @staticmethod
    def _is_supported() -> bool:
        return pystray is not None and MenuItem is not None and Image is not None and ImageDraw is not None

    def start(self) -> None:
        if not self._is_supported():
            print("System tray icon is unavailable because required dependencies are missing.")
            return

        assert pystray is not None  # noqa: S101 - guarded by _is_supported
        menu = pystray.Menu(
            MenuItem("Translate selection", self._on_translate, default=True),
            MenuItem(
                "Shortcut enabled",
                self._on_toggle_shortcut,
                checked=lambda _item: self._app.shortcut_enabled,
            ),
            MenuItem("Exit", self._on_exit),
        )
        self._icon = pystray.Icon("selectlingo", self._create_icon_image(), "SelectLingo", menu=menu)
        self._icon.run_detached()

    def stop(self) -> None:
        if self._icon is not None:
            self._icon.stop()
            self._icon = None

    def _on_translate(self, icon: "pystray.Icon", _: MenuItem) -> None:
        self._app.translate_selection()

    def _on_toggle_shortcut(self, icon: "pystray.Icon", _: MenuItem) -> None:
        self._app.set_shortcut_enabled(not self._app.shortcut_enabled)
        if hasattr(icon, "update_menu"):
            icon.update_menu()

    def _on_exit(self, icon: "pystray.Icon", _: MenuItem) -> None:
        self._app.stop()
        icon.stop()

    @staticmethod
    def _create_icon_image() -> "Image.Image":
        assert Image is not None and ImageDraw is not None  # noqa: S101 - guarded by _is_supported
        size = 64
        image = Image.new("RGBA", (size, size), (0, 0, 0, 0))
        draw = ImageDraw.Draw(image)
        draw.rounded_rectangle((6, 6, size - 6, size - 6), radius=12, fill=(26, 115, 232, 255))
        draw.polygon([(20, 46), (32, 16), (44, 46)], outline=(255, 255, 255, 255), width=5)
        draw.line((25, 36, 39, 36), fill=(255, 255, 255, 255), width=5)
        return image


class SelectLingoApp:
    """Wire the shortcut, the clipboard, the popup and the translation flow together."""

    def __init__(
        self,
        settings_store: SettingsStore,
        *,
        shortcut_manager: Optional[ShortcutManager] = None,
        selection_source=None,
        window: Optional[ResultWindow] = None,
        provider_factory: Callable[[AppSettings], TranslationProvider] = create_provider,
        permission_checker: Callable[[], bool] = accessibility_granted,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._store = settings_store
        self._permission_checker = permission_checker
        self._logger = logger or logging.getLogger("selectlingo.app")
        self._provider_factory = provider_factory
        self._stop_event = threading.Event()
        self._loop = asyncio.new_event_loop()
        self._loop_thread: Optional[threading.Thread] = None
        self._tray_controller: Optional[SystemTrayController] = None
        self._unbind_shortcut: Optional[Callable[[], None]] = None

        settings = settings_store.snapshot()
        self._window = window or ResultWindow(
            on_close=self.dismiss,
            on_summarize=self.summarize_translation,
            on_reply=self.draft_reply,
        )
        environment = TkDisplayEnvironment(self._window, cursor_origin=CursorOrigin(settings.cursor_origin))
        invoker = TranslationInvoker(settings_store.snapshot, provider_factory=provider_factory)
        self._shortcuts = shortcut_manager or ShortcutManager()
        self.flow = TranslationFlow(
            SelectionAcquirer(selection_source or ClipboardSelectionSource()),
            invoker.translate,
            WindowPlacer(self._window, environment),
            on_error=self._on_flow_error,
        )
        self.flow.subscribe(self._window.render)

    @property
    def shortcut_enabled(self) -> bool:
        return self.flow.shortcut_enabled

    def start(self, *, tray_controller: Optional[SystemTrayController] = None) -> None:
        """Run until :meth:`stop` is called."""

        self._tray_controller = tray_controller
        self._ensure_loop_thread()
        self._unbind_shortcut = self.flow.bind_shortcut(LoopShortcutSource(self._shortcuts, self._loop))
        shortcut = self._store.snapshot().shortcut
        try:
            self._shortcuts.register(shortcut)
        except ShortcutError as exc:
            self._logger.error("Failed to register shortcut %s: %s", shortcut, exc)
        if not self._permission_checker():
            self._logger.warning("Accessibility permission has not been granted")
            self._loop.call_soon_threadsafe(
                self.flow.report_error, FlowErrorKind.PERMISSION_DENIED, PERMISSION_DENIED_MESSAGE
            )
        asyncio.run_coroutine_threadsafe(self._warm_up_provider(), self._loop)

        print(f"SelectLingo is running. Select text and press {shortcut} to translate.")
        if self._tray_controller is not None:
            self._tray_controller.start()

        try:
            self._stop_event.wait()
        except KeyboardInterrupt:  # pragma: no cover - manual console interruption
            self.stop()
        finally:
            self._shutdown()

    def stop(self) -> None:
        self._stop_event.set()

    def translate_selection(self) -> concurrent.futures.Future:
        """Start a flow manually; this path ignores the shortcut toggle."""

        self._ensure_loop_thread()
        return asyncio.run_coroutine_threadsafe(self.flow.start_flow(), self._loop)

    def summarize_translation(self) -> concurrent.futures.Future:
        """Summarise the current translation; the future resolves to the summary or ``None``."""

        self._ensure_loop_thread()
        return asyncio.run_coroutine_threadsafe(self._run_writing_tool(SUMMARY), self._loop)

    def draft_reply(self) -> concurrent.futures.Future:
        """Draft a reply to the current translation, written in its target language."""

        self._ensure_loop_thread()
        return asyncio.run_coroutine_threadsafe(self._run_writing_tool(REPLY), self._loop)

    def set_shortcut_enabled(self, enabled: bool) -> None:
        self._loop.call_soon_threadsafe(self.flow.set_shortcut_enabled, enabled)

    def dismiss(self) -> None:
        self._loop.call_soon_threadsafe(self.flow.reset)

    def _on_flow_error(self, error: FlowError) -> None:
        # Errors before placement (no selection) would otherwise stay hidden.
        self._window.reveal()

    async def _run_writing_tool(self, kind: str) -> Optional[str]:
        snapshot = self.flow.snapshot
        if (
            snapshot.status is not FlowStatus.COMPLETED
            or not snapshot.translated_text
            or snapshot.source_lang is None
            or snapshot.target_lang is None
        ):
            return None

        settings = self._store.snapshot()
        self._window.show_writing_result(kind, "Working...")
        try:
            provider = self._provider_factory(settings)
            if not supports_writing_tools(provider):
                raise TranslationError(f"{settings.provider} does not support summaries and replies")
            if kind == SUMMARY:
                summary = await asyncio.to_thread(
                    provider.summarize, snapshot.translated_text, snapshot.target_lang
                )
                output = summary.summary
            else:
                reply = await asyncio.to_thread(
                    provider.generate_reply,
                    snapshot.translated_text,
                    snapshot.target_lang,
                    snapshot.source_lang,
                )
                output = reply.reply
        except TranslationError as exc:
            self._logger.warning("%s failed: %s", kind, exc)
            if self.flow.snapshot is snapshot:
                self._window.show_writing_result(kind, f"{kind} failed: {exc}")
            return None

        if self.flow.snapshot is not snapshot:
            self._logger.debug("Discarding %s for a translation that is no longer shown", kind.lower())
            return None
        self._window.show_writing_result(kind, output)
        return output

    def _ensure_loop_thread(self) -> None:
        if self._loop_thread is not None and self._loop_thread.is_alive():
            return
        self._loop_thread = threading.Thread(target=self._loop.run_forever, name="FlowLoop", daemon=True)
        self._loop_thread.start()

    async def _warm_up_provider(self) -> None:
        settings = self._store.snapshot()
        try:
            provider = self._provider_factory(settings)
            status = await asyncio.to_thread(provider.check_status)
        except Exception as exc:
            self._logger.warning("Could not check translation provider: %s", exc)
            return
        if not isinstance(status, ProviderAvailable):
            self._logger.warning("Translation provider %s unavailable: %s", settings.provider, status.reason)
            return
        self._logger.info("Translation provider %s is available", settings.provider)
        if isinstance(provider, OllamaClient):
            try:
                await asyncio.to_thread(provider.preload)
            except TranslationError as exc:
                self._logger.warning("Model preload failed: %s", exc)

    def _shutdown(self) -> None:
        if self._tray_controller is not None:
            self._tray_controller.stop()
        if self._unbind_shortcut is not None:
            self._unbind_shortcut()
            self._unbind_shortcut = None
        try:
            self._shortcuts.unregister()
        except ShortcutError as exc:
            self._logger.warning("%s", exc)
        self._window.stop()
        if self._loop_thread is not None and self._loop_thread.is_alive():
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._loop_thread.join(timeout=2)
        self._loop_thread = None


def translate_once(text: str, store: SettingsStore, *, out: IO[str] = sys.stdout) -> int:
    """Translate ``text`` without any UI and print the result."""

    invoker = TranslationInvoker(store.snapshot)
    try:
        result = asyncio.run(invoker.translate(text, detect_language(text)))
    except TranslationError as exc:
        print(f"Error during translation: {exc}", file=sys.stderr)
        return 1
    print(result.translated_text, file=out)
    return 0


def check_provider(store: SettingsStore, *, out: IO[str] = sys.stdout) -> int:
    settings = store.snapshot()
    try:
        status = create_provider(settings).check_status()
    except TranslationError as exc:
        print(f"{settings.provider}: {exc}", file=out)
        return 1
    if isinstance(status, ProviderAvailable):
        print(f"{settings.provider}: available", file=out)
        return 0
    print(f"{settings.provider}: unavailable ({status.reason})", file=out)
    return 1


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Translate the selected text with a global shortcut.")
    parser.add_argument("--provider", choices=PROVIDER_NAMES, help="Translation provider to use and remember.")
    parser.add_argument("--shortcut", help="Global shortcut to use and remember, e.g. CommandOrControl+J.")
    parser.add_argument("--translate", metavar="TEXT", help="Translate TEXT once, print it and exit.")
    parser.add_argument("--check", action="store_true", help="Check the translation provider and exit.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def apply_overrides(store: SettingsStore, args: argparse.Namespace) -> AppSettings:
    changes = {}
    if args.provider:
        changes["provider"] = args.provider
    if args.shortcut:
        validate_shortcut(args.shortcut)
        changes["shortcut"] = args.shortcut
    if not changes:
        return store.snapshot()
    return store.update(**changes)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(debug=args.debug)
    store = SettingsStore()
    store.load()
    try:
        apply_overrides(store, args)
    except (ShortcutError, SettingsError) as exc:
        print(f"Invalid settings: {exc}", file=sys.stderr)
        return 2

    if args.translate is not None:
        return translate_once(args.translate, store)
    if args.check:
        return check_provider(store)

    try:
        with SingleInstanceGuard("selectlingo"):
            app = SelectLingoApp(store)
            app.start(tray_controller=SystemTrayController(app))
    except SingleInstanceError:
        root = tk.Tk()
        root.withdraw()
        messagebox.showinfo("SelectLingo", "SelectLingo is already running.")
        root.destroy()
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
