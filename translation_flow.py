"""Shortcut-driven translation flow: selection -> placement -> detection -> translation.

:class:`TranslationFlow` owns the only mutable state of a flow, the
:class:`FlowSnapshot` that the popup renders and the re-entrancy guard. All
of its work runs on a single asyncio event loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Protocol, Tuple

from language_detect import DetectionResult, Language, detect_language
from selection_capture import SelectionContent
from settings_store import AppSettings
from translation_service import (
    TranslationError,
    TranslationProvider,
    TranslationRequest,
    TranslationResult,
    create_provider,
)
from window_placement import WindowPlacer

CONFIDENCE_THRESHOLD = 0.5
DEFAULT_DIRECTION = (Language.EN, Language.JA)

logger = logging.getLogger("selectlingo.flow")


class FlowStatus(Enum):
    IDLE = "idle"
    ACQUIRING_SELECTION = "getting-selection"
    TRANSLATING = "translating"
    COMPLETED = "completed"
    ERROR = "error"


class FlowErrorKind(Enum):
    NO_SELECTION = "no-selection"
    TRANSLATION_FAILED = "translation-failed"
    PERMISSION_DENIED = "permission-denied"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class FlowError:
    kind: FlowErrorKind
    message: str


@dataclass(frozen=True)
class FlowSnapshot:
    """Observable state of a :class:`TranslationFlow`."""

    status: FlowStatus = FlowStatus.IDLE
    original_text: str = ""
    translated_text: Optional[str] = None
    duration_ms: Optional[int] = None
    source_lang: Optional[Language] = None
    target_lang: Optional[Language] = None
    error: Optional[FlowError] = None


@dataclass(frozen=True)
class CompletedTranslation:
    original: str
    translated: str


class SelectionSource(Protocol):  # pragma: no cover - protocol is for type checking only
    async def get_selected_text(self) -> SelectionContent:
        """Return the currently selected text."""


class ShortcutSource(Protocol):  # pragma: no cover - protocol is for type checking only
    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Call ``callback`` on every shortcut press; return an unsubscribe callable."""


class SelectionAcquirer:
    """Fetch the selection once, folding every failure into "no selection"."""

    def __init__(self, source: SelectionSource, *, logger: logging.Logger = logger) -> None:
        self._source = source
        self._logger = logger

    async def acquire(self) -> Optional[str]:
        try:
            content = await self._source.get_selected_text()
        except Exception as exc:
            self._logger.warning("Failed to get selected text: %s", exc)
            return None
        if not content.success or not content.text.strip():
            return None
        return content.text


def choose_direction(detection: DetectionResult) -> Tuple[Language, Language]:
    """Return ``(source, target)`` for a detection.

    Detections below :data:`CONFIDENCE_THRESHOLD` are ignored in favour of
    :data:`DEFAULT_DIRECTION`.
    """

    if detection.confidence >= CONFIDENCE_THRESHOLD:
        return detection.language, detection.language.opposite
    return DEFAULT_DIRECTION


class TranslationInvoker:
    """Translate text with the provider currently selected in the settings."""

    def __init__(
        self,
        settings_provider: Callable[[], AppSettings],
        *,
        provider_factory: Callable[[AppSettings], TranslationProvider] = create_provider,
        time_provider: Callable[[], float] = time.perf_counter,
        logger: logging.Logger = logger,
    ) -> None:
        self._settings_provider = settings_provider
        self._provider_factory = provider_factory
        self._time_provider = time_provider
        self._logger = logger

    async def translate(self, text: str, detection: DetectionResult) -> TranslationResult:
        """Translate ``text``; raise :class:`TranslationError` on any failure.

        The returned ``duration_ms`` is the wall-clock time of the provider
        call as seen by the caller.
        """

        source_lang, target_lang = choose_direction(detection)
        request = TranslationRequest(text=text, source_lang=source_lang, target_lang=target_lang)

        started = self._time_provider()
        try:
            provider = self._provider_factory(self._settings_provider())
            result = await asyncio.to_thread(provider.translate, request)
        except Exception as exc:
            self._logger.error(
                "Translation %s->%s failed: %s", source_lang.value, target_lang.value, exc
            )
            raise TranslationError(str(exc) or exc.__class__.__name__) from exc

        duration_ms = int((self._time_provider() - started) * 1000)
        return replace(result, duration_ms=duration_ms)


Translator = Callable[[str, DetectionResult], Awaitable[TranslationResult]]
SnapshotListener = Callable[[FlowSnapshot], None]


class TranslationFlow:
    """State machine that turns a shortcut press into a rendered translation.

    ``start_flow`` walks IDLE -> ACQUIRING_SELECTION -> TRANSLATING ->
    COMPLETED, or ends in ERROR. Only one flow runs at a time; calls made
    while a flow is in progress are ignored. ``reset`` returns to IDLE at any
    time without cancelling outstanding external calls. Results arriving
    for a flow that has since been reset or replaced are discarded.
    """

    def __init__(
        self,
        acquirer: SelectionAcquirer,
        translator: Translator,
        placer: Optional[WindowPlacer] = None,
        *,
        detector: Callable[[str], DetectionResult] = detect_language,
        on_complete: Optional[Callable[[CompletedTranslation], None]] = None,
        on_error: Optional[Callable[[FlowError], None]] = None,
        auto_start: bool = True,
        logger: logging.Logger = logger,
    ) -> None:
        self._acquirer = acquirer
        self._translator = translator
        self._placer = placer
        self._detector = detector
        self._on_complete = on_complete
        self._on_error = on_error
        self._auto_start = auto_start
        self._logger = logger

        self._snapshot = FlowSnapshot()
        self._in_progress = False
        self._generation = 0
        self._shortcut_enabled = True
        self._listeners: List[SnapshotListener] = []
        self._background: "set[asyncio.Task]" = set()

    # Observable state -------------------------------------------------

    @property
    def snapshot(self) -> FlowSnapshot:
        return self._snapshot

    @property
    def state(self) -> FlowStatus:
        return self._snapshot.status

    @property
    def original_text(self) -> str:
        return self._snapshot.original_text

    @property
    def translated_text(self) -> Optional[str]:
        return self._snapshot.translated_text

    @property
    def duration_ms(self) -> Optional[int]:
        return self._snapshot.duration_ms

    @property
    def error(self) -> Optional[FlowError]:
        return self._snapshot.error

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Call ``listener`` with every new snapshot; return an unsubscribe callable."""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # Shortcut handling ------------------------------------------------

    @property
    def shortcut_enabled(self) -> bool:
        return self._shortcut_enabled

    def set_shortcut_enabled(self, enabled: bool) -> None:
        self._shortcut_enabled = enabled
        self._logger.info("Shortcut %s", "enabled" if enabled else "disabled")

    def handle_shortcut_triggered(self) -> Optional["asyncio.Task[bool]"]:
        """Start a flow for a shortcut press unless shortcuts are switched off.

        Must be called from the event loop thread.
        """

        if not self._auto_start or not self._shortcut_enabled:
            self._logger.debug("Shortcut press ignored")
            return None
        return self._spawn(self.start_flow())

    def bind_shortcut(self, source: ShortcutSource) -> Callable[[], None]:
        return source.subscribe(self.handle_shortcut_triggered)

    # Transitions ------------------------------------------------------

    async def start_flow(self) -> bool:
        """Run one flow to completion; return ``False`` if one was already running."""

        if self._in_progress:
            self._logger.debug("Flow already in progress; ignoring start request")
            return False
        self._in_progress = True
        self._generation += 1
        generation = self._generation

        try:
            await self._run(generation)
        except Exception as exc:
            self._logger.exception("Unexpected error in translation flow")
            if generation == self._generation:
                self._fail(FlowErrorKind.UNKNOWN, str(exc) or exc.__class__.__name__)
        finally:
            if generation == self._generation:
                self._in_progress = False
        return True

    def reset(self) -> None:
        """Return to IDLE, clearing results, errors and the re-entrancy guard."""

        self._generation += 1
        self._in_progress = False
        self._publish(FlowSnapshot())
        if self._placer is not None:
            self._spawn(self._placer.release())

    def report_error(self, kind: FlowErrorKind, message: str) -> bool:
        """Enter ERROR on behalf of a collaborator, e.g. a failed permission check.

        Ignored while a flow is in progress.
        """

        if self._in_progress:
            return False
        self._fail(kind, message)
        return True

    async def _run(self, generation: int) -> None:
        self._publish(FlowSnapshot(status=FlowStatus.ACQUIRING_SELECTION))

        text = await self._acquirer.acquire()
        if generation != self._generation:
            self._logger.debug("Discarding selection for a stale flow")
            return
        if text is None:
            self._fail(FlowErrorKind.NO_SELECTION, "No text is selected")
            return

        self._publish(replace(self._snapshot, original_text=text))

        if self._placer is not None:
            try:
                await self._placer.place_near_cursor()
            except Exception:
                self._logger.exception("Popup placement failed")
            if generation != self._generation:
                return

        self._publish(replace(self._snapshot, status=FlowStatus.TRANSLATING))

        detection = self._detector(text)
        try:
            result = await self._translator(text, detection)
        except TranslationError as exc:
            if generation != self._generation:
                return
            self._fail(FlowErrorKind.TRANSLATION_FAILED, f"Translation failed: {exc}")
            return
        if generation != self._generation:
            self._logger.debug("Discarding translation for a stale flow")
            return

        self._publish(
            FlowSnapshot(
                status=FlowStatus.COMPLETED,
                original_text=text,
                translated_text=result.translated_text,
                duration_ms=result.duration_ms,
                source_lang=result.source_lang,
                target_lang=result.target_lang,
            )
        )
        self._logger.info(
            "Translated %d chars %s->%s in %d ms",
            len(text),
            result.source_lang.value,
            result.target_lang.value,
            result.duration_ms,
        )
        if self._on_complete is not None:
            self._on_complete(CompletedTranslation(original=text, translated=result.translated_text))

    def _fail(self, kind: FlowErrorKind, message: str) -> None:
        error = FlowError(kind=kind, message=message)
        self._publish(
            FlowSnapshot(
                status=FlowStatus.ERROR,
                original_text=self._snapshot.original_text,
                error=error,
            )
        )
        self._logger.warning("Translation flow error (%s): %s", kind.value, message)
        if self._on_error is not None:
            self._on_error(error)

    def _publish(self, snapshot: FlowSnapshot) -> None:
        self._snapshot = snapshot
        self._logger.debug("Flow state -> %s", snapshot.status.value)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                self._logger.exception("Flow state listener failed")

    def _spawn(self, coro: Awaitable) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._logger.debug("No running event loop; dropping background work")
            coro.close()  # type: ignore[attr-defined]
            return None
        task = loop.create_task(coro)  # type: ignore[arg-type]
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
