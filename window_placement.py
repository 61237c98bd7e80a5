"""Place the translation popup next to the mouse cursor on multi-monitor desktops.

All geometry is done in logical pixels (physical pixels divided by the
display's own scale factor) so displays with different densities compare
correctly.

Cursor coordinates come in one of two conventions:

* ``CursorOrigin.TOP_LEFT``: y grows downwards from the top of the virtual
  desktop, the same convention the popup window uses.
* ``CursorOrigin.BOTTOM_LEFT``: y grows upwards from the bottom of the
  virtual desktop (Cocoa style). These are flipped with :func:`to_top_left`
  before any comparison against display bounds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Sequence, Tuple

Point = Tuple[float, float]
Size = Tuple[float, float]

CURSOR_OFFSET = 20
SCREEN_MARGIN = 10

logger = logging.getLogger("selectlingo.placement")


class CursorOrigin(Enum):
    TOP_LEFT = "top-left"
    BOTTOM_LEFT = "bottom-left"


@dataclass(frozen=True)
class DisplayInfo:
    """A connected display as reported by the OS, in physical pixels."""

    origin_physical: Point
    size_physical: Size
    scale_factor: float = 1.0


@dataclass(frozen=True)
class MonitorDescriptor:
    origin_logical: Point
    size_logical: Size
    scale_factor: float

    @property
    def left(self) -> float:
        return self.origin_logical[0]

    @property
    def top(self) -> float:
        return self.origin_logical[1]

    @property
    def right(self) -> float:
        return self.origin_logical[0] + self.size_logical[0]

    @property
    def bottom(self) -> float:
        return self.origin_logical[1] + self.size_logical[1]

    def contains(self, point: Point) -> bool:
        x, y = point
        return self.left <= x < self.right and self.top <= y < self.bottom


class DisplayEnvironment(Protocol):  # pragma: no cover - protocol is for type checking only
    cursor_origin: CursorOrigin

    async def cursor_position(self) -> Point:
        """Return the global cursor position."""

    async def displays(self) -> Sequence[DisplayInfo]:
        """Return every connected display."""


class ResultSurface(Protocol):  # pragma: no cover - protocol is for type checking only
    async def outer_size(self) -> Size:
        """Return the surface size in logical pixels."""

    async def set_position(self, x: float, y: float) -> None:
        """Move the surface to a logical position."""

    async def set_always_on_top(self, enabled: bool) -> None:
        """Raise the surface above (or release it back among) other windows."""

    async def set_focus(self) -> None:
        """Give the surface keyboard focus."""


def to_logical(display: DisplayInfo) -> MonitorDescriptor:
    scale = display.scale_factor if display.scale_factor > 0 else 1.0
    x, y = display.origin_physical
    width, height = display.size_physical
    return MonitorDescriptor(
        origin_logical=(x / scale, y / scale),
        size_logical=(width / scale, height / scale),
        scale_factor=scale,
    )


def desktop_bounds(monitors: Sequence[MonitorDescriptor]) -> Tuple[float, float]:
    """Return ``(top, height)`` of the union of all logical monitors."""

    top = min(monitor.top for monitor in monitors)
    bottom = max(monitor.bottom for monitor in monitors)
    return top, bottom - top


def to_top_left(y: float, desktop_top: float, desktop_height: float) -> float:
    """Convert a bottom-left based y coordinate to a top-left based one.

    ``y`` is measured upwards from the bottom edge of the virtual desktop,
    whose union spans ``desktop_top`` to ``desktop_top + desktop_height`` in
    top-left coordinates. Applying the function twice with the same bounds
    returns the original value.
    """

    return desktop_top + desktop_height - y


def find_monitor(monitors: Sequence[MonitorDescriptor], point: Point) -> Optional[MonitorDescriptor]:
    """Return the monitor whose logical bounds contain ``point``.

    Falls back to the first monitor when the point lies outside all of them.
    """

    for monitor in monitors:
        if monitor.contains(point):
            return monitor
    return monitors[0] if monitors else None


def compute_position(
    cursor: Point,
    monitor: MonitorDescriptor,
    surface_size: Size,
    *,
    offset: float = CURSOR_OFFSET,
    margin: float = SCREEN_MARGIN,
) -> Point:
    """Return the top-left corner for a surface placed beside ``cursor``.

    The surface is offset to the lower right of the cursor and clamped to
    stay ``margin`` pixels inside ``monitor``. When the surface is larger than
    the monitor its top-left edge wins.
    """

    width, height = surface_size
    target_x = cursor[0] + offset
    target_y = cursor[1] + offset

    min_x = monitor.left + margin
    min_y = monitor.top + margin
    max_x = monitor.right - width - margin
    max_y = monitor.bottom - height - margin

    x = max(min(target_x, max_x), min_x)
    y = max(min(target_y, max_y), min_y)
    return x, y


def normalize_cursor(
    cursor: Point,
    monitors: Sequence[MonitorDescriptor],
    origin: CursorOrigin,
) -> Point:
    if origin is CursorOrigin.TOP_LEFT:
        return cursor
    top, height = desktop_bounds(monitors)
    return cursor[0], to_top_left(cursor[1], top, height)


class WindowPlacer:
    """Move, raise and focus the result surface near the cursor.

    Every step is best effort: failures are logged and never raised, so a
    broken window manager cannot abort a translation.
    """

    def __init__(
        self,
        surface: ResultSurface,
        environment: DisplayEnvironment,
        *,
        offset: float = CURSOR_OFFSET,
        margin: float = SCREEN_MARGIN,
        logger: logging.Logger = logger,
    ) -> None:
        self._surface = surface
        self._environment = environment
        self._offset = offset
        self._margin = margin
        self._logger = logger

    async def place_near_cursor(self) -> Optional[Point]:
        try:
            cursor = await self._environment.cursor_position()
        except Exception as exc:
            self._logger.warning("Cursor position unavailable; skipping placement: %s", exc)
            return None
        return await self.place_near(cursor)

    async def place_near(self, cursor: Point) -> Optional[Point]:
        """Place the surface beside ``cursor``; return the position used, if any."""

        try:
            displays = list(await self._environment.displays())
        except Exception as exc:
            self._logger.warning("Display enumeration failed; skipping placement: %s", exc)
            return None
        if not displays:
            self._logger.debug("No displays reported; skipping placement")
            return None

        monitors = [to_logical(display) for display in displays]
        point = normalize_cursor(cursor, monitors, self._environment.cursor_origin)
        monitor = find_monitor(monitors, point)
        assert monitor is not None  # monitors is non-empty

        try:
            surface_size = await self._surface.outer_size()
        except Exception as exc:
            self._logger.warning("Could not read the popup size; skipping placement: %s", exc)
            return None

        position = compute_position(
            point,
            monitor,
            surface_size,
            offset=self._offset,
            margin=self._margin,
        )

        try:
            await self._surface.set_position(*position)
        except Exception:
            self._logger.exception("Failed to move the popup")
        try:
            await self._surface.set_always_on_top(True)
        except Exception:
            self._logger.exception("Failed to raise the popup")
        try:
            await self._surface.set_focus()
        except Exception:
            self._logger.exception("Failed to focus the popup")
        return position

    async def release(self) -> None:
        """Let the surface fall back among ordinary windows."""

        try:
            await self._surface.set_always_on_top(False)
        except Exception:
            self._logger.exception("Failed to lower the popup")
