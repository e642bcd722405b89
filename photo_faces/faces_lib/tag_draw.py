"""Pointer gesture state machine for drawing a single face tag box.

Two gesture vocabularies produce a box:

* press, drag, release: the box spans the press point and the release point.
* click, click: a press/release without movement anchors the box and the
  next press completes it.

Which one the user is doing is decided only by movement while the pointer
is held. Timing never decides a commit; ``start_timestamp`` is kept for the
UI. All coordinates leaving this module are percentages of the displayed
image.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .geometry import DisplayedImage, Point, Rect

# percentage points
MOVE_THRESHOLD = 2.0
MIN_DRAG_SIZE = 2.0
MIN_CLICK_SIZE = 1.0

logger = logging.getLogger(__name__)


class DrawState(str, Enum):
    IDLE = "idle"
    ANCHORED = "anchored"
    DRAGGING = "dragging"
    AWAITING_SECOND_CLICK = "awaiting_second_click"


class DrawMode(str, Enum):
    UNDETERMINED = "undetermined"
    CLICK_CLICK = "click-click"
    DRAG = "drag"


@dataclass(frozen=True)
class PointerEvent:
    """A pointer event in client pixels.

    ``on_control`` marks events whose target is a button or other viewer
    control rather than the photo itself.
    """

    client_x: float
    client_y: float
    on_control: bool = False


@dataclass
class DrawSession:
    anchor: Point
    current_rect: Rect
    start_timestamp: float
    mode: DrawMode = DrawMode.UNDETERMINED
    has_moved: bool = False


class TagDrawController:
    """Turns raw pointer events into at most one committed box per session."""

    def __init__(
        self,
        *,
        viewport: Optional[DisplayedImage] = None,
        on_commit: Optional[Callable[[Rect], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        # The default viewport maps client coordinates 1:1 onto percentages.
        self.viewport = viewport or DisplayedImage(left=0.0, top=0.0, width=100.0, height=100.0)
        self.on_commit = on_commit
        self._clock = clock
        self._tagging_mode = False
        self._state = DrawState.IDLE
        self._session: Optional[DrawSession] = None

    @property
    def tagging_mode(self) -> bool:
        return self._tagging_mode

    @property
    def state(self) -> DrawState:
        return self._state

    @property
    def session(self) -> Optional[DrawSession]:
        return self._session

    @property
    def preview(self) -> Optional[Rect]:
        """Rectangle to render while a session is open."""
        return self._session.current_rect if self._session else None

    def set_viewport(self, viewport: DisplayedImage) -> None:
        self.viewport = viewport

    def set_tagging_mode(self, enabled: bool) -> None:
        self._tagging_mode = bool(enabled)
        if not self._tagging_mode:
            self.reset()

    def toggle_tagging_mode(self) -> bool:
        self.set_tagging_mode(not self._tagging_mode)
        return self._tagging_mode

    def reset(self) -> None:
        """Discard any session in progress."""
        if self._session is not None:
            logger.debug("Discarding draw session in state %s", self._state.value)
        self._session = None
        self._state = DrawState.IDLE

    def pointer_down(self, event: PointerEvent) -> Optional[Rect]:
        if not self._tagging_mode or event.on_control:
            return None
        point = self.viewport.to_percent(event.client_x, event.client_y)
        if self._state is DrawState.IDLE:
            self._session = DrawSession(
                anchor=point,
                current_rect=Rect(x=point.x, y=point.y, width=0.0, height=0.0),
                start_timestamp=self._clock(),
            )
            self._state = DrawState.ANCHORED
            logger.debug("Anchored tag at (%.2f, %.2f)", point.x, point.y)
            return None
        if self._state is DrawState.AWAITING_SECOND_CLICK:
            rect = Rect.from_corners(self._session.anchor, point)
            self._session.current_rect = rect
            if rect.width >= MIN_CLICK_SIZE and rect.height >= MIN_CLICK_SIZE:
                return self._commit(rect)
            logger.debug("Second click too close to anchor (%.2f x %.2f); still waiting", rect.width, rect.height)
        return None

    def pointer_move(self, event: PointerEvent) -> None:
        session = self._session
        if session is None:
            return
        point = self.viewport.to_percent(event.client_x, event.client_y)
        session.current_rect = Rect.from_corners(session.anchor, point)
        if self._state is not DrawState.ANCHORED:
            return
        dx = abs(point.x - session.anchor.x)
        dy = abs(point.y - session.anchor.y)
        if dx >= MOVE_THRESHOLD or dy >= MOVE_THRESHOLD:
            session.has_moved = True
            session.mode = DrawMode.DRAG
            self._state = DrawState.DRAGGING

    def pointer_up(self, event: PointerEvent) -> Optional[Rect]:
        session = self._session
        if session is None:
            return None
        if self._state is DrawState.DRAGGING:
            point = self.viewport.to_percent(event.client_x, event.client_y)
            rect = Rect.from_corners(session.anchor, point)
            if rect.width > MIN_DRAG_SIZE and rect.height > MIN_DRAG_SIZE:
                return self._commit(rect)
            logger.debug("Dragged box too small (%.2f x %.2f); abandoned", rect.width, rect.height)
            self.reset()
            return None
        if self._state is DrawState.ANCHORED:
            session.mode = DrawMode.CLICK_CLICK
            self._state = DrawState.AWAITING_SECOND_CLICK
            logger.debug("Release without drag; waiting for second click")
        return None

    def _commit(self, rect: Rect) -> Rect:
        self._session = None
        self._state = DrawState.IDLE
        logger.debug("Committed tag box %s", rect)
        if self.on_commit is not None:
            self.on_commit(rect)
        return rect
