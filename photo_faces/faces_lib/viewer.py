"""Fullscreen viewer state: photo navigation, tagging mode, and face suggestions."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Set

from .auto_tag import FacePlan
from .detector import FaceDetector
from .errors import DetectorUnavailableError, FaceTaggingError, InvalidGeometryError
from .face_tags import FaceTag
from .geometry import Rect
from .tag_draw import PointerEvent, TagDrawController
from .tag_lifecycle import TagLifecycleCoordinator


def read_photo_bytes(photo_ref: str) -> bytes:
    return Path(photo_ref).read_bytes()


class FaceTagViewer:
    """Wires one draw controller and one coordinator to an ordered photo list.

    Committed boxes are persisted in background tasks so a new gesture can
    start while an earlier one is still saving.
    """

    def __init__(
        self,
        photos: Sequence[str],
        coordinator: TagLifecycleCoordinator,
        *,
        draw: Optional[TagDrawController] = None,
        detector: Optional[FaceDetector] = None,
        image_loader: Callable[[str], bytes] = read_photo_bytes,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.photos = list(photos)
        self.coordinator = coordinator
        self.draw = draw or TagDrawController()
        self.draw.on_commit = self._on_commit
        self.detector = detector
        self.image_loader = image_loader
        self.logger = logger or logging.getLogger(__name__)
        self.index = 0
        self.is_open = False
        self.suggestions: List[FacePlan] = []
        self._pending: Set[asyncio.Task] = set()

    @property
    def current_photo(self) -> Optional[str]:
        if not self.is_open or not self.photos:
            return None
        return self.photos[self.index]

    @property
    def tags(self) -> List[FaceTag]:
        return self.coordinator.tags

    async def open_photo(self, photo_ref: str) -> bool:
        try:
            index = self.photos.index(photo_ref)
        except ValueError:
            self.logger.warning("Photo not in the current list: %s", photo_ref)
            return False
        self.is_open = True
        await self._show(index)
        return True

    async def next_photo(self) -> None:
        if self.is_open and self.index < len(self.photos) - 1:
            await self._show(self.index + 1)

    async def previous_photo(self) -> None:
        if self.is_open and self.index > 0:
            await self._show(self.index - 1)

    def close(self) -> None:
        self.is_open = False
        self.draw.set_tagging_mode(False)
        self.suggestions = []
        self.coordinator.begin_photo(None)

    def toggle_tagging_mode(self) -> bool:
        if not self.is_open:
            return False
        return self.draw.toggle_tagging_mode()

    async def handle_key(self, key: str) -> bool:
        """Apply a keyboard shortcut; returns False for keys the viewer ignores."""
        if not self.is_open:
            return False
        if key == "ArrowRight":
            await self.next_photo()
        elif key == "ArrowLeft":
            await self.previous_photo()
        elif key in ("t", "T"):
            self.toggle_tagging_mode()
        elif key == "Escape":
            if self.draw.tagging_mode:
                self.draw.set_tagging_mode(False)
            else:
                self.close()
        elif key in ("q", "Q"):
            self.close()
        else:
            return False
        return True

    def pointer_down(self, event: PointerEvent) -> Optional[Rect]:
        return self.draw.pointer_down(event)

    def pointer_move(self, event: PointerEvent) -> None:
        self.draw.pointer_move(event)

    def pointer_up(self, event: PointerEvent) -> Optional[Rect]:
        return self.draw.pointer_up(event)

    async def drain(self) -> None:
        """Wait for every in-flight tag save to settle."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def refresh_suggestions(self) -> List[FacePlan]:
        """Detect and match faces on the current photo.

        Any detection or matching failure leaves the photo without
        suggestions and posts a notice instead of raising.
        """
        photo_ref = self.current_photo
        if photo_ref is None or self.detector is None:
            return []
        loop = asyncio.get_running_loop()
        try:
            image_bytes = await loop.run_in_executor(None, self.image_loader, photo_ref)
            detection = await loop.run_in_executor(None, self.detector.detect, image_bytes)
            identities = await self.coordinator.store.get_identities()
        except DetectorUnavailableError as exc:
            self.coordinator.notify("Face detection is unavailable", exc)
            return []
        except (FaceTaggingError, ValueError, OSError) as exc:
            self.coordinator.notify(f"Could not find faces in {photo_ref}", exc)
            return []
        except Exception as exc:
            self.logger.exception("Unexpected face detection failure for %s", photo_ref)
            self.coordinator.notify(f"Could not find faces in {photo_ref}", exc)
            return []
        if photo_ref != self.current_photo:
            self.logger.debug("Discarding detection for %s", photo_ref)
            return []
        suggestions = await self.coordinator.apply_detection(photo_ref, detection, identities)
        if photo_ref == self.current_photo:
            self.suggestions = suggestions
        return suggestions

    async def _show(self, index: int) -> None:
        self.index = index
        self.draw.set_tagging_mode(False)
        self.suggestions = []
        await self.coordinator.load_tags_for_photo(self.photos[index])

    def _on_commit(self, rect: Rect) -> None:
        photo_ref = self.current_photo
        if photo_ref is None:
            return
        task = asyncio.get_running_loop().create_task(self._persist_commit(photo_ref, rect))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist_commit(self, photo_ref: str, rect: Rect) -> None:
        try:
            await self.coordinator.create_tag(photo_ref, rect)
        except InvalidGeometryError as exc:
            self.coordinator.notify("Face tag box is not valid", exc)
