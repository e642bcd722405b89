"""Keep the displayed photo's face tags in step with the metadata store.

The coordinator owns the working list of tags for the photo currently on
screen. Every mutation is persisted first and applied locally only after the
store confirms it. Results that arrive after the user has moved to another
photo are dropped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set

import numpy as np

from .auto_tag import FaceAction, FacePlan, plan_face_actions
from .descriptors import add_descriptor
from .detector import DetectionResult
from .errors import InvalidGeometryError, PersistenceError, TagNotFoundError
from .face_tags import FaceTag, Identity
from .geometry import Rect, validate_rect
from .matcher import build_roster
from .tag_store import MetadataStore


@dataclass(frozen=True)
class Notice:
    """Non-blocking message for the user (toast/status line)."""

    message: str
    details: Dict[str, object] = field(default_factory=dict)


class TagLifecycleCoordinator:
    def __init__(
        self,
        store: MetadataStore,
        *,
        logger: Optional[logging.Logger] = None,
        on_notice: Optional[Callable[[Notice], None]] = None,
    ) -> None:
        self.store = store
        self.logger = logger or logging.getLogger(__name__)
        self.on_notice = on_notice
        self.notices: List[Notice] = []
        self._photo_ref: Optional[str] = None
        self._generation = 0
        self._mutations = 0
        self._tags: List[FaceTag] = []
        self._removed_ids: Set[int] = set()

    @property
    def current_photo(self) -> Optional[str]:
        return self._photo_ref

    @property
    def tags(self) -> List[FaceTag]:
        return list(self._tags)

    def begin_photo(self, photo_ref: Optional[str]) -> int:
        """Switch to another photo (or to none) and drop the old working list."""
        self._generation += 1
        self._photo_ref = photo_ref
        self._tags = []
        self._removed_ids = set()
        self._mutations = 0
        return self._generation

    async def load_tags_for_photo(self, photo_ref: str) -> List[FaceTag]:
        """Fetch the photo's tags from the store and make them the working list.

        When a local mutation lands while the fetch is in flight the fetched
        rows are merged in instead of replacing the list.
        """
        if photo_ref != self._photo_ref:
            self.begin_photo(photo_ref)
        generation = self._generation
        issued_at = self._mutations
        try:
            loaded = await self.store.get_tags_for_photo(photo_ref)
        except PersistenceError as exc:
            if generation == self._generation:
                self.notify(f"Could not load face tags for {photo_ref}", exc)
            return self.tags
        if generation != self._generation:
            self.logger.debug("Discarding stale tag load for %s", photo_ref)
            return list(loaded)
        if self._mutations == issued_at:
            self._tags = list(loaded)
        else:
            known = {tag.id for tag in self._tags}
            self._tags.extend(tag for tag in loaded if tag.id not in known and tag.id not in self._removed_ids)
            self.logger.debug("Merged tag load for %s with local changes", photo_ref)
        return self.tags

    async def create_tag(
        self,
        photo_ref: str,
        rect: Rect,
        identity_id: Optional[int] = None,
        *,
        identity_name: str = "",
        confidence: float = 1.0,
        is_manual: bool = True,
    ) -> Optional[FaceTag]:
        """Persist a new tag; returns ``None`` if the store rejected it.

        Raises:
            InvalidGeometryError: If ``rect`` cannot be stored. Nothing is sent
                to the store in that case.
        """
        validate_rect(rect)
        try:
            tag_id = await self.store.create_tag(photo_ref, rect, identity_id, confidence, is_manual)
        except PersistenceError as exc:
            if photo_ref == self._photo_ref:
                self.notify("Could not save face tag", exc)
            else:
                self.logger.warning("Face tag for %s was not saved: %s", photo_ref, exc)
            return None
        tag = FaceTag(
            id=tag_id,
            photo_ref=photo_ref,
            box=rect,
            identity_id=identity_id,
            identity_name=identity_name,
            confidence=confidence,
            is_manual=is_manual,
        )
        if photo_ref != self._photo_ref:
            self.logger.debug("Tag %s saved for %s, which is no longer displayed", tag_id, photo_ref)
            return tag
        self._upsert(tag)
        self._mutations += 1
        self.logger.info("Added face tag %s on %s", tag_id, photo_ref)
        return tag

    async def assign_identity(self, tag_id: int, identity_id: Optional[int], name: str) -> bool:
        tag = self._find(tag_id)
        if tag is None:
            self.notify("Face tag is not on the current photo", details={"tag_id": tag_id})
            return False
        photo_ref = self._photo_ref
        try:
            await self.store.update_tag(tag_id, tag.box, identity_id, tag.confidence)
        except PersistenceError as exc:
            if photo_ref == self._photo_ref:
                self.notify("Could not assign person to face tag", exc)
            return False
        if photo_ref != self._photo_ref:
            return True
        current = self._find(tag_id)
        if current is not None:
            self._upsert(current.with_identity(identity_id, name))
            self._mutations += 1
        return True

    async def remove_tag(self, tag_id: int) -> bool:
        photo_ref = self._photo_ref
        try:
            await self.store.delete_tag(tag_id)
        except TagNotFoundError as exc:
            if photo_ref == self._photo_ref:
                self.notify("Face tag was already removed", exc)
            return False
        except PersistenceError as exc:
            if photo_ref == self._photo_ref:
                self.notify("Could not remove face tag", exc)
            return False
        if photo_ref != self._photo_ref:
            return True
        self._tags = [tag for tag in self._tags if tag.id != tag_id]
        self._removed_ids.add(tag_id)
        self._mutations += 1
        return True

    async def apply_detection(
        self,
        photo_ref: str,
        detection: DetectionResult,
        identities: Sequence[Identity],
    ) -> List[FacePlan]:
        """Auto-apply high-confidence matches and return the faces to suggest.

        An identity already tagged on the photo is not tagged again.
        """
        names = {identity.id: identity.name for identity in identities}
        plans = plan_face_actions(detection, build_roster(identities))
        tagged = {tag.identity_id for tag in self._tags if tag.identity_id is not None}
        suggestions: List[FacePlan] = []
        for plan in plans:
            if plan.action is FaceAction.SUGGEST:
                suggestions.append(plan)
                continue
            if plan.action is not FaceAction.AUTO_APPLY or plan.match.identity_id in tagged:
                continue
            try:
                created = await self.create_tag(
                    photo_ref,
                    plan.box,
                    plan.match.identity_id,
                    identity_name=names.get(plan.match.identity_id, ""),
                    confidence=plan.match.confidence,
                    is_manual=False,
                )
            except InvalidGeometryError as exc:
                self.logger.debug("Skipping detected face with unusable box: %s", exc)
                continue
            if created is not None:
                tagged.add(plan.match.identity_id)
        return suggestions

    async def record_reference_sample(self, identity_id: int, descriptor: np.ndarray) -> bool:
        """Add a confirmed descriptor to the identity's rolling sample set."""
        try:
            identities = await self.store.get_identities()
            identity = next((item for item in identities if item.id == identity_id), None)
            if identity is None:
                self.notify("Unknown person", details={"identity_id": identity_id})
                return False
            updated = add_descriptor(identity.descriptors_text, descriptor)
            await self.store.set_reference_descriptors(identity_id, updated)
        except PersistenceError as exc:
            self.notify("Could not update reference faces", exc)
            return False
        return True

    def _find(self, tag_id: int) -> Optional[FaceTag]:
        return next((tag for tag in self._tags if tag.id == tag_id), None)

    def _upsert(self, tag: FaceTag) -> None:
        for index, existing in enumerate(self._tags):
            if existing.id == tag.id:
                self._tags[index] = tag
                return
        self._tags.append(tag)

    def notify(
        self,
        message: str,
        exc: Optional[Exception] = None,
        details: Optional[Dict[str, object]] = None,
    ) -> None:
        payload = dict(details or {})
        if exc is not None:
            payload["error"] = str(exc)
        notice = Notice(message=message, details=payload)
        self.notices.append(notice)
        self.logger.warning("%s: %s", message, payload)
        if self.on_notice is not None:
            self.on_notice(notice)
