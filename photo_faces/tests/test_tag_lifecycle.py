"""Tests for the tag lifecycle coordinator."""
from __future__ import annotations

import asyncio
import json
import unittest
from typing import Dict, List

import numpy as np

from faces_lib.detector import DetectedFace, DetectionResult
from faces_lib.errors import InvalidGeometryError, PersistenceError, TagNotFoundError
from faces_lib.face_tags import FaceTag, Identity
from faces_lib.geometry import PixelBox, Rect
from faces_lib.tag_lifecycle import TagLifecycleCoordinator

BOX = Rect(x=10.0, y=10.0, width=20.0, height=20.0)


class FakeStore:
    """In-memory store whose calls can be held open or made to fail."""

    def __init__(self) -> None:
        self.next_id = 1
        self.rows: Dict[int, FaceTag] = {}
        self.identities: Dict[int, Identity] = {}
        self.fail: Dict[str, Exception] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[str] = []

    async def _enter(self, op: str) -> None:
        self.calls.append(op)
        gate = self.gates.get(op)
        if gate is not None:
            await gate.wait()
        error = self.fail.get(op)
        if error is not None:
            raise error

    async def get_identities(self) -> List[Identity]:
        await self._enter("get_identities")
        return list(self.identities.values())

    async def create_tag(self, photo_ref, box, identity_id, confidence, is_manual) -> int:
        await self._enter("create_tag")
        tag_id = self.next_id
        self.next_id += 1
        self.rows[tag_id] = FaceTag(
            id=tag_id,
            photo_ref=photo_ref,
            box=box,
            identity_id=identity_id,
            confidence=confidence,
            is_manual=is_manual,
        )
        return tag_id

    async def update_tag(self, tag_id, box, identity_id, confidence) -> None:
        await self._enter("update_tag")
        if tag_id not in self.rows:
            raise TagNotFoundError(f"Unknown face tag: {tag_id}")
        self.rows[tag_id] = self.rows[tag_id].with_identity(identity_id, "")

    async def delete_tag(self, tag_id) -> None:
        await self._enter("delete_tag")
        if tag_id not in self.rows:
            raise TagNotFoundError(f"Unknown face tag: {tag_id}")
        del self.rows[tag_id]

    async def get_tags_for_photo(self, photo_ref) -> List[FaceTag]:
        await self._enter("get_tags_for_photo")
        return [tag for tag in self.rows.values() if tag.photo_ref == photo_ref]

    async def set_reference_descriptors(self, identity_id, descriptors_text) -> None:
        await self._enter("set_reference_descriptors")
        identity = self.identities[identity_id]
        self.identities[identity_id] = Identity(id=identity.id, name=identity.name, descriptors_text=descriptors_text)


def _face(x: float, descriptor, confidence: float = 0.95) -> DetectedFace:
    return DetectedFace(
        bounding_box=PixelBox(x=x, y=10.0, width=50.0, height=50.0),
        confidence=confidence,
        descriptor=np.array(descriptor, dtype=np.float64),
    )


class TagLifecycleCoordinatorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = FakeStore()
        self.seen = []
        self.coordinator = TagLifecycleCoordinator(self.store, on_notice=self.seen.append)

    async def _settle(self) -> None:
        for _ in range(5):
            await asyncio.sleep(0)

    async def test_create_tag_appends_after_store_confirms(self) -> None:
        await self.coordinator.load_tags_for_photo("A.jpg")
        tag = await self.coordinator.create_tag("A.jpg", BOX)
        self.assertIsNotNone(tag)
        self.assertEqual([t.id for t in self.coordinator.tags], [tag.id])
        self.assertTrue(tag.is_manual)
        self.assertEqual(tag.confidence, 1.0)
        self.assertIsNone(tag.identity_id)

    async def test_create_tag_failure_leaves_list_unchanged(self) -> None:
        await self.coordinator.load_tags_for_photo("A.jpg")
        self.store.fail["create_tag"] = PersistenceError("disk full")
        self.assertIsNone(await self.coordinator.create_tag("A.jpg", BOX))
        self.assertEqual(self.coordinator.tags, [])
        self.assertEqual(len(self.seen), 1)
        self.assertEqual(self.seen[0].details["error"], "disk full")

    async def test_create_tag_rejects_invalid_rect_without_store_call(self) -> None:
        await self.coordinator.load_tags_for_photo("A.jpg")
        with self.assertRaises(InvalidGeometryError):
            await self.coordinator.create_tag("A.jpg", Rect(x=95.0, y=0.0, width=10.0, height=10.0))
        self.assertNotIn("create_tag", self.store.calls)

    async def test_no_local_change_while_create_is_pending(self) -> None:
        await self.coordinator.load_tags_for_photo("A.jpg")
        self.store.gates["create_tag"] = asyncio.Event()
        pending = asyncio.ensure_future(self.coordinator.create_tag("A.jpg", BOX))
        await self._settle()
        self.assertEqual(self.coordinator.tags, [])
        self.store.gates["create_tag"].set()
        tag = await pending
        self.assertEqual([t.id for t in self.coordinator.tags], [tag.id])

    async def test_create_for_previous_photo_is_not_shown(self) -> None:
        await self.coordinator.load_tags_for_photo("A.jpg")
        self.store.gates["create_tag"] = asyncio.Event()
        pending = asyncio.ensure_future(self.coordinator.create_tag("A.jpg", BOX))
        await self._settle()
        await self.coordinator.load_tags_for_photo("B.jpg")
        self.store.gates["create_tag"].set()
        tag = await pending
        self.assertIsNotNone(tag)
        self.assertEqual(self.coordinator.current_photo, "B.jpg")
        self.assertEqual(self.coordinator.tags, [])
        # the row was still persisted for A.jpg
        self.assertEqual(self.store.rows[tag.id].photo_ref, "A.jpg")

    async def test_stale_load_is_discarded(self) -> None:
        self.store.rows[50] = FaceTag(id=50, photo_ref="A.jpg", box=BOX)
        self.store.rows[60] = FaceTag(id=60, photo_ref="B.jpg", box=BOX)
        self.store.gates["get_tags_for_photo"] = asyncio.Event()
        load_a = asyncio.ensure_future(self.coordinator.load_tags_for_photo("A.jpg"))
        await self._settle()
        self.coordinator.begin_photo("B.jpg")
        self.store.gates["get_tags_for_photo"].set()
        await load_a
        self.assertEqual(self.coordinator.tags, [])
        await self.coordinator.load_tags_for_photo("B.jpg")
        self.assertEqual([t.id for t in self.coordinator.tags], [60])

    async def test_load_racing_with_create_keeps_both(self) -> None:
        self.store.rows[5] = FaceTag(id=5, photo_ref="A.jpg", box=BOX)
        self.store.next_id = 6
        self.coordinator.begin_photo("A.jpg")
        self.store.gates["get_tags_for_photo"] = asyncio.Event()
        load = asyncio.ensure_future(self.coordinator.load_tags_for_photo("A.jpg"))
        await self._settle()
        created = await self.coordinator.create_tag("A.jpg", BOX)
        self.store.gates["get_tags_for_photo"].set()
        await load
        self.assertEqual(sorted(t.id for t in self.coordinator.tags), [5, created.id])

    async def test_load_failure_posts_notice(self) -> None:
        self.store.fail["get_tags_for_photo"] = PersistenceError("locked")
        self.assertEqual(await self.coordinator.load_tags_for_photo("A.jpg"), [])
        self.assertEqual(len(self.seen), 1)

    async def test_assign_identity_updates_after_store(self) -> None:
        await self.coordinator.load_tags_for_photo("A.jpg")
        tag = await self.coordinator.create_tag("A.jpg", BOX)
        self.assertTrue(await self.coordinator.assign_identity(tag.id, 3, "Alice"))
        (updated,) = self.coordinator.tags
        self.assertEqual(updated.identity_id, 3)
        self.assertEqual(updated.identity_name, "Alice")
        self.assertEqual(updated.box, BOX)

    async def test_assign_identity_failure_keeps_old_value(self) -> None:
        await self.coordinator.load_tags_for_photo("A.jpg")
        tag = await self.coordinator.create_tag("A.jpg", BOX)
        self.store.fail["update_tag"] = PersistenceError("nope")
        self.assertFalse(await self.coordinator.assign_identity(tag.id, 3, "Alice"))
        self.assertIsNone(self.coordinator.tags[0].identity_id)
        self.assertEqual(len(self.seen), 1)

    async def test_assign_identity_unknown_tag(self) -> None:
        await self.coordinator.load_tags_for_photo("A.jpg")
        self.assertFalse(await self.coordinator.assign_identity(99, 3, "Alice"))
        self.assertNotIn("update_tag", self.store.calls)
        self.assertEqual(self.seen[0].details["tag_id"], 99)

    async def test_remove_tag_twice(self) -> None:
        await self.coordinator.load_tags_for_photo("A.jpg")
        first = await self.coordinator.create_tag("A.jpg", BOX)
        second = await self.coordinator.create_tag("A.jpg", BOX)
        self.assertTrue(await self.coordinator.remove_tag(first.id))
        self.assertEqual([t.id for t in self.coordinator.tags], [second.id])
        self.assertFalse(await self.coordinator.remove_tag(first.id))
        self.assertEqual([t.id for t in self.coordinator.tags], [second.id])
        self.assertEqual(self.seen[-1].message, "Face tag was already removed")

    async def test_remove_failure_keeps_tag(self) -> None:
        await self.coordinator.load_tags_for_photo("A.jpg")
        tag = await self.coordinator.create_tag("A.jpg", BOX)
        self.store.fail["delete_tag"] = PersistenceError("busy")
        self.assertFalse(await self.coordinator.remove_tag(tag.id))
        self.assertEqual([t.id for t in self.coordinator.tags], [tag.id])

    async def test_removed_tag_is_not_revived_by_inflight_load(self) -> None:
        await self.coordinator.load_tags_for_photo("A.jpg")
        tag = await self.coordinator.create_tag("A.jpg", BOX)
        stale_rows = [self.store.rows[tag.id]]

        async def stale_load(photo_ref):
            await gate.wait()
            return stale_rows

        gate = asyncio.Event()
        self.store.get_tags_for_photo = stale_load
        load = asyncio.ensure_future(self.coordinator.load_tags_for_photo("A.jpg"))
        await self._settle()
        await self.coordinator.remove_tag(tag.id)
        gate.set()
        await load
        self.assertEqual(self.coordinator.tags, [])

    async def test_apply_detection_auto_tags_and_suggests(self) -> None:
        identities = [
            Identity(id=1, name="Alice", descriptors_text="[[1.0, 0.0]]"),
            Identity(id=2, name="Beth", descriptors_text="[[0.0, 1.0]]"),
        ]
        detection = DetectionResult(
            faces=(
                _face(0.0, [1.0, 0.0]),  # exact Alice
                _face(100.0, [0.3, 1.0]),  # distance 0.3 to Beth -> confidence 0.7
                _face(200.0, [-1.0, -1.0]),  # nobody
            ),
            image_width=400,
            image_height=200,
        )
        await self.coordinator.load_tags_for_photo("A.jpg")
        suggestions = await self.coordinator.apply_detection("A.jpg", detection, identities)
        (auto,) = self.coordinator.tags
        self.assertEqual(auto.identity_id, 1)
        self.assertEqual(auto.identity_name, "Alice")
        self.assertFalse(auto.is_manual)
        self.assertEqual(auto.box, Rect(x=0.0, y=5.0, width=12.5, height=25.0))
        self.assertEqual([plan.match.identity_id for plan in suggestions], [2])

    async def test_apply_detection_skips_identity_already_tagged(self) -> None:
        identities = [Identity(id=1, name="Alice", descriptors_text="[[1.0, 0.0]]")]
        detection = DetectionResult(
            faces=(_face(0.0, [1.0, 0.0]), _face(100.0, [1.0, 0.0])),
            image_width=400,
            image_height=200,
        )
        await self.coordinator.load_tags_for_photo("A.jpg")
        await self.coordinator.apply_detection("A.jpg", detection, identities)
        await self.coordinator.apply_detection("A.jpg", detection, identities)
        self.assertEqual(len(self.coordinator.tags), 1)
        self.assertEqual(self.store.calls.count("create_tag"), 1)

    async def test_record_reference_sample_appends(self) -> None:
        self.store.identities[1] = Identity(id=1, name="Alice", descriptors_text="[[1.0, 0.0]]")
        self.assertTrue(await self.coordinator.record_reference_sample(1, np.array([0.6, 0.8])))
        stored = json.loads(self.store.identities[1].descriptors_text)
        self.assertEqual(stored, [[1.0, 0.0], [0.6, 0.8]])

    async def test_record_reference_sample_unknown_identity(self) -> None:
        self.assertFalse(await self.coordinator.record_reference_sample(9, np.array([0.6, 0.8])))
        self.assertNotIn("set_reference_descriptors", self.store.calls)
        self.assertEqual(self.seen[0].message, "Unknown person")

    async def test_record_reference_sample_store_failure(self) -> None:
        self.store.identities[1] = Identity(id=1, name="Alice")
        self.store.fail["set_reference_descriptors"] = PersistenceError("readonly")
        self.assertFalse(await self.coordinator.record_reference_sample(1, np.array([0.6, 0.8])))
        self.assertEqual(len(self.seen), 1)


if __name__ == "__main__":
    unittest.main()
