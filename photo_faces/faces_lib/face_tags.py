"""Face tag and identity records shared by the store, coordinator, and CLI."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import numpy as np

from .descriptors import load_descriptors
from .geometry import Rect


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Identity:
    id: int
    name: str
    descriptors_text: Optional[str] = None
    created_at: str = ""

    @property
    def reference_descriptors(self) -> List[np.ndarray]:
        return load_descriptors(self.descriptors_text)


@dataclass(frozen=True)
class FaceTag:
    id: int
    photo_ref: str
    box: Rect
    identity_id: Optional[int] = None
    identity_name: str = ""
    confidence: float = 1.0
    is_manual: bool = True
    created_at: str = field(default_factory=utc_timestamp)

    def with_identity(self, identity_id: Optional[int], name: str) -> "FaceTag":
        return replace(self, identity_id=identity_id, identity_name=name or "")

    def to_wire(self) -> Dict[str, Any]:
        """JSON shape used by the viewer API."""
        return {
            "id": self.id,
            "x": self.box.x,
            "y": self.box.y,
            "width": self.box.width,
            "height": self.box.height,
            "confidence": self.confidence,
            "isManual": self.is_manual,
            "personId": self.identity_id,
            "personName": self.identity_name,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_wire(cls, photo_ref: str, payload: Dict[str, Any]) -> "FaceTag":
        person_id = payload.get("personId")
        return cls(
            id=int(payload["id"]),
            photo_ref=photo_ref,
            box=Rect(
                x=float(payload["x"]),
                y=float(payload["y"]),
                width=float(payload["width"]),
                height=float(payload["height"]),
            ),
            identity_id=int(person_id) if person_id is not None else None,
            identity_name=str(payload.get("personName") or ""),
            confidence=float(payload.get("confidence", 1.0)),
            is_manual=bool(payload.get("isManual", True)),
            created_at=str(payload.get("createdAt") or ""),
        )
