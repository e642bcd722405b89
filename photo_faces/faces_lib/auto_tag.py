"""Turn detector output into per-face tagging actions by match tier."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List

from .detector import DetectedFace, DetectionResult
from .geometry import Rect, pixel_box_to_rect
from .matcher import FaceMatcher, MatchResult, MatchTier, RosterLike


class FaceAction(str, Enum):
    AUTO_APPLY = "auto_apply"
    SUGGEST = "suggest"
    IGNORE = "ignore"


@dataclass(frozen=True)
class FacePlan:
    face: DetectedFace
    box: Rect
    match: MatchResult
    action: FaceAction


def action_for(match: MatchResult) -> FaceAction:
    if match.identity_id is None:
        return FaceAction.IGNORE
    if match.tier is MatchTier.HIGH:
        return FaceAction.AUTO_APPLY
    if match.should_suggest:
        return FaceAction.SUGGEST
    return FaceAction.IGNORE


def plan_face_actions(detection: DetectionResult, roster: RosterLike) -> List[FacePlan]:
    """Match each face against one roster snapshot and pick its action."""
    matcher = FaceMatcher(roster)
    plans: List[FacePlan] = []
    for face in detection.faces:
        box = pixel_box_to_rect(face.bounding_box, detection.image_width, detection.image_height)
        match = matcher.match(face.descriptor)
        plans.append(FacePlan(face=face, box=box, match=match, action=action_for(match)))
    return plans
