"""Nearest-neighbour identity matching over face descriptors."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from .descriptors import as_descriptor

RECOGNITION_DISTANCE_THRESHOLD = 0.45
HIGH_CONFIDENCE_THRESHOLD = 0.8
MEDIUM_CONFIDENCE_THRESHOLD = 0.6

NO_MATCH_DISTANCE = 1.0

logger = logging.getLogger(__name__)


class MatchTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class RosterEntry:
    identity_id: int
    descriptor: np.ndarray


RosterLike = Sequence[Union[RosterEntry, Tuple[int, Sequence[float]]]]


@dataclass(frozen=True)
class MatchResult:
    identity_id: Optional[int]
    confidence: float
    distance: float
    is_match: bool

    @property
    def tier(self) -> MatchTier:
        return tier(self.confidence)

    @property
    def should_auto_confirm(self) -> bool:
        return should_auto_confirm(self.confidence)

    @property
    def should_suggest(self) -> bool:
        return should_suggest(self.confidence)

    def as_dict(self) -> dict:
        return {
            "identityId": self.identity_id,
            "confidence": self.confidence,
            "distance": self.distance,
            "isMatch": self.is_match,
            "tier": self.tier.value,
            "shouldAutoConfirm": self.should_auto_confirm,
            "shouldSuggest": self.should_suggest,
        }


NO_MATCH = MatchResult(identity_id=None, confidence=0.0, distance=NO_MATCH_DISTANCE, is_match=False)


def tier(confidence: float) -> MatchTier:
    if confidence >= HIGH_CONFIDENCE_THRESHOLD:
        return MatchTier.HIGH
    if confidence >= MEDIUM_CONFIDENCE_THRESHOLD:
        return MatchTier.MEDIUM
    return MatchTier.LOW


def should_auto_confirm(confidence: float) -> bool:
    return tier(confidence) is MatchTier.HIGH


def should_suggest(confidence: float) -> bool:
    return confidence >= MEDIUM_CONFIDENCE_THRESHOLD


class FaceMatcher:
    """Immutable snapshot of a roster, ready for repeated matching.

    Distances are plain Euclidean. When several entries share the minimum
    distance the earliest one in roster order wins.
    """

    def __init__(self, roster: RosterLike):
        self.entries: List[RosterEntry] = [_coerce_entry(entry) for entry in roster]

    @property
    def count(self) -> int:
        return len(self.entries)

    def match(self, candidate: Sequence[float]) -> MatchResult:
        vector = as_descriptor(candidate)
        usable = [entry for entry in self.entries if entry.descriptor.shape == vector.shape]
        if len(usable) != len(self.entries):
            logger.debug(
                "Skipped %d roster entries with dimension != %d",
                len(self.entries) - len(usable),
                vector.shape[0],
            )
        if not usable:
            return NO_MATCH
        matrix = np.stack([entry.descriptor for entry in usable], axis=0)
        distances = np.linalg.norm(matrix - vector, axis=1)
        # argmin returns the first index on ties
        best = int(np.argmin(distances))
        distance = float(distances[best])
        return MatchResult(
            identity_id=usable[best].identity_id,
            confidence=max(0.0, 1.0 - distance),
            distance=distance,
            is_match=distance <= RECOGNITION_DISTANCE_THRESHOLD,
        )

    def match_all(self, candidates: Iterable[Sequence[float]]) -> List[MatchResult]:
        """Match every candidate independently against this snapshot."""
        return [self.match(candidate) for candidate in candidates]


def match(candidate: Sequence[float], roster: RosterLike) -> MatchResult:
    return FaceMatcher(roster).match(candidate)


def match_faces(candidates: Iterable[Sequence[float]], roster: RosterLike) -> List[MatchResult]:
    return FaceMatcher(roster).match_all(candidates)


def build_roster(identities: Iterable[object]) -> List[RosterEntry]:
    """Flatten identities into roster entries, identity order then sample order.

    Each identity needs an ``id`` and a ``reference_descriptors`` list.
    """
    roster: List[RosterEntry] = []
    for identity in identities:
        for descriptor in identity.reference_descriptors:
            roster.append(RosterEntry(identity_id=identity.id, descriptor=as_descriptor(descriptor)))
    return roster


def _coerce_entry(entry: Union[RosterEntry, Tuple[int, Sequence[float]]]) -> RosterEntry:
    if isinstance(entry, RosterEntry):
        return entry
    identity_id, descriptor = entry
    return RosterEntry(identity_id=identity_id, descriptor=as_descriptor(descriptor))
