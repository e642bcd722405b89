"""Serialize and maintain the rolling set of reference descriptors per identity.

Each identity keeps at most ``MAX_REFERENCE_DESCRIPTORS`` samples, stored as a
JSON array of float arrays. Adding a sample to a full set evicts the oldest.
"""
from __future__ import annotations

import json
import logging
from typing import List, Optional, Sequence

import numpy as np

MAX_REFERENCE_DESCRIPTORS = 10

logger = logging.getLogger(__name__)


def as_descriptor(values: Sequence[float]) -> np.ndarray:
    """Return a read-only float64 vector for ``values``."""
    vector = np.array(values, dtype=np.float64).reshape(-1)
    vector.flags.writeable = False
    return vector


def serialize(descriptors: Sequence[Sequence[float]]) -> str:
    """Encode descriptors as a JSON array-of-arrays."""
    payload = [[float(value) for value in np.asarray(descriptor, dtype=np.float64).reshape(-1)] for descriptor in descriptors]
    return json.dumps(payload, separators=(",", ":"))


def deserialize(text: str) -> List[np.ndarray]:
    """Decode stored descriptor text.

    A bare array of numbers is read as a single descriptor.

    Raises:
        ValueError: If the text is not JSON or does not hold numeric arrays.
    """
    data = json.loads(text)
    if not isinstance(data, list):
        raise ValueError("descriptor payload must be a JSON array")
    if data and all(_is_number(value) for value in data):
        return [as_descriptor(data)]
    descriptors: List[np.ndarray] = []
    for row in data:
        if not isinstance(row, list) or not row or not all(_is_number(value) for value in row):
            raise ValueError("each descriptor must be a non-empty array of numbers")
        descriptors.append(as_descriptor(row))
    return descriptors


def load_descriptors(text: Optional[str]) -> List[np.ndarray]:
    """Like :func:`deserialize` but absent or malformed text yields ``[]``."""
    if not text:
        return []
    try:
        return deserialize(text)
    except ValueError as exc:
        # json.JSONDecodeError is a ValueError subclass
        logger.warning("Ignoring malformed stored descriptors: %s", exc)
        return []


def add_descriptor(existing_text: Optional[str], new_descriptor: Sequence[float]) -> str:
    """Append a sample and keep only the most recent ``MAX_REFERENCE_DESCRIPTORS``."""
    descriptors = load_descriptors(existing_text)
    descriptors.append(as_descriptor(new_descriptor))
    limited = descriptors[-MAX_REFERENCE_DESCRIPTORS:]
    return serialize(limited)


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
