"""Exceptions raised by the face tagging toolchain."""
from __future__ import annotations

from typing import Optional


class FaceTaggingError(Exception):
    """Base exception for face tagging operations."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details or {}


class DetectorUnavailableError(FaceTaggingError, RuntimeError):
    """Raised when detector/recognizer model assets are missing or cannot be loaded."""


class DetectionFailedError(FaceTaggingError):
    """Raised when the loaded models fail while running inference on an image."""


class InvalidGeometryError(FaceTaggingError, ValueError):
    """Raised when a bounding box has non-positive size or lies outside the image."""


class PersistenceError(FaceTaggingError):
    """Raised when the metadata store fails to create, update, or delete a record."""


class TagNotFoundError(PersistenceError):
    """Raised when a tag id does not exist in the metadata store."""
