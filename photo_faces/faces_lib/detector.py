"""Face detection + embedding backed by OpenCV's YuNet + SFace models.

The detector is constructed explicitly and loads its models lazily on first
use. Missing or unloadable model files raise ``DetectorUnavailableError``;
a failed load is never reported as an image with zero faces.
"""
from __future__ import annotations

import io
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from urllib.error import URLError
from urllib.request import urlretrieve

import cv2  # type: ignore
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from .config import DetectorSettings
from .errors import DetectionFailedError, DetectorUnavailableError
from .geometry import PixelBox

MODEL_SPECS = {
    "detector": {
        "filename": "face_detection_yunet_2023mar.onnx",
        "url": "https://github.com/opencv/opencv_zoo/raw/main/models/face_detection_yunet/face_detection_yunet_2023mar.onnx",
    },
    "recognizer": {
        "filename": "face_recognition_sface_2021dec.onnx",
        "url": "https://github.com/opencv/opencv_zoo/raw/main/models/face_recognition_sface/face_recognition_sface_2021dec.onnx",
    },
}


@dataclass(frozen=True)
class DetectedFace:
    bounding_box: PixelBox
    confidence: float
    descriptor: np.ndarray

    def as_dict(self) -> dict:
        return {
            "boundingBox": self.bounding_box.as_dict(),
            "confidence": self.confidence,
            "descriptor": [float(value) for value in self.descriptor],
        }


@dataclass(frozen=True)
class DetectionResult:
    faces: Tuple[DetectedFace, ...]
    image_width: int
    image_height: int


class FaceDetector:
    """Detect faces and compute unit-length SFace descriptors."""

    def __init__(
        self,
        model_dir: Path,
        settings: Optional[DetectorSettings] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.model_dir = Path(model_dir)
        self.settings = settings or DetectorSettings()
        self.logger = logger or logging.getLogger(__name__)
        self._load_lock = threading.Lock()
        self._loaded = False
        self._detector = None
        self._recognizer = None

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def ensure_loaded(self) -> None:
        """Load both models once; later calls are no-ops."""
        if self._loaded:
            return
        with self._load_lock:
            if self._loaded:
                return
            detector_path, recognizer_path = self._resolve_models()
            try:
                self._detector = cv2.FaceDetectorYN_create(
                    str(detector_path),
                    "",
                    (320, 320),
                    score_threshold=self.settings.min_score,
                    nms_threshold=0.3,
                    top_k=5000,
                )
                self._recognizer = cv2.FaceRecognizerSF_create(str(recognizer_path), "")
            except cv2.error as exc:
                raise DetectorUnavailableError(
                    "Face detection models could not be loaded",
                    details={"model_dir": str(self.model_dir)},
                ) from exc
            self._loaded = True
            self.logger.info("Loaded face models from %s", self.model_dir)

    def detect_path(self, image_path: Path) -> DetectionResult:
        return self.detect(Path(image_path).read_bytes())

    def detect(self, image_bytes: bytes) -> DetectionResult:
        """Return every face above ``min_score``, largest score first.

        Raises:
            DetectorUnavailableError: If the models cannot be loaded.
            DetectionFailedError: If OpenCV fails while running the detector.
            ValueError: If the bytes are not a readable image.
        """
        self.ensure_loaded()
        image = _decode_bgr(image_bytes)
        orig_height, orig_width = image.shape[:2]
        scale = 1.0
        largest = max(orig_height, orig_width)
        max_dimension = self.settings.max_dimension
        if max_dimension and largest > max_dimension:
            scale = max_dimension / float(largest)
            resized = cv2.resize(
                image,
                (max(1, int(round(orig_width * scale))), max(1, int(round(orig_height * scale)))),
            )
        else:
            resized = image
        height, width = resized.shape[:2]
        try:
            self._detector.setInputSize((width, height))
            _, raw_faces = self._detector.detect(resized)
        except cv2.error as exc:
            raise DetectionFailedError(
                "Face detection failed",
                details={"width": width, "height": height},
            ) from exc
        if raw_faces is None or not len(raw_faces):
            self.logger.debug("No faces found (%dx%d)", orig_width, orig_height)
            return DetectionResult(faces=(), image_width=orig_width, image_height=orig_height)
        faces = np.array(raw_faces)
        order = np.argsort(faces[:, -1])[::-1]
        faces = faces[order]
        if self.settings.max_faces:
            faces = faces[: self.settings.max_faces]
        results: List[DetectedFace] = []
        for face in faces:
            score = float(face[-1])
            if score < self.settings.min_score:
                continue
            try:
                aligned = self._recognizer.alignCrop(resized, face)
                embedding = self._recognizer.feature(aligned).reshape(-1)
            except cv2.error as exc:  # pragma: no cover - OpenCV internal failures
                self.logger.debug("Embedding failed: %s", exc)
                continue
            descriptor = _unit_vector(embedding)
            if descriptor is None:
                continue
            results.append(
                DetectedFace(
                    bounding_box=_rescale_box(face[:4], scale),
                    confidence=score,
                    descriptor=descriptor,
                )
            )
        self.logger.debug("Detected %d faces (%dx%d)", len(results), orig_width, orig_height)
        return DetectionResult(faces=tuple(results), image_width=orig_width, image_height=orig_height)

    def _resolve_models(self) -> Tuple[Path, Path]:
        resolved: Dict[str, Path] = {}
        for key, spec in MODEL_SPECS.items():
            target = self.model_dir / spec["filename"]
            if not target.exists():
                if not self.settings.allow_download:
                    raise DetectorUnavailableError(
                        f"Missing model file {target}",
                        details={"model": spec["filename"], "model_dir": str(self.model_dir)},
                    )
                self.model_dir.mkdir(parents=True, exist_ok=True)
                self.logger.info("Downloading %s to %s", spec["filename"], target)
                try:
                    urlretrieve(spec["url"], target)
                except (URLError, OSError) as exc:  # pragma: no cover - network failures
                    raise DetectorUnavailableError(f"Failed to download {spec['filename']}") from exc
            resolved[key] = target
        return resolved["detector"], resolved["recognizer"]


def _decode_bgr(image_bytes: bytes) -> np.ndarray:
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            rgb = ImageOps.exif_transpose(img).convert("RGB")
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError("Unable to read image data") from exc
    array = np.array(rgb, dtype=np.uint8)
    # RGB -> BGR for OpenCV
    return np.ascontiguousarray(array[:, :, ::-1])


def _unit_vector(embedding: np.ndarray) -> Optional[np.ndarray]:
    vector = embedding.astype(np.float64)
    norm = float(np.linalg.norm(vector))
    if not norm:
        return None
    vector = vector / norm
    vector.flags.writeable = False
    return vector


def _rescale_box(values: np.ndarray, scale: float) -> PixelBox:
    x, y, width, height = [float(value) for value in values]
    inv = 1.0 / scale if scale else 1.0
    return PixelBox(x=x * inv, y=y * inv, width=width * inv, height=height * inv)
