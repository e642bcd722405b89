"""CLI for detecting and matching faces in a single photo, and managing reference samples.

``detect`` and ``match`` print one JSON document on stdout; logs go to
stderr. Any failure (missing models, unreadable image, bad input) exits
non-zero after printing ``{"success": false, "error": ...}``.
"""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, List, NoReturn, Optional, Tuple

import typer

from faces_lib import config as config_mod, db as db_mod, log as log_mod
from faces_lib.detector import DetectionResult, FaceDetector
from faces_lib.errors import DetectorUnavailableError, FaceTaggingError
from faces_lib.matcher import FaceMatcher
from faces_lib.tag_lifecycle import TagLifecycleCoordinator
from faces_lib.tag_store import SqliteTagStore

app = typer.Typer(add_completion=False, help="Face detection, matching, and tagging helpers.")

MODEL_DIR_OPTION = typer.Option(
    None,
    "--model-dir",
    help="Directory holding the YuNet/SFace ONNX models (defaults to data/models/faces)",
)
MIN_SCORE_OPTION = typer.Option(0.5, "--min-score", help="Minimum detector score to keep a face")
MAX_FACES_OPTION = typer.Option(20, "--max-faces", help="Maximum faces to report per image")
MAX_DIMENSION_OPTION = typer.Option(
    2048,
    "--max-dimension",
    help="Resize so the longest edge matches this size before detection",
)
DOWNLOAD_OPTION = typer.Option(False, "--download/--no-download", help="Fetch missing models from opencv_zoo")
DB_OPTION = typer.Option(None, "--db", help="Path to faces.sqlite")
LOG_LEVEL_OPTION = typer.Option("WARNING", "--log-level", help="Logging verbosity")


@app.command()
def detect(
    image_path: Path = typer.Argument(..., help="Image to scan"),
    model_dir: Optional[Path] = MODEL_DIR_OPTION,
    min_score: float = MIN_SCORE_OPTION,
    max_faces: int = MAX_FACES_OPTION,
    max_dimension: int = MAX_DIMENSION_OPTION,
    download: bool = DOWNLOAD_OPTION,
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    """Detect faces and print their boxes, scores, and descriptors."""

    log_mod.setup_logging(log_level)
    logger = logging.getLogger("cli.faces")
    detector = _build_detector(model_dir, min_score, max_faces, max_dimension, download, logger)
    result = _run_detection(detector, image_path, logger)
    _emit(
        {
            "success": True,
            "faces": [face.as_dict() for face in result.faces],
            "imageWidth": result.image_width,
            "imageHeight": result.image_height,
        }
    )


@app.command()
def match(
    image_path: Path = typer.Argument(..., help="Image to scan"),
    known_descriptors: str = typer.Argument(
        "[]",
        help='JSON list of {"identityId": ..., "descriptor": [...]} entries',
    ),
    model_dir: Optional[Path] = MODEL_DIR_OPTION,
    min_score: float = MIN_SCORE_OPTION,
    max_faces: int = MAX_FACES_OPTION,
    max_dimension: int = MAX_DIMENSION_OPTION,
    download: bool = DOWNLOAD_OPTION,
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    """Detect faces and match each one against the known descriptors."""

    log_mod.setup_logging(log_level)
    logger = logging.getLogger("cli.faces")
    try:
        roster = parse_known_descriptors(known_descriptors)
    except ValueError as exc:
        _fail(exc, logger)
    detector = _build_detector(model_dir, min_score, max_faces, max_dimension, download, logger)
    result = _run_detection(detector, image_path, logger)
    matcher = FaceMatcher(roster)
    matches = []
    for face in result.faces:
        entry = face.as_dict()
        entry["match"] = matcher.match(face.descriptor).as_dict()
        matches.append(entry)
    logger.info("Matched %d faces against %d known descriptors", len(matches), matcher.count)
    _emit(
        {
            "success": True,
            "matches": matches,
            "imageWidth": result.image_width,
            "imageHeight": result.image_height,
        }
    )


@app.command()
def learn(
    image_path: Path = typer.Argument(..., help="Image containing the person"),
    identity_id: int = typer.Option(..., "--identity", help="Person id to add the sample to"),
    face_index: int = typer.Option(0, "--face-index", help="Which detected face to use (highest score first)"),
    db: Optional[Path] = DB_OPTION,
    model_dir: Optional[Path] = MODEL_DIR_OPTION,
    min_score: float = MIN_SCORE_OPTION,
    max_dimension: int = MAX_DIMENSION_OPTION,
    download: bool = DOWNLOAD_OPTION,
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    """Store one detected face as a reference sample for a person."""

    if face_index < 0:
        raise typer.BadParameter("--face-index must be zero or greater")
    log_mod.setup_logging(log_level)
    logger = logging.getLogger("cli.faces")
    detector = _build_detector(model_dir, min_score, 0, max_dimension, download, logger)
    result = _run_detection(detector, image_path, logger)
    if face_index >= len(result.faces):
        _fail(ValueError(f"Only {len(result.faces)} faces found in {image_path}"), logger)
    descriptor = result.faces[face_index].descriptor
    store = _open_store(db, logger)
    coordinator = TagLifecycleCoordinator(store, logger=logger)
    if not asyncio.run(coordinator.record_reference_sample(identity_id, descriptor)):
        message = coordinator.notices[-1].message if coordinator.notices else "update failed"
        _fail(FaceTaggingError(message), logger)
    _emit({"success": True, "identityId": identity_id})


@app.command()
def tags(
    photo_ref: str = typer.Argument(..., help="Photo reference (filename) to list"),
    db: Optional[Path] = DB_OPTION,
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    """Print the stored face tags for one photo."""

    log_mod.setup_logging(log_level)
    logger = logging.getLogger("cli.faces")
    store = _open_store(db, logger)
    try:
        face_tags = asyncio.run(store.get_tags_for_photo(photo_ref))
    except FaceTaggingError as exc:
        _fail(exc, logger)
    _emit({"success": True, "faceTags": [tag.to_wire() for tag in face_tags]})


@app.command("add-person")
def add_person(
    name: str = typer.Argument(..., help="Display name"),
    db: Optional[Path] = DB_OPTION,
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    """Create a person that faces can be tagged with."""

    log_mod.setup_logging(log_level)
    logger = logging.getLogger("cli.faces")
    store = _open_store(db, logger)
    try:
        identity = asyncio.run(store.create_identity(name))
    except (FaceTaggingError, ValueError) as exc:
        _fail(exc, logger)
    _emit({"success": True, "person": {"id": identity.id, "name": identity.name, "createdAt": identity.created_at}})


def parse_known_descriptors(text: str) -> List[Tuple[int, List[float]]]:
    """Parse ``[{"identityId", "descriptor"}]``; ``personId`` is accepted too."""
    try:
        data = json.loads(text or "[]")
    except json.JSONDecodeError as exc:
        raise ValueError(f"known descriptors are not valid JSON: {exc}") from exc
    if not isinstance(data, list):
        raise ValueError("known descriptors must be a JSON list")
    roster: List[Tuple[int, List[float]]] = []
    for item in data:
        if not isinstance(item, dict):
            raise ValueError("each known descriptor must be an object")
        identity_id = item.get("identityId", item.get("personId"))
        descriptor = item.get("descriptor")
        if identity_id is None or not isinstance(descriptor, list) or not descriptor:
            raise ValueError("each known descriptor needs identityId and a non-empty descriptor")
        roster.append((_coerce_identity_id(identity_id), [float(value) for value in descriptor]))
    return roster


def _coerce_identity_id(value: object) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValueError(f"identityId must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"identityId must be an integer, got {value!r}") from exc


def _build_detector(
    model_dir: Optional[Path],
    min_score: float,
    max_faces: int,
    max_dimension: int,
    download: bool,
    logger: logging.Logger,
) -> FaceDetector:
    if min_score <= 0 or min_score >= 1.0:
        raise typer.BadParameter("--min-score must be between 0 and 1")
    if max_dimension <= 0:
        raise typer.BadParameter("--max-dimension must be greater than zero")
    models_root = model_dir or config_mod.load_config().models_dir
    settings = config_mod.DetectorSettings(
        min_score=min_score,
        max_faces=max_faces,
        max_dimension=max_dimension,
        allow_download=download,
    )
    return FaceDetector(models_root, settings, logger=logger)


def _run_detection(detector: FaceDetector, image_path: Path, logger: logging.Logger) -> DetectionResult:
    try:
        return detector.detect_path(image_path)
    except DetectorUnavailableError as exc:
        _fail(exc, logger, hint="Download the YuNet/SFace models into --model-dir or pass --download")
    except (FaceTaggingError, ValueError, OSError) as exc:
        _fail(exc, logger)


def _open_store(db: Optional[Path], logger: logging.Logger) -> SqliteTagStore:
    cfg_db = db or config_mod.load_config().db_path
    conn = db_mod.connect(cfg_db)
    db_mod.init_schema(conn)
    return SqliteTagStore(conn, logger=logger)


def _emit(payload: Dict[str, object]) -> None:
    typer.echo(json.dumps(payload))


def _fail(exc: Exception, logger: logging.Logger, hint: Optional[str] = None) -> NoReturn:
    logger.error("%s", exc)
    typer.echo(json.dumps({"success": False, "error": str(exc)}))
    typer.echo(f"Error: {exc}", err=True)
    if hint:
        typer.echo(hint, err=True)
    raise typer.Exit(code=1)


def run() -> None:  # pragma: no cover - console entry
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
