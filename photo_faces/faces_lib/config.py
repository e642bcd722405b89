"""Configuration helpers for locating data, models, and detector settings."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class AppConfig:
    repo_root: Path
    data_root: Path
    db_path: Path
    models_dir: Path
    logs_dir: Path


@dataclass(frozen=True)
class DetectorSettings:
    min_score: float = 0.5
    max_faces: int = 20
    max_dimension: int = 2048
    allow_download: bool = False


def detect_repo_root() -> Path:
    """Return the root of the photo_faces tree."""
    return Path(__file__).resolve().parents[1]


def default_data_root(repo_root: Path) -> Path:
    return repo_root.parent / "data"


def default_db_path(data_root: Path) -> Path:
    return data_root / "db" / "faces.sqlite"


def default_models_dir(data_root: Path) -> Path:
    return data_root / "models" / "faces"


def load_config(
    db_path: Optional[Path] = None,
    models_dir: Optional[Path] = None,
    data_root: Optional[Path] = None,
) -> AppConfig:
    repo_root = detect_repo_root()
    resolved_root = Path(data_root) if data_root else default_data_root(repo_root)
    resolved_db_path = Path(db_path) if db_path else default_db_path(resolved_root)
    resolved_db_path.parent.mkdir(parents=True, exist_ok=True)
    resolved_models = Path(models_dir) if models_dir else default_models_dir(resolved_root)
    logs_dir = resolved_root / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return AppConfig(
        repo_root=repo_root,
        data_root=resolved_root,
        db_path=resolved_db_path,
        models_dir=resolved_models,
        logs_dir=logs_dir,
    )
