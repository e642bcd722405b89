"""Shared helpers for the photo face tagging toolchain."""

from . import config, log, db, geometry, descriptors, matcher  # noqa: F401

__all__ = [
    "config",
    "log",
    "db",
    "geometry",
    "descriptors",
    "matcher",
]
