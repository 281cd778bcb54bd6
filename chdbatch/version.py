"""Version utilities for CHD Batch Converter."""

from __future__ import annotations

from importlib import metadata

FALLBACK_VERSION = "1.0.0"


def load_version() -> str:
    try:
        return metadata.version("chdbatch")
    except metadata.PackageNotFoundError:
        return FALLBACK_VERSION
