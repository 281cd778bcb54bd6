#!/usr/bin/env python3
# -*-coding: utf-8-*-
"""
CHD Batch Converter - CUE/GDI descriptor parsing

Finds the data files (tracks) that belong to a multi-file disc image so they
can be staged with the descriptor and removed together with it.
"""

import logging
import re
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import List, Union

from ..exceptions import ParseError

logger = logging.getLogger(__name__)

DESCRIPTOR_EXTENSIONS = (".cue", ".gdi")

_DRIVE_RE = re.compile(r"^[a-zA-Z]:")


def _read_lines(path: Path) -> List[str]:
    try:
        return path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError as exc:
        raise ParseError(f"Cannot read descriptor {path.name}: {exc}", file_path=str(path)) from exc


def _quoted_name(line: str):
    first = line.find('"')
    last = line.rfind('"')
    if first != -1 and last > first:
        return line[first + 1:last]
    return None


def is_invalid_track_ref(name: str) -> bool:
    """Reject absolute, drive-letter and parent-directory track references."""
    if not name or "\x00" in name:
        return True
    if name.startswith(("/", "\\")) or _DRIVE_RE.match(name):
        return True
    parts = PurePosixPath(name.replace("\\", "/")).parts
    return ".." in parts or PureWindowsPath(name).is_absolute()


def _resolve(base_dir: Path, names: List[str], descriptor: Path) -> List[Path]:
    resolved: List[Path] = []
    for name in names:
        if is_invalid_track_ref(name):
            logger.warning("Ignoring unsafe track reference %r in %s", name, descriptor.name)
            continue
        resolved.append(base_dir / name)
    return resolved


def referenced_files_from_cue(cue_path: Union[str, Path]) -> List[Path]:
    """Data files named by ``FILE`` directives of a cue sheet."""
    cue_path = Path(cue_path)
    names: List[str] = []
    for line in _read_lines(cue_path):
        trimmed = line.strip()
        if not trimmed.upper().startswith("FILE "):
            continue
        name = _quoted_name(trimmed)
        if name is None:
            parts = trimmed.split()
            if len(parts) < 2:
                continue
            name = parts[1]
        names.append(name)
    return _resolve(cue_path.parent, names, cue_path)


def referenced_files_from_gdi(gdi_path: Union[str, Path]) -> List[Path]:
    """Track files of a GD-ROM descriptor. The first line is the track count."""
    gdi_path = Path(gdi_path)
    names: List[str] = []
    for line in _read_lines(gdi_path)[1:]:
        trimmed = line.strip()
        if not trimmed:
            continue
        name = _quoted_name(trimmed)
        if name is None:
            parts = trimmed.split()
            if len(parts) < 5:
                continue
            name = parts[4]
        names.append(name)
    return _resolve(gdi_path.parent, names, gdi_path)


def resolve_sidecar_files(descriptor: Union[str, Path]) -> List[Path]:
    descriptor = Path(descriptor)
    ext = descriptor.suffix.lower()
    if ext == ".cue":
        return referenced_files_from_cue(descriptor)
    if ext == ".gdi":
        return referenced_files_from_gdi(descriptor)
    return []


def missing_sidecars(descriptor: Union[str, Path]) -> List[Path]:
    return [path for path in resolve_sidecar_files(descriptor) if not path.exists()]
