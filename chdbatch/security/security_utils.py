#!/usr/bin/env python3
# -*-coding: utf-8-*-
"""CHD Batch Converter - Path safety helpers.

File name sanitizing for staged working copies, collision-free temp names
and zip-slip safe archive extraction.
"""

import os
import re
import logging
import stat
import uuid
import zipfile
from pathlib import Path, PurePosixPath
from typing import Optional, Union

from ..exceptions import InvalidPathError, OperationCancelledError, ValidationError

logger = logging.getLogger(__name__)

_INVALID_CHARS = r'<>:"/\\|?*\x00-\x1f\x7f-\x9f'
_INVALID_NAME_RE = re.compile(rf'([{_INVALID_CHARS}]*\.+$)|([{_INVALID_CHARS}]+)')

ELLIPSIS_REPLACEMENT = "_ellipsis_"
_ELLIPSIS_FORMS = ("…", "â€¦")


def _normalize_name(name: str) -> str:
    return _INVALID_NAME_RE.sub('_', name.rstrip(' '))


def sanitize_filename(filename: str, max_length: int = 255) -> str:
    """Make a file name safe for every common file system.

    Runs of invalid characters become a single ``_``, as does a run of trailing
    dots (together with any invalid characters in front of it). The ellipsis
    glyph and its mis-decoded UTF-8 form become ``_ellipsis_``. Applying the
    function twice gives the same result as applying it once.
    """
    if not filename:
        raise ValueError("File name must not be empty")

    sanitized = filename
    for form in _ELLIPSIS_FORMS:
        sanitized = sanitized.replace(form, ELLIPSIS_REPLACEMENT)

    sanitized = _normalize_name(sanitized)

    if len(sanitized) > max_length:
        if '.' in sanitized:
            name, ext = sanitized.rsplit('.', 1)
            max_name_length = max_length - len(ext) - 1
            if max_name_length > 0:
                sanitized = name[:max_name_length] + '.' + ext
            else:
                sanitized = sanitized[:max_length]
        else:
            sanitized = sanitized[:max_length]
        # Truncation can expose a trailing space or dot again.
        sanitized = _normalize_name(sanitized)

    if not sanitized.strip():
        sanitized = "unknown_file"

    return sanitized


def safe_temp_file_path(extension: str, directory: Union[str, Path]) -> Path:
    """Return ``directory/<random hex>.<extension>`` without touching the disk."""
    ext = str(extension or "").lstrip('.')
    if not ext:
        raise ValueError("Extension must not be empty")
    return Path(directory) / f"{uuid.uuid4().hex}.{ext}"


def validate_directory(path: Union[str, Path, None], label: str = "folder") -> Path:
    """Normalize a user supplied folder and make sure it exists."""
    if path is None or not str(path).strip():
        raise ValidationError(f"Please select a {label}.", field_name=label)

    try:
        normalized = Path(os.path.abspath(os.path.expanduser(str(path))))
    except (OSError, ValueError) as exc:
        raise ValidationError(f"The {label} path is invalid: {path} ({exc})", field_name=label) from exc

    if not normalized.is_dir():
        raise ValidationError(
            f"The {label} does not exist or is not accessible: {normalized}",
            field_name=label,
        )

    logger.debug("Validated %s: %s", label, normalized)
    return normalized


def is_safe_archive_member(member: Union[str, zipfile.ZipInfo]) -> bool:
    """Check for safe archive members (no traversal, no abs paths, no symlinks)."""
    if isinstance(member, zipfile.ZipInfo):
        member_name = member.filename
        mode = stat.S_IFMT(member.external_attr >> 16)
        if mode == stat.S_IFLNK:
            return False
    else:
        member_name = str(member)

    if not member_name:
        return False
    if "\x00" in member_name:
        return False
    if member_name.startswith(('/', '\\')):
        return False
    if re.match(r"^[a-zA-Z]:", member_name):
        return False
    parts = PurePosixPath(member_name.replace("\\", "/")).parts
    return ".." not in parts


def ensure_within(path: Union[str, Path], root: Union[str, Path]) -> Path:
    """Resolve ``path`` and fail unless it lies below ``root``."""
    root_resolved = Path(root).resolve()
    try:
        resolved = Path(path).resolve()
    except (OSError, RuntimeError) as exc:
        raise InvalidPathError(f"Invalid archive entry path: {path}", path=str(path)) from exc
    try:
        resolved.relative_to(root_resolved)
    except ValueError as exc:
        raise InvalidPathError(f"Zip-slip detected: {path}", path=str(path)) from exc
    return resolved


def safe_extract_zip(zip_path: Union[str, Path], dest_dir: Union[str, Path],
                     cancel_token: Optional[object] = None) -> None:
    """Safely extract a ZIP file, preventing zip-slip path traversal."""
    zip_path = Path(zip_path)
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)

    dest_root = dest_dir.resolve()

    with zipfile.ZipFile(zip_path, 'r') as zip_ref:
        members = zip_ref.infolist()
        for member in members:
            if not is_safe_archive_member(member):
                raise InvalidPathError(f"Unsafe archive member blocked: {member.filename}",
                                       path=member.filename)
            ensure_within(dest_root / member.filename, dest_root)

        for member in members:
            if cancel_token is not None and cancel_token.is_cancelled():
                raise OperationCancelledError("Extraction cancelled")
            zip_ref.extract(member, dest_root)
