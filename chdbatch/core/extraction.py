#!/usr/bin/env python3
# -*-coding: utf-8-*-
"""
CHD Batch Converter - Container extraction

Materializes a plain disc image inside a staging directory, either by
decompressing a CSO container with maxcso or by extracting a ZIP/7Z/RAR
archive and picking the first supported image inside it.
"""

import os
import logging
import zipfile
from pathlib import Path
from typing import Any, Callable, Optional, Union

import py7zr
import rarfile

from ..exceptions import (
    FileOperationError,
    InvalidPathError,
    NoTargetFoundError,
    OutputMissingError,
    StagingFailedError,
    ToolExecutionFailedError,
    UnsupportedContainerError,
)
from ..security.security_utils import (
    ensure_within,
    is_safe_archive_member,
    safe_extract_zip,
    safe_temp_file_path,
)
from ..utils.external_tools import MAXCSO, ToolInvocation, ToolSpec, require_tool, run_with_throughput
from .file_utils import copy_with_cancel, delete_file_quietly, raise_if_cancelled

logger = logging.getLogger(__name__)

PRIMARY_TARGET_EXTENSIONS = (".cue", ".iso", ".img", ".cdi", ".gdi", ".toc", ".raw")
ARCHIVE_EXTENSIONS = (".zip", ".7z", ".rar")
COMPRESSED_IMAGE_EXTENSIONS = (".cso",)

DECOMPRESS_POLL_INTERVAL_SEC = 1.0

LogCallback = Optional[Callable[[str], None]]
SampleCallback = Optional[Callable[[float], None]]


def _log(log_cb: LogCallback, message: str) -> None:
    logger.info(message)
    if log_cb is not None:
        log_cb(message)


# =====================================================================================================
# RAR backend
# =====================================================================================================

def configure_rar_backend(unrar_path: Optional[str] = None) -> None:
    """Point rarfile at an explicit unrar executable."""
    if unrar_path and os.path.isfile(unrar_path):
        rarfile.UNRAR_TOOL = unrar_path
        logger.debug("Using unrar backend: %s", unrar_path)


def rar_backend_available() -> bool:
    try:
        rarfile.tool_setup(force=True)
        return True
    except rarfile.RarCannotExec:
        return False


def archive_support_available(extension: str) -> bool:
    ext = extension.lower()
    if ext in (".zip", ".7z"):
        return True
    if ext == ".rar":
        return rar_backend_available()
    return False


# =====================================================================================================
# CSO decompression
# =====================================================================================================

def decompress(
    container: Union[str, Path],
    dest_dir: Union[str, Path],
    *,
    maxcso: Optional[ToolSpec],
    on_sample: SampleCallback = None,
    log_cb: LogCallback = None,
    cancel_token: Optional[Any] = None,
) -> Path:
    """Decompress a CSO into ``dest_dir`` under a random ``.iso`` name."""
    tool = require_tool(maxcso, MAXCSO)
    container = Path(container)
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    output_iso = safe_temp_file_path("iso", dest_dir)

    _log(log_cb, f"Decompressing {container.name} to temporary ISO: {output_iso.name}")

    def _stderr(line: str) -> None:
        if log_cb is not None:
            log_cb(f"[MAXCSO STDERR] {line}")

    invocation = ToolInvocation(
        tool=tool,
        args=("--decompress", str(container), "-o", str(output_iso)),
        cwd=str(dest_dir),
        on_stdout=lambda line: logger.debug("maxcso: %s", line),
        on_stderr=_stderr,
    )
    exit_code = run_with_throughput(
        invocation,
        output_iso,
        poll_interval=DECOMPRESS_POLL_INTERVAL_SEC,
        on_sample=on_sample,
        cancel_token=cancel_token,
    )

    if exit_code != 0:
        raise ToolExecutionFailedError(
            f"maxcso failed for {container.name} (exit code {exit_code})",
            exit_code=exit_code, tool=MAXCSO, file_path=str(container),
        )
    if not output_iso.is_file():
        raise OutputMissingError(
            f"maxcso reported success but produced no ISO for {container.name}",
            file_path=str(container),
        )

    _log(log_cb, f"Successfully decompressed {container.name}")
    return output_iso


# =====================================================================================================
# Archive extraction
# =====================================================================================================

def find_primary_target(root: Union[str, Path]) -> Optional[Path]:
    """First supported image below ``root``, in sorted walk order."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            if Path(name).suffix.lower() in PRIMARY_TARGET_EXTENSIONS:
                return Path(dirpath) / name
    return None


def _check_member_names(names, dest_root: Path, archive_name: str) -> None:
    for name in names:
        if not is_safe_archive_member(name):
            raise InvalidPathError(f"Unsafe archive member blocked in {archive_name}: {name}", path=name)
        ensure_within(dest_root / name, dest_root)


def _extract_7z(archive: Path, dest_dir: Path) -> None:
    with py7zr.SevenZipFile(archive, mode="r") as zf:
        _check_member_names(zf.getnames(), dest_dir.resolve(), archive.name)
        zf.extractall(path=dest_dir)


def _extract_rar(archive: Path, dest_dir: Path) -> None:
    with rarfile.RarFile(str(archive)) as rf:
        _check_member_names([info.filename for info in rf.infolist()], dest_dir.resolve(), archive.name)
        rf.extractall(path=str(dest_dir))


_GENERAL_EXTRACTORS = {
    ".7z": _extract_7z,
    ".rar": _extract_rar,
}


def extract_archive(
    archive: Union[str, Path],
    dest_dir: Union[str, Path],
    *,
    scratch_dir: Optional[Union[str, Path]] = None,
    log_cb: LogCallback = None,
    cancel_token: Optional[Any] = None,
) -> Path:
    """Extract ``archive`` into ``dest_dir`` and return the first supported image.

    7z and RAR archives are first copied to ``scratch_dir`` under a random
    name; the copy is deleted whatever happens.
    """
    archive = Path(archive)
    dest_dir = Path(dest_dir)
    ext = archive.suffix.lower()
    if ext not in ARCHIVE_EXTENSIONS:
        raise UnsupportedContainerError(f"Unsupported archive type: {ext or archive.name}",
                                        file_path=str(archive))

    raise_if_cancelled(cancel_token, "Extraction")
    dest_dir.mkdir(parents=True, exist_ok=True)
    _log(log_cb, f"Extracting {archive.name} to: {dest_dir}")

    try:
        if ext == ".zip":
            safe_extract_zip(archive, dest_dir, cancel_token=cancel_token)
        else:
            scratch = Path(scratch_dir) if scratch_dir is not None else dest_dir.parent
            safe_copy = safe_temp_file_path(ext, scratch)
            try:
                copy_with_cancel(archive, safe_copy, cancel_token=cancel_token)
                _GENERAL_EXTRACTORS[ext](safe_copy, dest_dir)
            finally:
                delete_file_quietly(safe_copy, "temporary archive copy")
    except (zipfile.BadZipFile, py7zr.Bad7zFile, py7zr.exceptions.ArchiveError, rarfile.Error,
            InvalidPathError, FileOperationError, OSError) as exc:
        raise StagingFailedError(f"Error extracting archive {archive.name}: {exc}",
                                 file_path=str(archive)) from exc

    raise_if_cancelled(cancel_token, "Extraction")

    found = find_primary_target(dest_dir)
    if found is None:
        raise NoTargetFoundError(f"No supported primary files found in archive {archive.name}",
                                 file_path=str(archive))
    _log(log_cb, f"Using extracted file: {found.name} from archive {archive.name}")
    return found
