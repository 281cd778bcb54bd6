#!/usr/bin/env python3
# -*-coding: utf-8-*-
"""
CHD Batch Converter - File operations

Copy, move and delete helpers used by the pipelines. Copies honor a cancel
token, deletes are best-effort and staging cleanup accepts an explicit
deadline so a stuck file system never blocks shutdown.
"""

import os
import time
import errno
import logging
import shutil
import stat
import sys
from typing import Optional, Protocol, Union
from pathlib import Path

from ..exceptions import FileOperationError, OperationCancelledError

logger = logging.getLogger(__name__)

COPY_BUFFER_SIZE = 1024 * 1024
CLEANUP_RETRY_DELAY_SECONDS = 0.2


class CancelTokenProtocol(Protocol):
    def is_cancelled(self) -> bool: ...


def _is_cancelled(token: Optional[CancelTokenProtocol]) -> bool:
    return bool(token and token.is_cancelled())


def raise_if_cancelled(token: Optional[CancelTokenProtocol], what: str = "Operation") -> None:
    if _is_cancelled(token):
        raise OperationCancelledError(f"{what} cancelled")


def copy_with_cancel(
    src: Union[str, Path],
    dst: Union[str, Path],
    *,
    cancel_token: Optional[CancelTokenProtocol] = None,
    buffer_size: int = COPY_BUFFER_SIZE,
) -> Path:
    """Copy src -> dst in chunks, checking the cancel token between chunks.

    A partially written destination is removed before the cancellation or the
    I/O error propagates.
    """
    src = Path(src)
    dst = Path(dst)
    raise_if_cancelled(cancel_token, "Copy")

    dst.parent.mkdir(parents=True, exist_ok=True)
    completed = False
    try:
        with open(src, "rb") as fsrc, open(dst, "wb") as fdst:
            while True:
                raise_if_cancelled(cancel_token, "Copy")
                chunk = fsrc.read(buffer_size)
                if not chunk:
                    break
                fdst.write(chunk)
        try:
            shutil.copystat(src, dst, follow_symlinks=True)
        except OSError as exc:
            logger.debug("copystat failed: %s", exc)
        completed = True
    except OSError as exc:
        raise FileOperationError(f"Copy failed: {src} -> {dst}: {exc}",
                                 file_path=str(src), operation="copy") from exc
    finally:
        if not completed:
            delete_file_quietly(dst)

    logger.debug("Copied %s -> %s", src, dst)
    return dst


def delete_file_quietly(path: Union[str, Path, None], description: str = "file") -> bool:
    """Delete a file if it exists. Returns True when nothing is left behind."""
    if not path:
        return True
    target = Path(path)
    try:
        target.unlink()
        logger.debug("Deleted %s: %s", description, target)
        return True
    except FileNotFoundError:
        return True
    except OSError as exc:
        logger.warning("Failed to delete %s %s: %s", description, target.name, exc)
        return False


def _make_writable_and_retry(func, path, _exc) -> None:
    """rmtree error handler: clear the read-only bit and retry once."""
    os.chmod(path, os.lstat(path).st_mode | stat.S_IWRITE)
    func(path)


def _rmtree(target: Path) -> None:
    if sys.version_info >= (3, 12):
        shutil.rmtree(target, onexc=_make_writable_and_retry)
    else:
        shutil.rmtree(target, onerror=_make_writable_and_retry)


def remove_tree(path: Union[str, Path, None], *, timeout: Optional[float] = None) -> bool:
    """Recursively delete a directory.

    Read-only entries (copied with their source mode) are made writable first.
    "Already gone" counts as success. Other errors are retried until the
    optional ``timeout`` (seconds) runs out and then logged; they are never
    raised. Returns True when the directory no longer exists.
    """
    if not path:
        return True
    target = Path(path)
    deadline = time.monotonic() + timeout if timeout is not None else None

    while True:
        try:
            _rmtree(target)
            logger.debug("Removed directory %s", target)
            return True
        except FileNotFoundError:
            return True
        except OSError as exc:
            if exc.errno == errno.ENOENT:
                return True
            if deadline is None or time.monotonic() >= deadline:
                logger.warning("Failed to clean up directory %s: %s", target, exc)
                return not target.exists()
            time.sleep(CLEANUP_RETRY_DELAY_SECONDS)


def move_file_no_clobber(src: Union[str, Path], dst: Union[str, Path]) -> bool:
    """Move src to dst unless dst already exists.

    Returns False (and leaves both files untouched) when the destination is
    taken. Raises FileOperationError on any other failure.
    """
    src = Path(src)
    dst = Path(dst)
    if dst.exists():
        return False
    try:
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(src), str(dst))
    except OSError as exc:
        raise FileOperationError(f"Move failed: {src} -> {dst}: {exc}",
                                 file_path=str(src), operation="move") from exc
    return True


def file_size_or_zero(path: Union[str, Path]) -> int:
    try:
        return os.path.getsize(path)
    except OSError:
        return 0
