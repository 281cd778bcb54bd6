"""Per-file CHD verification with optional sorting into success/failed folders."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..core import chdman
from ..core.file_utils import move_file_no_clobber, raise_if_cancelled
from ..exceptions import BaseError, OperationCancelledError
from ..utils.external_tools import ToolInvocation, ToolSpec, run_tool
from .events import EventSinks
from .models import CancelToken, ItemResult, WorkItem

logger = logging.getLogger(__name__)


@dataclass
class VerificationOptions:
    scan_root: Path
    recursive: bool = False
    move_success_to: Optional[Path] = None
    move_failed_to: Optional[Path] = None
    tool_timeout_sec: Optional[float] = None


def mirrored_destination(source: Path, scan_root: Path, dest_root: Path, keep_subfolders: bool) -> Path:
    """``dest_root/<path of source relative to scan_root>/<name>``."""
    if keep_subfolders:
        try:
            relative_dir = source.parent.relative_to(scan_root)
        except ValueError:
            relative_dir = Path()
        return dest_root / relative_dir / source.name
    return dest_root / source.name


class VerificationPipeline:
    def __init__(
        self,
        chdman_tool: ToolSpec,
        events: EventSinks,
        options: VerificationOptions,
        *,
        cancel_token: Optional[CancelToken] = None,
    ) -> None:
        self.chdman_tool = chdman_tool
        self.events = events
        self.options = options
        self.cancel_token = cancel_token

    def process(self, item: WorkItem) -> ItemResult:
        started = time.perf_counter()
        chd_path = item.source_path
        try:
            raise_if_cancelled(self.cancel_token, "Verification")
            valid = self._verify(chd_path)
        except OperationCancelledError:
            self.events.log(f"Verification cancelled for {item.name}.")
            raise
        except (BaseError, OSError) as exc:
            self.events.log(f"Error verifying file {item.name}: {exc}", logging.ERROR)
            return ItemResult(str(chd_path), "failed", error_code=getattr(exc, "error_code", "IO_ERROR"),
                              message=str(exc), duration_sec=time.perf_counter() - started)
        except Exception as exc:
            logger.exception("Unexpected error verifying %s", chd_path)
            self.events.log(f"Error verifying file {item.name}: {exc}", logging.ERROR)
            return ItemResult(str(chd_path), "failed", error_code="UNEXPECTED_ERROR",
                              message=str(exc), duration_sec=time.perf_counter() - started)

        final_path = chd_path
        if valid:
            self.events.log(f"✓ Verification successful: {item.name}")
            if self.options.move_success_to is not None:
                final_path = self._move(chd_path, self.options.move_success_to, "successfully verified")
        else:
            self.events.log(f"✗ Verification failed: {item.name}", logging.WARNING)
            if self.options.move_failed_to is not None:
                final_path = self._move(chd_path, self.options.move_failed_to, "failed verification")

        return ItemResult(
            source_path=str(chd_path),
            status="succeeded" if valid else "failed",
            output_path=str(final_path),
            error_code=None if valid else "VERIFY_FAILED",
            duration_sec=time.perf_counter() - started,
        )

    def _verify(self, chd_path: Path) -> bool:
        def _stdout(line: str) -> None:
            self.events.log(f"[CHDMAN VERIFY STDOUT] {line}")

        def _stderr(line: str) -> None:
            percent = chdman.parse_verify_progress(line)
            if percent is not None:
                self.events.tool_progress(chd_path.name, percent)
            else:
                self.events.log(f"[CHDMAN VERIFY STDERR] {line}")

        invocation = ToolInvocation(
            tool=self.chdman_tool,
            args=tuple(chdman.build_verify_args(chd_path)),
            cwd=str(chd_path.parent),
            on_stdout=_stdout,
            on_stderr=_stderr,
        )
        exit_code = run_tool(invocation, cancel_token=self.cancel_token,
                             timeout_sec=self.options.tool_timeout_sec)
        return exit_code == 0

    def _move(self, source: Path, dest_root: Path, reason: str) -> Path:
        destination = mirrored_destination(source, self.options.scan_root, dest_root, self.options.recursive)
        try:
            moved = move_file_no_clobber(source, destination)
        except BaseError as exc:
            self.events.log(f"  Error moving {source.name} to {dest_root}: {exc}", logging.ERROR)
            return source

        if not moved:
            self.events.log(f"  Cannot move {source.name}: Destination file already exists at "
                            f"{destination}. Skipping move.")
            return source
        self.events.log(f"  Moved {source.name} ({reason}) to {destination}")
        return destination
