"""Per-file conversion: stage the input, run chdman, commit or clean up."""

from __future__ import annotations

import logging
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Set, Union

from ..core import chdman
from ..core.extraction import archive_support_available, decompress, extract_archive
from ..core.file_utils import copy_with_cancel, delete_file_quietly, raise_if_cancelled, remove_tree
from ..core.sidecar import DESCRIPTOR_EXTENSIONS, missing_sidecars, resolve_sidecar_files
from ..exceptions import (
    BaseError,
    DependencyMissingError,
    FileOperationError,
    OperationCancelledError,
    OutputMissingError,
    ParseError,
    StagingFailedError,
    ToolExecutionFailedError,
)
from ..logging_config import LoggingTimer
from ..security.security_utils import safe_temp_file_path
from ..utils.external_tools import CHDMAN, ToolInvocation, ToolSpec, run_with_throughput
from .events import EventSinks
from .models import CancelToken, ItemKind, ItemResult, PipelineState, WorkItem

logger = logging.getLogger(__name__)

STAGING_PREFIX = "chdbatch_"
DEFAULT_CLEANUP_TIMEOUT_SEC = 5.0


class StagingRegistry:
    """Staging directories created during one batch that still exist."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._dirs: Set[Path] = set()

    def add(self, path: Path) -> None:
        with self._lock:
            self._dirs.add(path)

    def discard(self, path: Path) -> None:
        with self._lock:
            self._dirs.discard(path)

    def pending(self) -> List[Path]:
        with self._lock:
            return sorted(self._dirs)

    def sweep(self, timeout: Optional[float] = DEFAULT_CLEANUP_TIMEOUT_SEC) -> int:
        """Remove whatever is left; returns how many directories survived."""
        survivors = 0
        for path in self.pending():
            if remove_tree(path, timeout=timeout):
                self.discard(path)
            else:
                survivors += 1
        return survivors


class StagingContext:
    """A private temp directory for one in-flight item.

    Created on enter, removed recursively on exit whatever the outcome.
    """

    def __init__(
        self,
        temp_root: Optional[Union[str, Path]] = None,
        cleanup_timeout: Optional[float] = DEFAULT_CLEANUP_TIMEOUT_SEC,
        registry: Optional[StagingRegistry] = None,
    ) -> None:
        self.temp_root = Path(temp_root) if temp_root else None
        self.cleanup_timeout = cleanup_timeout
        self.registry = registry
        self.directory: Optional[Path] = None
        self.staged_path: Optional[Path] = None

    def __enter__(self) -> "StagingContext":
        if self.temp_root is not None:
            self.temp_root.mkdir(parents=True, exist_ok=True)
        try:
            self.directory = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX,
                                                   dir=str(self.temp_root) if self.temp_root else None))
        except OSError as exc:
            raise StagingFailedError(f"Cannot create staging directory: {exc}") from exc
        if self.registry is not None:
            self.registry.add(self.directory)
        logger.debug("Created staging directory %s", self.directory)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.cleanup()

    def cleanup(self, timeout: Optional[float] = None) -> bool:
        if self.directory is None:
            return True
        removed = remove_tree(self.directory, timeout=timeout if timeout is not None else self.cleanup_timeout)
        if removed and self.registry is not None:
            self.registry.discard(self.directory)
        return removed


@dataclass
class ConversionOptions:
    delete_originals: bool = False
    cores: int = 1
    temp_root: Optional[Path] = None
    cleanup_timeout_sec: float = DEFAULT_CLEANUP_TIMEOUT_SEC
    poll_interval_sec: float = 1.0
    tool_timeout_sec: Optional[float] = None


@dataclass
class _ItemRun:
    item: WorkItem
    state: PipelineState = PipelineState.DISCOVERED

    def move_to(self, state: PipelineState) -> None:
        logger.debug("%s: %s -> %s", self.item.name, self.state.value, state.value)
        self.state = state


class ConversionPipeline:
    """Runs one WorkItem through Discovered -> Staged -> Converting -> Committed.

    Per-item failures come back as a failed ItemResult. Only cancellation
    leaves ``process`` as an exception.
    """

    def __init__(
        self,
        chdman_tool: ToolSpec,
        events: EventSinks,
        options: ConversionOptions,
        *,
        maxcso_tool: Optional[ToolSpec] = None,
        cancel_token: Optional[CancelToken] = None,
        registry: Optional[StagingRegistry] = None,
        archive_support: Callable[[str], bool] = archive_support_available,
    ) -> None:
        self.chdman_tool = chdman_tool
        self.maxcso_tool = maxcso_tool
        self.events = events
        self.options = options
        self.cancel_token = cancel_token
        self.registry = registry
        self.archive_support = archive_support

    def process(self, item: WorkItem) -> ItemResult:
        run = _ItemRun(item)
        started = time.perf_counter()
        self.events.log(f"Starting to process for conversion: {item.name}")

        try:
            raise_if_cancelled(self.cancel_token, "Conversion")
            with StagingContext(self.options.temp_root, self.options.cleanup_timeout_sec,
                                self.registry) as staging:
                with LoggingTimer(f"Staging {item.name}", logger):
                    self._stage(run, staging)
                raise_if_cancelled(self.cancel_token, "Conversion")
                self._convert(run, staging)
                self._commit(run)
        except OperationCancelledError:
            self._discard_partial_output(run)
            run.move_to(PipelineState.CANCELLED)
            self.events.log(f"Conversion processing cancelled for {item.name}.")
            raise
        except (BaseError, OSError) as exc:
            return self._fail(run, exc, started)
        except Exception as exc:
            logger.exception("Unexpected error converting %s", item.source_path)
            return self._fail(run, exc, started)

        self.events.log(f"Successfully converted: {item.name} to {item.output_path.name}")
        return ItemResult(
            source_path=str(item.source_path),
            status="succeeded",
            output_path=str(item.output_path),
            duration_sec=time.perf_counter() - started,
        )

    # -------------------------------------------------------------------------------------------------
    # Discovered -> Staged
    # -------------------------------------------------------------------------------------------------

    def _stage(self, run: _ItemRun, staging: StagingContext) -> None:
        item = run.item
        assert staging.directory is not None
        ext = item.source_path.suffix.lower()

        if item.kind is ItemKind.COMPRESSED_IMAGE:
            if self.maxcso_tool is None:
                raise DependencyMissingError(
                    f"Skipping {item.name}: maxcso is not available for .cso decompression.",
                    tool="maxcso", file_path=str(item.source_path),
                )
            self.events.log(f"CSO file detected: {item.name}. Attempting decompression.")
            staging.staged_path = decompress(
                item.source_path,
                staging.directory,
                maxcso=self.maxcso_tool,
                on_sample=self.events.throughput,
                log_cb=self.events.log,
                cancel_token=self.cancel_token,
            )
        elif item.kind is ItemKind.ARCHIVE:
            if not self.archive_support(ext):
                raise DependencyMissingError(
                    f"Skipping {item.name}: no extractor available for {ext} archives.",
                    tool=ext.lstrip("."), file_path=str(item.source_path),
                )
            self.events.log(f"Archive detected: {item.name}. Attempting extraction.")
            found = extract_archive(
                item.source_path,
                staging.directory / "extract",
                scratch_dir=staging.directory,
                log_cb=self.events.log,
                cancel_token=self.cancel_token,
            )
            staging.staged_path = self._copy_into_staging(found, staging.directory)
        else:
            staging.staged_path = self._copy_into_staging(item.source_path, staging.directory)

        run.move_to(PipelineState.STAGED)
        self.events.log(f"Staged {item.name} as {staging.staged_path.name}")

    def _copy_into_staging(self, source: Path, staging_dir: Path) -> Path:
        ext = source.suffix.lstrip(".").lower() or "bin"
        staged = safe_temp_file_path(ext, staging_dir)
        try:
            copy_with_cancel(source, staged, cancel_token=self.cancel_token)
        except FileOperationError as exc:
            raise StagingFailedError(f"Failed to stage {source.name}: {exc}", file_path=str(source)) from exc

        if source.suffix.lower() in DESCRIPTOR_EXTENSIONS:
            self._stage_sidecars(source, staging_dir)
        return staged

    def _stage_sidecars(self, descriptor: Path, staging_dir: Path) -> None:
        """Copy track files next to the staged descriptor under their referenced names."""
        try:
            sidecars = resolve_sidecar_files(descriptor)
            missing = missing_sidecars(descriptor)
        except ParseError as exc:
            raise StagingFailedError(str(exc), file_path=str(descriptor)) from exc

        for path in missing:
            self.events.log(f"WARNING: {descriptor.name} references missing file {path.name}", logging.WARNING)

        for sidecar in sidecars:
            if sidecar in missing:
                continue
            relative = sidecar.relative_to(descriptor.parent)
            try:
                copy_with_cancel(sidecar, staging_dir / relative, cancel_token=self.cancel_token)
            except FileOperationError as exc:
                raise StagingFailedError(f"Failed to stage track {sidecar.name}: {exc}",
                                         file_path=str(sidecar)) from exc

    # -------------------------------------------------------------------------------------------------
    # Staged -> Converting
    # -------------------------------------------------------------------------------------------------

    def _convert(self, run: _ItemRun, staging: StagingContext) -> None:
        item = run.item
        staged = staging.staged_path
        assert staged is not None and staging.directory is not None

        mode = chdman.select_mode(staged)
        cores = max(1, int(self.options.cores))
        self.events.log(f"CHDMAN Convert: Using command '{mode}' with {cores} core(s) for {item.name}.")

        try:
            item.output_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FileOperationError(f"Cannot create output folder {item.output_path.parent}: {exc}",
                                     file_path=str(item.output_path), operation="mkdir") from exc

        last_ratio: Optional[float] = None

        def _on_line(line: str, stream: str) -> None:
            nonlocal last_ratio
            ratio = chdman.parse_compression_ratio(line)
            if ratio is not None:
                last_ratio = ratio
            percent = chdman.parse_compression_progress(line)
            if percent is not None:
                self.events.tool_progress(item.name, percent)
                return
            if stream == "stderr":
                self.events.log(f"[CHDMAN CONVERT STDERR] {line}")
            else:
                logger.debug("chdman: %s", line)

        invocation = ToolInvocation(
            tool=self.chdman_tool,
            args=tuple(chdman.build_create_args(mode, staged, item.output_path, cores)),
            cwd=str(staging.directory),
            on_stdout=lambda line: _on_line(line, "stdout"),
            on_stderr=lambda line: _on_line(line, "stderr"),
        )

        run.move_to(PipelineState.CONVERTING)
        exit_code = run_with_throughput(
            invocation,
            item.output_path,
            poll_interval=self.options.poll_interval_sec,
            on_sample=self.events.throughput,
            cancel_token=self.cancel_token,
            timeout_sec=self.options.tool_timeout_sec,
        )
        if exit_code != 0:
            raise ToolExecutionFailedError(
                f"chdman {mode} failed for {item.name} (exit code {exit_code})",
                exit_code=exit_code, tool=CHDMAN, file_path=str(item.source_path),
            )
        if not item.output_path.is_file():
            raise OutputMissingError(f"chdman reported success but {item.output_path.name} is missing",
                                     file_path=str(item.source_path))
        if last_ratio is not None:
            self.events.log(f"Compression ratio for {item.name}: {last_ratio:.1f}%")

    # -------------------------------------------------------------------------------------------------
    # Converting -> Committed / Failed
    # -------------------------------------------------------------------------------------------------

    def _commit(self, run: _ItemRun) -> None:
        run.move_to(PipelineState.COMMITTED)
        if not self.options.delete_originals:
            return

        item = run.item
        targets = [item.source_path]
        if item.kind is ItemKind.PLAIN_IMAGE and item.source_path.suffix.lower() in DESCRIPTOR_EXTENSIONS:
            try:
                targets.extend(resolve_sidecar_files(item.source_path))
            except ParseError as exc:
                self.events.log(f"Failed to list track files of {item.name}: {exc}", logging.WARNING)

        seen = set()
        for target in targets:
            key = str(target).lower()
            if key in seen or not target.exists():
                continue
            seen.add(key)
            if delete_file_quietly(target, "original game file"):
                self.events.log(f"Deleted original file: {target.name}")
            else:
                self.events.log(f"Failed to delete original file {target.name}", logging.WARNING)

    def _discard_partial_output(self, run: _ItemRun) -> None:
        # Anything at the destination before chdman started is not ours to delete.
        if run.state is not PipelineState.CONVERTING:
            return
        if run.item.output_path.exists():
            if delete_file_quietly(run.item.output_path, "partial output"):
                self.events.log(f"Deleted partial output: {run.item.output_path.name}")

    def _fail(self, run: _ItemRun, exc: Exception, started: float) -> ItemResult:
        self._discard_partial_output(run)
        run.move_to(PipelineState.FAILED)
        error_code = getattr(exc, "error_code", "IO_ERROR" if isinstance(exc, OSError) else "UNEXPECTED_ERROR")
        self.events.log(f"Failed to convert {run.item.name}: {exc}", logging.ERROR)
        return ItemResult(
            source_path=str(run.item.source_path),
            status="failed",
            error_code=error_code,
            message=str(exc),
            duration_sec=time.perf_counter() - started,
        )
