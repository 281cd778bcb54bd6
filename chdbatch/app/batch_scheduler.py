"""Batch discovery, ordering and dispatch for conversion and verification runs."""

from __future__ import annotations

import logging
import os
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

from ..core.extraction import ARCHIVE_EXTENSIONS, COMPRESSED_IMAGE_EXTENSIONS, PRIMARY_TARGET_EXTENSIONS
from ..core.file_utils import file_size_or_zero
from ..exceptions import BatchCancelledError, OperationCancelledError
from ..security.security_utils import sanitize_filename
from .conversion_pipeline import DEFAULT_CLEANUP_TIMEOUT_SEC, StagingRegistry
from .events import EventSinks
from .models import BatchCounters, BatchReport, CancelToken, ItemKind, ItemResult, ProgressSample, WorkItem

logger = logging.getLogger(__name__)

CONVERSION_INPUT_EXTENSIONS = PRIMARY_TARGET_EXTENSIONS + ARCHIVE_EXTENSIONS + COMPRESSED_IMAGE_EXTENSIONS
CHD_EXTENSION = ".chd"
DEFAULT_MAX_WORKERS = 3

ProcessFn = Callable[[WorkItem], ItemResult]


# =====================================================================================================
# Discovery
# =====================================================================================================

def classify(path: Union[str, Path]) -> Optional[ItemKind]:
    ext = Path(path).suffix.lower()
    if ext in COMPRESSED_IMAGE_EXTENSIONS:
        return ItemKind.COMPRESSED_IMAGE
    if ext in ARCHIVE_EXTENSIONS:
        return ItemKind.ARCHIVE
    if ext in PRIMARY_TARGET_EXTENSIONS:
        return ItemKind.PLAIN_IMAGE
    if ext == CHD_EXTENSION:
        return ItemKind.CHD
    return None


def discover_conversion_items(input_dir: Union[str, Path], output_dir: Union[str, Path]) -> List[WorkItem]:
    """Top-level files of ``input_dir`` with a supported input extension."""
    input_dir = Path(input_dir)
    output_dir = Path(output_dir)
    items: List[WorkItem] = []
    for entry in sorted(input_dir.iterdir(), key=lambda p: p.name.lower()):
        if not entry.is_file():
            continue
        if entry.suffix.lower() not in CONVERSION_INPUT_EXTENSIONS:
            continue
        kind = classify(entry)
        if kind is None:
            continue
        items.append(WorkItem(entry, kind, output_dir / sanitize_filename(f"{entry.stem}{CHD_EXTENSION}")))
    return items


def discover_verification_items(input_dir: Union[str, Path], recursive: bool = False) -> List[WorkItem]:
    input_dir = Path(input_dir)
    found: List[Path] = []
    if recursive:
        for dirpath, dirnames, filenames in os.walk(input_dir):
            dirnames.sort()
            for name in sorted(filenames):
                if name.lower().endswith(CHD_EXTENSION):
                    found.append(Path(dirpath) / name)
    else:
        found = [p for p in sorted(input_dir.iterdir(), key=lambda p: p.name.lower())
                 if p.is_file() and p.suffix.lower() == CHD_EXTENSION]
    return [WorkItem(path, ItemKind.CHD, path) for path in found]


def order_items(items: Sequence[WorkItem], smallest_first: bool = False) -> List[WorkItem]:
    if not smallest_first:
        return list(items)
    # sorted() is stable, so equal sizes keep discovery order.
    return sorted(items, key=lambda item: file_size_or_zero(item.source_path))


# =====================================================================================================
# Dispatch
# =====================================================================================================

class BatchScheduler:
    """Fans items out to a pipeline, sequentially or on a bounded pool.

    Only cancellation escapes ``run`` (as BatchCancelledError carrying the
    report); every other per-item problem is counted as a failure.
    """

    def __init__(
        self,
        events: EventSinks,
        *,
        cancel_token: Optional[CancelToken] = None,
        parallel: bool = False,
        max_workers: int = DEFAULT_MAX_WORKERS,
        registry: Optional[StagingRegistry] = None,
        cleanup_timeout_sec: float = DEFAULT_CLEANUP_TIMEOUT_SEC,
    ) -> None:
        self.events = events
        self.cancel_token = cancel_token or CancelToken()
        self.parallel = parallel
        self.max_workers = max(1, int(max_workers))
        self.registry = registry
        self.cleanup_timeout_sec = cleanup_timeout_sec

    def run(self, operation: str, phase: str, items: Sequence[WorkItem], process: ProcessFn) -> BatchReport:
        counters = BatchCounters(total=len(items))
        results: List[ItemResult] = []
        started = time.perf_counter()
        cancelled = False

        self.events.log(f"Found {len(items)} files to process for {operation}.")
        try:
            if not items:
                self.events.log(f"No supported files found for {operation}.")
            elif self.parallel and len(items) > 1:
                cancelled = self._run_parallel(phase, items, process, counters, results)
            else:
                cancelled = self._run_sequential(phase, items, process, counters, results)
        finally:
            report = self._finalize(operation, counters, results, cancelled or self.cancel_token.is_cancelled(),
                                    started)

        if report.cancelled:
            raise BatchCancelledError(report, f"Batch {operation} cancelled")
        return report

    def _complete(self, phase: str, item: WorkItem, result: ItemResult,
                  counters: BatchCounters, results: List[ItemResult]) -> None:
        processed = counters.record(result.ok)
        results.append(result)
        total = counters.total
        self.events.progress(ProgressSample(processed, total, item.name, phase))

    def _run_sequential(self, phase: str, items: Sequence[WorkItem], process: ProcessFn,
                        counters: BatchCounters, results: List[ItemResult]) -> bool:
        for item in items:
            if self.cancel_token.is_cancelled():
                return True
            try:
                result = process(item)
            except OperationCancelledError:
                return True
            self._complete(phase, item, result, counters, results)
        return False

    def _guarded(self, process: ProcessFn, item: WorkItem) -> Optional[ItemResult]:
        # Queued items re-check the shared token so nothing new starts after cancel.
        if self.cancel_token.is_cancelled():
            return None
        return process(item)

    def _run_parallel(self, phase: str, items: Sequence[WorkItem], process: ProcessFn,
                      counters: BatchCounters, results: List[ItemResult]) -> bool:
        cancelled = False
        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="chdbatch-worker")
        try:
            pending: Dict[Future, WorkItem] = {
                executor.submit(self._guarded, process, item): item for item in items
            }
            while pending:
                done, _ = wait(list(pending), timeout=0.25, return_when=FIRST_COMPLETED)
                for future in done:
                    item = pending.pop(future)
                    try:
                        result = future.result()
                    except OperationCancelledError:
                        cancelled = True
                        continue
                    if result is None:
                        cancelled = True
                        continue
                    self._complete(phase, item, result, counters, results)
                if self.cancel_token.is_cancelled() and not cancelled:
                    cancelled = True
                    for future in list(pending):
                        if future.cancel():
                            pending.pop(future)
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
        return cancelled

    def _finalize(self, operation: str, counters: BatchCounters, results: List[ItemResult],
                  cancelled: bool, started: float) -> BatchReport:
        elapsed = time.perf_counter() - started
        self.events.throughput(0.0)

        if self.registry is not None:
            survivors = self.registry.sweep(timeout=self.cleanup_timeout_sec)
            if survivors:
                self.events.log(f"WARNING: {survivors} staging folder(s) could not be removed.",
                                logging.WARNING)

        total, succeeded, failed, _processed = counters.snapshot()
        report = BatchReport(
            operation=operation,
            total=total,
            succeeded=succeeded,
            failed=failed,
            cancelled=cancelled,
            elapsed_sec=elapsed,
            items=list(results),
        )
        if cancelled:
            self.events.log(f"Batch {operation} cancelled by user.")
        self.events.summary(report)
        return report
