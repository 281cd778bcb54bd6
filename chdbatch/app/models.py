"""Shared type aliases and dataclasses for the batch pipelines."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Literal, Optional, Tuple

ItemStatus = Literal["succeeded", "failed", "cancelled"]

ProgressCallback = Callable[["ProgressSample"], None]
LogCallback = Callable[[str], None]
ThroughputCallback = Callable[[float], None]
ToolProgressCallback = Callable[[str, float], None]


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()


class ItemKind(str, Enum):
    PLAIN_IMAGE = "plain"
    COMPRESSED_IMAGE = "compressed"
    ARCHIVE = "archive"
    CHD = "chd"


class PipelineState(str, Enum):
    DISCOVERED = "discovered"
    STAGED = "staged"
    CONVERTING = "converting"
    COMMITTED = "committed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class WorkItem:
    source_path: Path
    kind: ItemKind
    output_path: Path

    @property
    def name(self) -> str:
        return self.source_path.name


@dataclass(frozen=True)
class ProgressSample:
    current: int
    total: int
    item_name: str
    phase: str

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 0.0
        return self.current / self.total * 100.0

    def describe(self) -> str:
        return f"{self.phase} file {self.current} of {self.total}: {self.item_name} ({self.percentage:.1f}%)"


class BatchCounters:
    """Totals shared by concurrent pipelines. All updates take the lock."""

    def __init__(self, total: int = 0) -> None:
        self._lock = threading.Lock()
        self.total = total
        self.succeeded = 0
        self.failed = 0
        self.processed = 0

    def record(self, success: bool) -> int:
        """Count one finished item and return how many have finished so far."""
        with self._lock:
            if success:
                self.succeeded += 1
            else:
                self.failed += 1
            self.processed += 1
            return self.processed

    def snapshot(self) -> Tuple[int, int, int, int]:
        with self._lock:
            return self.total, self.succeeded, self.failed, self.processed


@dataclass(frozen=True)
class ItemResult:
    source_path: str
    status: ItemStatus
    output_path: Optional[str] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    duration_sec: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "succeeded"


@dataclass(frozen=True)
class BatchReport:
    operation: str
    total: int
    succeeded: int
    failed: int
    cancelled: bool
    elapsed_sec: float
    items: List[ItemResult] = field(default_factory=list)

    def summary_lines(self) -> List[str]:
        past = {"conversion": "converted", "verification": "verified"}.get(self.operation, self.operation + "ed")
        state = "cancelled" if self.cancelled else "completed"
        lines = [
            f"--- Batch {self.operation} {state}. ---",
            f"Total files processed: {self.total}",
            f"Successfully {past}: {self.succeeded} files",
        ]
        if self.failed:
            verb = {"conversion": "convert", "verification": "verify"}.get(self.operation, self.operation)
            lines.append(f"Failed to {verb}: {self.failed} files")
        return lines


@dataclass(frozen=True)
class ConversionRequest:
    input_dir: Path
    output_dir: Path
    delete_originals: bool = False
    parallel: bool = False
    max_workers: int = 3
    smallest_first: bool = False


@dataclass(frozen=True)
class VerificationRequest:
    input_dir: Path
    recursive: bool = False
    move_success_to: Optional[Path] = None
    move_failed_to: Optional[Path] = None
    parallel: bool = False
    max_workers: int = 3
    smallest_first: bool = False
