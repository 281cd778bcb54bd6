"""One-way event sinks the pipelines report through.

The UI (or CLI) hands an EventSinks instance to the scheduler; nothing in the
core reaches for a global log window or status bar. A failing callback is
logged and ignored so a UI bug never aborts a batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .models import BatchReport, LogCallback, ProgressCallback, ProgressSample, ThroughputCallback, ToolProgressCallback

logger = logging.getLogger(__name__)

SummaryCallback = Callable[[BatchReport], None]


def timestamped(message: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now()).strftime("%H:%M:%S.%f")[:-3]
    return f"[{stamp}] {message}"


@dataclass
class EventSinks:
    log_cb: Optional[LogCallback] = None
    progress_cb: Optional[ProgressCallback] = None
    throughput_cb: Optional[ThroughputCallback] = None
    tool_progress_cb: Optional[ToolProgressCallback] = None
    summary_cb: Optional[SummaryCallback] = None

    def _dispatch(self, kind: str, callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("%s callback failed", kind)

    def log(self, message: str, level: int = logging.INFO) -> None:
        logger.log(level, message)
        self._dispatch("log", self.log_cb, timestamped(message))

    def progress(self, sample: ProgressSample) -> None:
        logger.debug(sample.describe())
        self._dispatch("progress", self.progress_cb, sample)

    def throughput(self, mb_per_sec: float) -> None:
        self._dispatch("throughput", self.throughput_cb, float(mb_per_sec))

    def tool_progress(self, item_name: str, percent: float) -> None:
        self._dispatch("tool progress", self.tool_progress_cb, item_name, float(percent))

    def summary(self, report: BatchReport) -> None:
        for line in report.summary_lines():
            self.log(line)
        self._dispatch("summary", self.summary_cb, report)
