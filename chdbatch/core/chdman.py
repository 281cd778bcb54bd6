"""chdman command model: mode table, argument builders and progress parsing."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import List, Optional, Union

MODE_CD = "createcd"
MODE_HD = "createhd"
MODE_RAW = "createraw"
MODE_VERIFY = "verify"

# .iso, .cue, .gdi, .cdi and .toc all fall through to createcd.
_MODE_BY_EXTENSION = {
    ".img": MODE_HD,
    ".raw": MODE_RAW,
}

PARALLEL_WORKER_BUDGET = 3

COMPRESSION_PROGRESS_RE = re.compile(
    r"Compressing\s+(?:(?:\d+/\d+)|(?:hunk\s+\d+))\s+\((?P<percent>\d+[\.,]?\d*)%\)"
)
COMPRESSION_RATIO_RE = re.compile(r"ratio\s*=\s*(?P<ratio>\d+[\.,]\d+)%")
VERIFY_PROGRESS_RE = re.compile(r"Verifying,\s*(?P<percent>\d+[\.,]?\d*)%\s+complete")


def select_mode(path_or_ext: Union[str, Path]) -> str:
    """Map a staged file (or bare extension) to the chdman create mode."""
    value = str(path_or_ext)
    ext = Path(value).suffix.lower() or value.lower()
    return _MODE_BY_EXTENSION.get(ext, MODE_CD)


def cores_per_conversion(parallel: bool, cpu_count: Optional[int] = None,
                         worker_budget: int = PARALLEL_WORKER_BUDGET) -> int:
    cpus = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
    if parallel:
        return max(1, cpus // max(1, worker_budget))
    return max(1, cpus)


def build_create_args(mode: str, input_path: Union[str, Path], output_path: Union[str, Path],
                      cores: int) -> List[str]:
    return [mode, "-i", str(input_path), "-o", str(output_path), "-f", "-np", str(max(1, int(cores)))]


def build_verify_args(chd_path: Union[str, Path]) -> List[str]:
    return [MODE_VERIFY, "-i", str(chd_path)]


def _to_float(raw: str) -> Optional[float]:
    try:
        return float(raw.replace(",", "."))
    except ValueError:
        return None


def parse_compression_progress(line: Optional[str]) -> Optional[float]:
    if not line:
        return None
    match = COMPRESSION_PROGRESS_RE.search(line)
    if not match:
        return None
    return _to_float(match.group("percent"))


def parse_compression_ratio(line: Optional[str]) -> Optional[float]:
    if not line:
        return None
    match = COMPRESSION_RATIO_RE.search(line)
    if not match:
        return None
    return _to_float(match.group("ratio"))


def parse_verify_progress(line: Optional[str]) -> Optional[float]:
    if not line:
        return None
    match = VERIFY_PROGRESS_RE.search(line)
    if not match:
        return None
    return _to_float(match.group("percent"))
