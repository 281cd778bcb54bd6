#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""CHD Batch Converter - module entry point.

Keeps `python -m chdbatch` and the `chdbatch` console script working by
delegating to start_chd_batch.py.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import List, Optional


def main(argv: Optional[List[str]] = None) -> int:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)

    import start_chd_batch

    result = start_chd_batch.main(argv)
    if result is None:
        return 0
    return int(result)


if __name__ == "__main__":
    raise SystemExit(main())
