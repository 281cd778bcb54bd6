from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def pytest_configure() -> None:
    """Ensure pytest base temp directory exists for CI runs."""

    repo_root = Path(__file__).resolve().parents[2]
    base_temp = repo_root / "temp" / "pytest"
    base_temp.mkdir(parents=True, exist_ok=True)


# Behaviour switches are read from the environment so monkeypatch.setenv
# reaches the child process:
#   FAKE_CHDMAN_EXIT   exit code for create/verify (default 0)
#   FAKE_CHDMAN_SLEEP  seconds to keep running after writing partial output
#   FAKE_CHDMAN_LOG    file that receives one line of argv per call
#   FAKE_CHDMAN_NO_OUTPUT  report success without writing the CHD
FAKE_CHDMAN = r'''
import os, sys, time, pathlib

args = sys.argv[1:]
log = os.environ.get("FAKE_CHDMAN_LOG")
if log:
    with open(log, "a", encoding="utf-8") as f:
        f.write(" ".join(args) + "\n")

mode = args[0]
inp = pathlib.Path(args[args.index("-i") + 1])
exit_code = int(os.environ.get("FAKE_CHDMAN_EXIT", "0"))

if mode == "verify":
    sys.stderr.write("Verifying, 50.0% complete...\r")
    sys.stderr.flush()
    data = inp.read_bytes()
    if data.startswith(b"BAD"):
        sys.stderr.write("Error: CHD is corrupt\n")
        sys.exit(1)
    print("Overall SHA1 verification successful!")
    sys.exit(exit_code)

out = pathlib.Path(args[args.index("-o") + 1])
if inp.suffix.lower() == ".cue":
    for line in inp.read_text(encoding="utf-8").splitlines():
        if line.strip().upper().startswith("FILE "):
            track = line.split('"')[1]
            if not (inp.parent / track).is_file():
                sys.stderr.write("Error: missing track " + track + "\n")
                sys.exit(2)

if not os.environ.get("FAKE_CHDMAN_NO_OUTPUT"):
    out.write_bytes(b"MComprHD" + inp.read_bytes())
sys.stderr.write("Compressing hunk 1 (50.0%) ratio=40.5%\r")
sys.stderr.flush()
sleep = float(os.environ.get("FAKE_CHDMAN_SLEEP", "0"))
if sleep:
    time.sleep(sleep)
sys.stderr.write("Compression complete ... final ratio = 40.5%\n")
sys.exit(exit_code)
'''

FAKE_MAXCSO = r'''
import os, sys, pathlib

args = sys.argv[1:]
inp = pathlib.Path(args[args.index("--decompress") + 1])
out = pathlib.Path(args[args.index("-o") + 1])
if os.environ.get("FAKE_MAXCSO_FAIL"):
    sys.stderr.write("Error: not a CSO file\n")
    sys.exit(1)
if not os.environ.get("FAKE_MAXCSO_NO_OUTPUT"):
    out.write_bytes(inp.read_bytes())
'''


@pytest.fixture
def fake_chdman(tmp_path: Path):
    from chdbatch.utils.external_tools import ToolSpec

    script = tmp_path / "tools" / "fake_chdman.py"
    script.parent.mkdir(parents=True, exist_ok=True)
    script.write_text(FAKE_CHDMAN, encoding="utf-8")
    return ToolSpec("chdman", sys.executable, (str(script),))


@pytest.fixture
def fake_maxcso(tmp_path: Path):
    from chdbatch.utils.external_tools import ToolSpec

    script = tmp_path / "tools" / "fake_maxcso.py"
    script.parent.mkdir(parents=True, exist_ok=True)
    script.write_text(FAKE_MAXCSO, encoding="utf-8")
    return ToolSpec("maxcso", sys.executable, (str(script),))


@pytest.fixture
def recorder():
    """EventSinks wired to plain lists."""
    from chdbatch.app.events import EventSinks

    class _Recorder:
        def __init__(self) -> None:
            self.logs = []
            self.progress = []
            self.throughput = []
            self.tool_progress = []
            self.summaries = []
            self.sinks = EventSinks(
                log_cb=self.logs.append,
                progress_cb=self.progress.append,
                throughput_cb=self.throughput.append,
                tool_progress_cb=lambda name, pct: self.tool_progress.append((name, pct)),
                summary_cb=self.summaries.append,
            )

        def text(self) -> str:
            return "\n".join(self.logs)

    return _Recorder()
