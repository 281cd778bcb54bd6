"""External tools integration: discovery, process lifetime and throughput sampling."""

from __future__ import annotations

import os
import sys
import shutil
import platform
import subprocess
import threading
import time
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union
from pathlib import Path

import psutil

from ..exceptions import OperationCancelledError, ToolExecutionFailedError, ToolUnavailableError

logger = logging.getLogger(__name__)

LineCallback = Optional[Callable[[str], None]]
SampleCallback = Optional[Callable[[float], None]]

CANCEL_POLL_INTERVAL_SEC = 0.05
PROCESS_KILL_TIMEOUT_SEC = 5.0
READER_JOIN_TIMEOUT_SEC = 2.0
BYTES_PER_MB = 1024.0 * 1024.0

CHDMAN = "chdman"
MAXCSO = "maxcso"


@dataclass(frozen=True)
class ToolSpec:
    """How to launch one external tool: executable plus fixed leading args."""

    name: str
    exe_path: str
    prefix_args: Tuple[str, ...] = ()

    def command(self, args: Sequence[str]) -> List[str]:
        return [self.exe_path, *self.prefix_args, *[str(arg) for arg in args]]


@dataclass(frozen=True)
class ToolInvocation:
    tool: ToolSpec
    args: Tuple[str, ...]
    cwd: Optional[str] = None
    on_stdout: LineCallback = None
    on_stderr: LineCallback = None


@dataclass(frozen=True)
class ToolsProbeResult:
    chdman: Optional[ToolSpec]
    maxcso: Optional[ToolSpec]
    rar_backend: bool
    messages: List[str] = field(default_factory=list)

    @property
    def chdman_available(self) -> bool:
        return self.chdman is not None

    @property
    def maxcso_available(self) -> bool:
        return self.maxcso is not None


# =====================================================================================================
# Discovery
# =====================================================================================================

def is_windows_arm64() -> bool:
    return os.name == "nt" and platform.machine().lower() in ("arm64", "aarch64")


def chdman_executable_name() -> str:
    """chdman ships a separate ARM64 build on Windows."""
    base = "chdman_arm64" if is_windows_arm64() else CHDMAN
    return base + ".exe" if os.name == "nt" else base


def _executable_name(tool_name: str) -> str:
    if tool_name == CHDMAN:
        return chdman_executable_name()
    return tool_name + ".exe" if os.name == "nt" else tool_name


def application_directory() -> Path:
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    return Path(__file__).resolve().parents[2]


def resolve_tool(
    tool_name: str,
    configured_path: Optional[str] = None,
    prefix_args: Sequence[str] = (),
    search_dirs: Optional[Sequence[Union[str, Path]]] = None,
) -> Optional[ToolSpec]:
    """Find an external tool: configured path, then bundled dirs, then PATH."""
    configured = str(configured_path or "").strip()
    if configured:
        if os.path.isfile(configured):
            return ToolSpec(tool_name, configured, tuple(prefix_args))
        logger.warning("Configured %s path does not exist: %s", tool_name, configured)
        return None

    exe_name = _executable_name(tool_name)
    dirs = list(search_dirs) if search_dirs is not None else [application_directory()]
    for directory in dirs:
        candidate = Path(directory) / exe_name
        if candidate.is_file():
            return ToolSpec(tool_name, str(candidate), tuple(prefix_args))

    found = shutil.which(exe_name) or shutil.which(tool_name)
    if found:
        return ToolSpec(tool_name, found, tuple(prefix_args))
    return None


def require_tool(spec: Optional[ToolSpec], tool_name: str) -> ToolSpec:
    if spec is None or not os.path.exists(spec.exe_path):
        raise ToolUnavailableError(f"{tool_name} is not available", tool=tool_name)
    return spec


def _tool_from_config(tools_cfg: Dict[str, Any], tool_name: str,
                      search_dirs: Optional[Sequence[Union[str, Path]]]) -> Optional[ToolSpec]:
    tool_cfg = tools_cfg.get(tool_name) or {}
    return resolve_tool(
        tool_name,
        configured_path=tool_cfg.get("exe_path"),
        prefix_args=[str(arg) for arg in (tool_cfg.get("prefix_args") or [])],
        search_dirs=search_dirs,
    )


def probe_tools(
    tools_cfg: Optional[Dict[str, Any]] = None,
    search_dirs: Optional[Sequence[Union[str, Path]]] = None,
) -> ToolsProbeResult:
    """Report which external tools this run can use."""
    from ..core.extraction import configure_rar_backend, rar_backend_available

    tools_cfg = tools_cfg or {}
    chdman = _tool_from_config(tools_cfg, CHDMAN, search_dirs)
    maxcso = _tool_from_config(tools_cfg, MAXCSO, search_dirs)
    configure_rar_backend((tools_cfg.get("unrar") or {}).get("exe_path"))
    rar_ok = rar_backend_available()

    messages: List[str] = []
    if chdman:
        messages.append(f"{chdman_executable_name()} found: {chdman.exe_path}")
    else:
        messages.append(f"WARNING: {chdman_executable_name()} not found! "
                        "Conversion and verification will not work without it.")
    if maxcso:
        messages.append("maxcso found. .cso decompression enabled for conversion.")
    else:
        messages.append("WARNING: maxcso not found. .cso decompression will be disabled for conversion.")
    if not rar_ok:
        messages.append("WARNING: no unrar backend found. .rar extraction will be disabled.")

    return ToolsProbeResult(chdman=chdman, maxcso=maxcso, rar_backend=rar_ok, messages=messages)


# =====================================================================================================
# Process lifetime
# =====================================================================================================

def _terminate_process_tree(process: subprocess.Popen, timeout: float = PROCESS_KILL_TIMEOUT_SEC) -> None:
    if process.poll() is not None:
        return
    try:
        parent = psutil.Process(process.pid)
        victims = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        return
    for proc in victims:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.warning("External tools: access denied killing pid %s", proc.pid)
    _gone, alive = psutil.wait_procs(victims, timeout=timeout)
    if alive:
        logger.warning("External tools: %d process(es) still alive after kill", len(alive))


def _start_reader(stream, callback: LineCallback, label: str) -> threading.Thread:
    def _reader() -> None:
        try:
            for line in iter(stream.readline, ""):
                text = line.rstrip("\r\n")
                if not text or callback is None:
                    continue
                try:
                    callback(text)
                except Exception:
                    logger.exception("External tools: %s line callback failed", label)
        except (OSError, ValueError):
            # Pipe closed underneath us during a kill.
            pass

    thread = threading.Thread(target=_reader, name=f"tool-reader-{label}", daemon=True)
    thread.start()
    return thread


@contextmanager
def managed_process(command: List[str], cwd: Optional[str] = None) -> Iterator[subprocess.Popen]:
    """Start a process with piped, line-decoded output.

    The single cleanup routine kills the process tree if it is still running
    and closes its pipes, on normal exit, error and cancellation alike.
    """
    creationflags = 0
    if os.name == "nt":
        creationflags = getattr(subprocess, "CREATE_NO_WINDOW", 0)

    try:
        process = subprocess.Popen(
            command,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            creationflags=creationflags,
        )
    except FileNotFoundError as exc:
        raise ToolUnavailableError(f"Executable not found: {command[0]}", tool=command[0]) from exc

    try:
        yield process
    finally:
        try:
            _terminate_process_tree(process)
        finally:
            for stream in (process.stdout, process.stderr):
                if stream is not None:
                    try:
                        stream.close()
                    except OSError:
                        logger.debug("External tools: stream close failed", exc_info=True)
            try:
                process.wait(timeout=PROCESS_KILL_TIMEOUT_SEC)
            except subprocess.TimeoutExpired:
                logger.warning("External tools: pid %s did not exit", process.pid)


class ThroughputSampler:
    """Turns output-file size deltas into MB/s."""

    def __init__(self, output_path: Union[str, Path], clock: Callable[[], float] = time.monotonic):
        self.output_path = Path(output_path)
        self._clock = clock
        self._last_size = self._current_size()
        self._last_time = clock()

    def _current_size(self) -> int:
        try:
            return self.output_path.stat().st_size
        except OSError:
            return 0

    def sample(self) -> Optional[float]:
        now = self._clock()
        elapsed = now - self._last_time
        if elapsed <= 0:
            return None
        size = self._current_size()
        rate = (size - self._last_size) / elapsed / BYTES_PER_MB
        self._last_size = size
        self._last_time = now
        return max(rate, 0.0)


def _emit_sample(callback: SampleCallback, value: float) -> None:
    if callback is None:
        return
    try:
        callback(value)
    except Exception:
        logger.exception("External tools: throughput callback failed")


def run_tool(
    invocation: ToolInvocation,
    *,
    cancel_token: Optional[Any] = None,
    timeout_sec: Optional[float] = None,
    sampler: Optional[ThroughputSampler] = None,
    sample_interval: float = 1.0,
    on_sample: SampleCallback = None,
) -> int:
    """Run one external tool to completion and return its exit code.

    Raises OperationCancelledError if the cancel token fires while the tool
    is running; the process tree is killed first.
    """
    command = invocation.tool.command(invocation.args)
    label = invocation.tool.name
    if cancel_token is not None and cancel_token.is_cancelled():
        raise OperationCancelledError(f"{label} cancelled before start")

    logger.debug("Starting %s: %s", label, command)
    start = time.monotonic()
    next_sample = start + sample_interval

    try:
        with managed_process(command, invocation.cwd) as process:
            readers = [
                _start_reader(process.stdout, invocation.on_stdout, f"{label}-out"),
                _start_reader(process.stderr, invocation.on_stderr, f"{label}-err"),
            ]
            while True:
                try:
                    exit_code = process.wait(timeout=CANCEL_POLL_INTERVAL_SEC)
                    break
                except subprocess.TimeoutExpired:
                    pass

                if cancel_token is not None and cancel_token.is_cancelled():
                    logger.info("%s cancelled, killing pid %s", label, process.pid)
                    raise OperationCancelledError(f"{label} cancelled")

                now = time.monotonic()
                if timeout_sec is not None and timeout_sec > 0 and now - start >= timeout_sec:
                    raise ToolExecutionFailedError(
                        f"{label} timed out after {timeout_sec:.0f}s",
                        tool=label, timed_out=True,
                    )

                if sampler is not None and now >= next_sample:
                    rate = sampler.sample()
                    if rate is not None:
                        _emit_sample(on_sample, rate)
                    next_sample = now + sample_interval

            for reader in readers:
                reader.join(timeout=READER_JOIN_TIMEOUT_SEC)
    finally:
        if sampler is not None:
            _emit_sample(on_sample, 0.0)

    logger.debug("%s exited with code %s after %.1fs", label, exit_code, time.monotonic() - start)
    return exit_code


def run_with_throughput(
    invocation: ToolInvocation,
    output_path: Union[str, Path],
    *,
    poll_interval: float = 1.0,
    on_sample: SampleCallback = None,
    cancel_token: Optional[Any] = None,
    timeout_sec: Optional[float] = None,
) -> int:
    """Like run_tool, plus a write-rate sample of ``output_path`` per interval."""
    return run_tool(
        invocation,
        cancel_token=cancel_token,
        timeout_sec=timeout_sec,
        sampler=ThroughputSampler(output_path),
        sample_interval=poll_interval,
        on_sample=on_sample,
    )
