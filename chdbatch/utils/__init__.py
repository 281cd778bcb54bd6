"""CHD Batch Converter utils: external tool discovery and process handling."""

from .external_tools import (
    ToolInvocation,
    ToolSpec,
    ToolsProbeResult,
    probe_tools,
    resolve_tool,
    run_tool,
    run_with_throughput,
)

__all__ = [
    "ToolInvocation",
    "ToolSpec",
    "ToolsProbeResult",
    "probe_tools",
    "resolve_tool",
    "run_tool",
    "run_with_throughput",
]
