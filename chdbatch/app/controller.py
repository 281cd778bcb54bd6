"""Controller facade: request validation, tool preflight and batch wiring.

This is the only entry the shells (CLI, GUI) call. Everything below it takes
explicit callbacks through EventSinks and an explicit CancelToken.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union

from ..config import AppConfig, load_app_config, validate_config
from ..core.chdman import cores_per_conversion
from ..core.extraction import COMPRESSED_IMAGE_EXTENSIONS
from ..exceptions import DependencyMissingError, ValidationError
from ..security.security_utils import validate_directory
from ..utils.external_tools import CHDMAN, ToolsProbeResult, chdman_executable_name, probe_tools
from .batch_scheduler import BatchScheduler, discover_conversion_items, discover_verification_items, order_items
from .conversion_pipeline import ConversionOptions, ConversionPipeline, StagingRegistry
from .events import EventSinks
from .models import BatchReport, CancelToken, ConversionRequest, VerificationRequest
from .verification_pipeline import VerificationOptions, VerificationPipeline

logger = logging.getLogger(__name__)

ConfigLike = Union[AppConfig, Dict[str, Any], None]


def _load_cfg(config: ConfigLike) -> AppConfig:
    if isinstance(config, AppConfig):
        return config
    if isinstance(config, dict):
        return validate_config(config)
    return load_app_config()


def _search_dirs(cfg: AppConfig) -> Optional[Sequence[str]]:
    return list(cfg.tools.search_dirs) or None


def _same_dir(a: Path, b: Path) -> bool:
    return os.path.normcase(os.path.abspath(a)) == os.path.normcase(os.path.abspath(b))


def preflight(config: ConfigLike = None, events: Optional[EventSinks] = None) -> ToolsProbeResult:
    """Probe external tools once and report what is missing before a batch."""
    cfg = _load_cfg(config)
    events = events or EventSinks()
    result = probe_tools(cfg.tools_dict(), search_dirs=_search_dirs(cfg))
    for message in result.messages:
        level = logging.WARNING if message.startswith("WARNING") else logging.INFO
        events.log(message, level)
    return result


def _require_chdman(tools: ToolsProbeResult, events: EventSinks, operation: str) -> None:
    if tools.chdman is None:
        name = chdman_executable_name()
        events.log(f"Error: {name} not found. Cannot start {operation}.", logging.ERROR)
        raise DependencyMissingError(f"{name} is missing. Please install it or set its path in the config.",
                                     tool=CHDMAN)


def validate_conversion_request(request: ConversionRequest) -> ConversionRequest:
    input_dir = validate_directory(request.input_dir, "input folder")
    if request.output_dir is None or not str(request.output_dir).strip():
        raise ValidationError("Please select both input and output folders for conversion.",
                              field_name="output folder")
    output_path = Path(os.path.abspath(os.path.expanduser(str(request.output_dir))))
    if _same_dir(input_dir, output_path):
        raise ValidationError("Input and output folders must be different for conversion.",
                              field_name="output folder")
    try:
        output_path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ValidationError(f"Cannot create output folder {output_path}: {exc}",
                              field_name="output folder") from exc
    output_dir = validate_directory(output_path, "output folder")
    if request.max_workers < 1:
        raise ValidationError("max_workers must be at least 1", field_name="max_workers", expected_type="int")
    return ConversionRequest(
        input_dir=input_dir,
        output_dir=output_dir,
        delete_originals=request.delete_originals,
        parallel=request.parallel,
        max_workers=request.max_workers,
        smallest_first=request.smallest_first,
    )


def validate_verification_request(request: VerificationRequest) -> VerificationRequest:
    input_dir = validate_directory(request.input_dir, "input folder")
    targets = {}
    for label, value in (("success folder", request.move_success_to), ("failed folder", request.move_failed_to)):
        if value is None:
            continue
        if not str(value).strip():
            raise ValidationError(f"Please select a {label} or turn off moving those files.", field_name=label)
        path = Path(os.path.abspath(os.path.expanduser(str(value))))
        if _same_dir(path, input_dir):
            raise ValidationError("Success/Failed folders must be different from the input folder.",
                                  field_name=label)
        targets[label] = path

    if len(targets) == 2 and _same_dir(targets["success folder"], targets["failed folder"]):
        raise ValidationError("Please select different folders for successful and failed files.",
                              field_name="failed folder")
    if request.max_workers < 1:
        raise ValidationError("max_workers must be at least 1", field_name="max_workers", expected_type="int")

    return VerificationRequest(
        input_dir=input_dir,
        recursive=request.recursive,
        move_success_to=targets.get("success folder"),
        move_failed_to=targets.get("failed folder"),
        parallel=request.parallel,
        max_workers=request.max_workers,
        smallest_first=request.smallest_first,
    )


def run_conversion(
    request: ConversionRequest,
    config: ConfigLike = None,
    events: Optional[EventSinks] = None,
    cancel_token: Optional[CancelToken] = None,
    tools: Optional[ToolsProbeResult] = None,
) -> BatchReport:
    """Convert every supported file at the top of ``request.input_dir`` to CHD.

    Raises BatchCancelledError (with the partial report) on cancellation and
    DependencyMissingError/ValidationError before any work starts.
    """
    cfg = _load_cfg(config)
    events = events or EventSinks()
    cancel_token = cancel_token or CancelToken()
    request = validate_conversion_request(request)
    tools = tools or preflight(cfg, events)
    _require_chdman(tools, events, "conversion")

    items = order_items(discover_conversion_items(request.input_dir, request.output_dir),
                        request.smallest_first)
    extensions = {item.source_path.suffix.lower() for item in items}
    if tools.maxcso is None and extensions & set(COMPRESSED_IMAGE_EXTENSIONS):
        events.log("WARNING: .cso files found but maxcso is not available; they will fail.", logging.WARNING)
    if not tools.rar_backend and ".rar" in extensions:
        events.log("WARNING: .rar files found but no unrar backend is available; they will fail.",
                   logging.WARNING)

    settings = cfg.conversion
    cores = cores_per_conversion(request.parallel)
    events.log("--- Starting batch conversion process... ---")
    events.log(f"Input folder: {request.input_dir}")
    events.log(f"Output folder: {request.output_dir}")
    events.log(f"Delete original files: {request.delete_originals}")
    events.log(f"Parallel file processing: {request.parallel} "
               f"(Max concurrency: {request.max_workers if request.parallel else 1})")

    registry = StagingRegistry()
    pipeline = ConversionPipeline(
        tools.chdman,
        events,
        ConversionOptions(
            delete_originals=request.delete_originals,
            cores=cores,
            temp_root=Path(settings.temp_dir) if settings.temp_dir else None,
            cleanup_timeout_sec=settings.cleanup_timeout_sec,
            poll_interval_sec=settings.poll_interval_sec,
            tool_timeout_sec=settings.tool_timeout_sec,
        ),
        maxcso_tool=tools.maxcso,
        cancel_token=cancel_token,
        registry=registry,
        archive_support=lambda ext: ext != ".rar" or tools.rar_backend,
    )
    scheduler = BatchScheduler(
        events,
        cancel_token=cancel_token,
        parallel=request.parallel,
        max_workers=request.max_workers,
        registry=registry,
        cleanup_timeout_sec=settings.cleanup_timeout_sec,
    )
    return scheduler.run("conversion", "Converting", items, pipeline.process)


def run_verification(
    request: VerificationRequest,
    config: ConfigLike = None,
    events: Optional[EventSinks] = None,
    cancel_token: Optional[CancelToken] = None,
    tools: Optional[ToolsProbeResult] = None,
) -> BatchReport:
    """Verify every ``.chd`` below ``request.input_dir`` with ``chdman verify``."""
    cfg = _load_cfg(config)
    events = events or EventSinks()
    cancel_token = cancel_token or CancelToken()
    request = validate_verification_request(request)
    tools = tools or preflight(cfg, events)
    _require_chdman(tools, events, "verification")

    events.log("--- Starting batch verification process... ---")
    events.log(f"Input folder: {request.input_dir}")
    events.log(f"Include subfolders: {request.recursive}")
    if request.move_success_to is not None:
        events.log(f"Moving successful files to: {request.move_success_to}")
    if request.move_failed_to is not None:
        events.log(f"Moving failed files to: {request.move_failed_to}")

    items = order_items(discover_verification_items(request.input_dir, request.recursive),
                        request.smallest_first)
    pipeline = VerificationPipeline(
        tools.chdman,
        events,
        VerificationOptions(
            scan_root=request.input_dir,
            recursive=request.recursive,
            move_success_to=request.move_success_to,
            move_failed_to=request.move_failed_to,
            tool_timeout_sec=cfg.verification.tool_timeout_sec,
        ),
        cancel_token=cancel_token,
    )
    scheduler = BatchScheduler(
        events,
        cancel_token=cancel_token,
        parallel=request.parallel,
        max_workers=request.max_workers,
    )
    return scheduler.run("verification", "Verifying", items, pipeline.process)
