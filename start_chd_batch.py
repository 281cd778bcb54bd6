#!/usr/bin/env python3
# -*-coding: utf-8-*-
"""
CHD Batch Converter - Startup Script

Command line shell around the conversion and verification controllers.
Ctrl+C requests cancellation; the running batch stops launching items,
kills the live tool process and cleans its staging directories.
"""

import argparse
import logging
import signal
import sys
from typing import List, Optional

from chdbatch.version import load_version

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ITEMS_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


def _load_version() -> str:
    return str(load_version())


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--parallel", action="store_true", default=None,
                        help="Process up to --workers files at the same time")
    parser.add_argument("--workers", type=int, default=None, metavar="N",
                        help="Maximum concurrent files in parallel mode (default: 3)")
    parser.add_argument("--smallest-first", action="store_true", default=None,
                        help="Process files in ascending size order")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chdbatch",
        description="CHD Batch Converter - convert disc images to CHD and verify CHD files",
    )
    parser.add_argument("--version", action="store_true", help="Show version information")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument("--config", metavar="PATH", help="Config file (JSON or YAML)")

    sub = parser.add_subparsers(dest="command")

    convert = sub.add_parser("convert", help="Convert images and archives in a folder to CHD")
    convert.add_argument("input_dir", help="Folder with .cue/.iso/.img/.cdi/.gdi/.toc/.raw/.cso/.zip/.7z/.rar files")
    convert.add_argument("output_dir", help="Folder that receives the .chd files")
    convert.add_argument("--delete-originals", action="store_true", default=None,
                         help="Delete source files (and CUE/GDI track files) after a successful conversion")
    _add_common_options(convert)

    verify = sub.add_parser("verify", help="Verify .chd files with chdman verify")
    verify.add_argument("input_dir", help="Folder with .chd files")
    verify.add_argument("--recursive", action="store_true", default=None, help="Include subfolders")
    verify.add_argument("--move-success-to", metavar="DIR", help="Move valid files into this folder")
    verify.add_argument("--move-failed-to", metavar="DIR", help="Move invalid files into this folder")
    _add_common_options(verify)

    return parser


def _pick(cli_value, config_value):
    return config_value if cli_value is None else cli_value


def _print_progress(sample) -> None:
    print(sample.describe(), flush=True)


def _configure_logging(cfg, debug: bool) -> None:
    from chdbatch.logging_config import setup_logging

    settings = cfg.logging
    setup_logging(
        log_level="DEBUG" if debug else settings.level,
        log_dir=settings.log_dir,
        enable_file_logging=settings.file_logging,
        max_log_size=settings.max_log_size,
        backup_count=settings.backup_count,
        structured_json=settings.json_output,
    )


def _run(args: argparse.Namespace, cfg, cancel_token) -> int:
    from chdbatch.app.controller import run_conversion, run_verification
    from chdbatch.app.events import EventSinks
    from chdbatch.app.models import ConversionRequest, VerificationRequest

    events = EventSinks(progress_cb=_print_progress)

    if args.command == "convert":
        settings = cfg.conversion
        request = ConversionRequest(
            input_dir=args.input_dir,
            output_dir=args.output_dir,
            delete_originals=bool(_pick(args.delete_originals, settings.delete_originals)),
            parallel=bool(_pick(args.parallel, settings.parallel)),
            max_workers=int(_pick(args.workers, settings.max_workers)),
            smallest_first=bool(_pick(args.smallest_first, settings.smallest_first)),
        )
        report = run_conversion(request, cfg, events, cancel_token)
    else:
        settings = cfg.verification
        request = VerificationRequest(
            input_dir=args.input_dir,
            recursive=bool(_pick(args.recursive, settings.recursive)),
            move_success_to=_pick(args.move_success_to, settings.move_success_to),
            move_failed_to=_pick(args.move_failed_to, settings.move_failed_to),
            parallel=bool(_pick(args.parallel, settings.parallel)),
            max_workers=int(_pick(args.workers, settings.max_workers)),
            smallest_first=bool(_pick(args.smallest_first, settings.smallest_first)),
        )
        report = run_verification(request, cfg, events, cancel_token)

    return EXIT_OK if report.failed == 0 else EXIT_ITEMS_FAILED


def main(argv: Optional[List[str]] = None) -> int:
    """Main function to start the application."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"CHD Batch Converter v{_load_version()}")
        return EXIT_OK

    if not args.command:
        parser.print_help()
        return EXIT_USAGE

    from chdbatch.app.models import CancelToken
    from chdbatch.config import load_app_config
    from chdbatch.exceptions import BaseError, BatchCancelledError, ConfigurationError, ConversionError, SecurityError

    try:
        cfg = load_app_config(args.config, strict=bool(args.config))
    except ConfigurationError as e:
        print(f"Error: {e}")
        return EXIT_USAGE

    _configure_logging(cfg, args.debug)
    if args.debug:
        logger.debug("Debug mode enabled")
    logger.info("Starting CHD Batch Converter v%s", _load_version())

    cancel_token = CancelToken()

    def _on_interrupt(signum, frame):
        if not cancel_token.is_cancelled():
            print("Cancellation requested, stopping...", flush=True)
        cancel_token.cancel()

    previous_handler = signal.signal(signal.SIGINT, _on_interrupt)
    try:
        return _run(args, cfg, cancel_token)
    except BatchCancelledError as e:
        logger.warning("Batch cancelled: %s", e)
        return EXIT_CANCELLED
    except (ConfigurationError, ConversionError, SecurityError) as e:
        logger.error("%s", e)
        print(f"Error: {e}")
        return EXIT_USAGE
    except BaseError as e:
        logger.error("Batch aborted: %s", e)
        return EXIT_ITEMS_FAILED
    finally:
        signal.signal(signal.SIGINT, previous_handler)


if __name__ == "__main__":
    raise SystemExit(main())
