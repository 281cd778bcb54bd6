#!/usr/bin/env python3
# -*-coding: utf-8-*-
"""CHD Batch Converter security package: file name sanitizing and safe archive extraction."""

from .security_utils import (
    ELLIPSIS_REPLACEMENT,
    ensure_within,
    is_safe_archive_member,
    safe_extract_zip,
    safe_temp_file_path,
    sanitize_filename,
    validate_directory,
)

__all__ = [
    'ELLIPSIS_REPLACEMENT',
    'ensure_within',
    'is_safe_archive_member',
    'safe_extract_zip',
    'safe_temp_file_path',
    'sanitize_filename',
    'validate_directory',
]
