#!/usr/bin/env python3
# -*-coding: utf-8-*-
"""
CHD Batch Converter - Consolidated Exception Classes

All exception classes used by the conversion and verification pipelines,
centralized in one place so every layer raises and catches the same types.
"""

from datetime import datetime
from typing import Dict, Any, Optional


class BaseError(Exception):
    """Base class for all project-specific errors."""

    def __init__(self, message: str, error_code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.error_code = error_code or "ERROR"
        self.details = details or {}
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """Converts the exception to a dictionary for structured logging."""
        return {
            'error_code': self.error_code,
            'message': str(self),
            'details': self.details,
            'timestamp': self.timestamp.isoformat()
        }


# =====================================================================================================
# Security-related errors
# =====================================================================================================

class SecurityError(BaseError):
    """Base class for security-related errors."""

    def __init__(self, message: str, error_code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code or "SECURITY_ERROR", details)


class InvalidPathError(SecurityError):
    """Raised when path validation fails (traversal, unsafe archive member)."""

    def __init__(self, message: str, path: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        path_details = details or {}
        if path:
            path_details['path'] = str(path)
        super().__init__(message, "INVALID_PATH", path_details)


# =====================================================================================================
# Configuration-related errors
# =====================================================================================================

class ConfigurationError(BaseError):
    """Base class for configuration errors."""

    def __init__(self, message: str, error_code: Optional[str] = None,
                 file_path: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        config_details = details or {}
        if file_path:
            config_details['file_path'] = file_path
        super().__init__(message, error_code or "CONFIG_ERROR", config_details)


class ValidationError(ConfigurationError):
    """Raised when a configuration value or a batch request is invalid."""

    def __init__(self, message: str, field_name: Optional[str] = None,
                 expected_type: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        validation_details = details or {}
        if field_name:
            validation_details['field_name'] = field_name
        if expected_type:
            validation_details['expected_type'] = expected_type
        super().__init__(message, "VALIDATION_ERROR", None, validation_details)


# =====================================================================================================
# Conversion errors
# =====================================================================================================

class ConversionError(BaseError):
    """Base class for per-item failures. Never aborts sibling items."""

    def __init__(self, message: str, error_code: Optional[str] = None,
                 file_path: Optional[str] = None,
                 phase: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        proc_details = details or {}
        if file_path:
            proc_details['file_path'] = str(file_path)
        if phase:
            proc_details['phase'] = phase
        super().__init__(message, error_code or "CONVERSION_ERROR", proc_details)


class DependencyMissingError(ConversionError):
    """A required external tool or archive backend is not available."""

    def __init__(self, message: str, tool: Optional[str] = None,
                 file_path: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        dep_details = details or {}
        if tool:
            dep_details['tool'] = tool
        super().__init__(message, "DEPENDENCY_MISSING", file_path, "dependency", dep_details)
        self.tool = tool


class ToolUnavailableError(DependencyMissingError):
    """The executable of an external tool does not exist."""


class StagingFailedError(ConversionError):
    """Copying or extracting the input into the staging area failed."""

    def __init__(self, message: str, file_path: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "STAGING_FAILED", file_path, "staging", details)


class ToolExecutionFailedError(ConversionError):
    """An external tool exited with a non-zero code (or timed out)."""

    def __init__(self, message: str, exit_code: Optional[int] = None,
                 tool: Optional[str] = None,
                 file_path: Optional[str] = None,
                 timed_out: bool = False,
                 details: Optional[Dict[str, Any]] = None):
        tool_details = details or {}
        tool_details['exit_code'] = exit_code
        if tool:
            tool_details['tool'] = tool
        if timed_out:
            tool_details['timed_out'] = True
        super().__init__(message, "TOOL_FAILED", file_path, "tool", tool_details)
        self.exit_code = exit_code
        self.timed_out = timed_out


class OutputMissingError(ConversionError):
    """A tool reported success but its output file does not exist."""

    def __init__(self, message: str, file_path: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "OUTPUT_MISSING", file_path, "commit", details)


class UnsupportedContainerError(ConversionError):
    """The container format is not recognized."""

    def __init__(self, message: str, file_path: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "UNSUPPORTED_CONTAINER", file_path, "staging", details)


class NoTargetFoundError(ConversionError):
    """An archive was extracted but holds no supported image."""

    def __init__(self, message: str, file_path: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NO_TARGET_FOUND", file_path, "staging", details)


class ParseError(ConversionError):
    """A CUE/GDI descriptor could not be read."""

    def __init__(self, message: str, file_path: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "PARSE_ERROR", file_path, "parse", details)


class FileOperationError(ConversionError):
    """Generic filesystem failure during copy, move or delete."""

    def __init__(self, message: str, file_path: Optional[str] = None,
                 operation: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        file_details = details or {}
        if operation:
            file_details['operation'] = operation
        super().__init__(message, "FILE_OP_ERROR", file_path, "io", file_details)


# =====================================================================================================
# Cancellation
# =====================================================================================================

class OperationCancelledError(BaseError):
    """Cooperative cancellation. The only condition allowed to leave a batch."""

    def __init__(self, message: str = "Operation cancelled",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CANCELLED", details)


class BatchCancelledError(OperationCancelledError):
    """Raised by the scheduler after finalizing a cancelled batch."""

    def __init__(self, report: Any, message: str = "Batch cancelled"):
        super().__init__(message)
        self.report = report
