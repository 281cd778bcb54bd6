#!/usr/bin/env python3
# -*-coding: utf-8-*-
"""CHD Batch Converter - Configuration package.

JSON or YAML config files, validated against ``config-schema.json`` and
materialized as pydantic models.
"""

from .io import get_config_path, load_app_config, load_config
from .models import (
    AppConfig,
    ConversionSettings,
    LoggingSettings,
    ToolPathConfig,
    ToolsConfig,
    VerificationSettings,
    validate_config,
)
from .schema import validate_config_schema

__all__ = [
    'AppConfig',
    'ConversionSettings',
    'LoggingSettings',
    'ToolPathConfig',
    'ToolsConfig',
    'VerificationSettings',
    'get_config_path',
    'load_app_config',
    'load_config',
    'validate_config',
    'validate_config_schema',
]
