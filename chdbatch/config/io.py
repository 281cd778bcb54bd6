"""Config I/O utilities."""

from __future__ import annotations

import json
import os
import logging
from typing import Any, Dict, Optional

import pydantic
import yaml

from ..exceptions import ConfigurationError
from .models import AppConfig, validate_config
from .schema import validate_config_schema

logger = logging.getLogger(__name__)

ENV_CONFIG_PATH = "CHDBATCH_CONFIG"
ENV_TEMP_DIR = "CHDBATCH_TEMP_DIR"
ENV_LOG_JSON = "CHDBATCH_LOG_JSON"

_YAML_SUFFIXES = (".yaml", ".yml")


def get_config_path() -> str:
    override = os.environ.get(ENV_CONFIG_PATH, "").strip()
    if override:
        return override
    base_dir = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    for name in ("config.yaml", "config.yml", "config.json"):
        candidate = os.path.join(base_dir, name)
        if os.path.exists(candidate):
            return candidate
    return os.path.join(base_dir, "config.json")


def _parse(raw: str, config_path: str) -> Any:
    if config_path.lower().endswith(_YAML_SUFFIXES):
        return yaml.safe_load(raw)
    return json.loads(raw)


def load_config(config_path: Optional[str] = None, *, strict: bool = False) -> Dict[str, Any]:
    """Read a JSON/YAML config file.

    Missing or broken files give ``{}``; with ``strict`` they raise
    ConfigurationError instead.
    """
    if config_path is None:
        config_path = get_config_path()

    def _reject(message: str) -> Dict[str, Any]:
        if strict:
            raise ConfigurationError(message, file_path=config_path)
        logger.warning(message)
        return {}

    if not os.path.exists(config_path):
        if strict:
            raise ConfigurationError(f"Config file not found: {config_path}", file_path=config_path)
        logger.debug("No config file at %s, using defaults", config_path)
        return {}
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = _parse(f.read(), config_path)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        return _reject(f"Config file {config_path} could not be read: {exc}")

    if not isinstance(data, dict):
        return _reject(f"Config file {config_path} does not contain a mapping")

    ok, error = validate_config_schema(data)
    if not ok:
        return _reject(f"Config schema validation failed for {config_path}: {error}")
    return data


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    temp_dir = os.environ.get(ENV_TEMP_DIR, "").strip()
    if temp_dir:
        conversion = dict(data.get("conversion") or {})
        conversion["temp_dir"] = temp_dir
        data["conversion"] = conversion
    log_json = os.environ.get(ENV_LOG_JSON)
    if log_json is not None:
        logging_cfg = dict(data.get("logging") or {})
        logging_cfg["json_output"] = log_json.strip().lower() in ("1", "true", "yes", "on")
        data["logging"] = logging_cfg
    return data


def load_app_config(config_path: Optional[str] = None, *, strict: bool = False) -> AppConfig:
    """Load, validate and materialize the application config.

    With ``strict`` an unreadable, schema-invalid or model-invalid file raises
    ConfigurationError; otherwise the problem is logged and defaults are used.
    """
    data = _apply_env_overrides(dict(load_config(config_path, strict=strict)))
    try:
        return validate_config(data)
    except pydantic.ValidationError as exc:
        if strict:
            raise ConfigurationError(f"Invalid configuration: {exc}", file_path=config_path) from exc
        logger.warning("Invalid configuration, falling back to defaults: %s", exc)
        return validate_config(_apply_env_overrides({}))
