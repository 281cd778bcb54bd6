from __future__ import annotations

from typing import Any, Dict, List, Optional, cast

from pydantic import BaseModel, ConfigDict, Field


class _BaseConfigModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class ToolPathConfig(_BaseConfigModel):
    exe_path: Optional[str] = None
    prefix_args: List[str] = Field(default_factory=list)


class ToolsConfig(_BaseConfigModel):
    chdman: ToolPathConfig = Field(default_factory=ToolPathConfig)
    maxcso: ToolPathConfig = Field(default_factory=ToolPathConfig)
    unrar: ToolPathConfig = Field(default_factory=ToolPathConfig)
    search_dirs: List[str] = Field(default_factory=list)


class ConversionSettings(_BaseConfigModel):
    delete_originals: bool = False
    parallel: bool = False
    max_workers: int = Field(default=3, ge=1, le=16)
    smallest_first: bool = False
    temp_dir: Optional[str] = None
    cleanup_timeout_sec: float = Field(default=5.0, ge=0)
    poll_interval_sec: float = Field(default=1.0, gt=0)
    tool_timeout_sec: Optional[float] = Field(default=None, gt=0)


class VerificationSettings(_BaseConfigModel):
    recursive: bool = False
    move_success_to: Optional[str] = None
    move_failed_to: Optional[str] = None
    parallel: bool = False
    max_workers: int = Field(default=3, ge=1, le=16)
    smallest_first: bool = False
    tool_timeout_sec: Optional[float] = Field(default=None, gt=0)


class LoggingSettings(_BaseConfigModel):
    level: str = "INFO"
    log_dir: Optional[str] = None
    file_logging: bool = True
    json_output: bool = False
    max_log_size: str = "10MB"
    backup_count: int = Field(default=3, ge=0)


class AppConfig(_BaseConfigModel):
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    conversion: ConversionSettings = Field(default_factory=ConversionSettings)
    verification: VerificationSettings = Field(default_factory=VerificationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def tools_dict(self) -> Dict[str, Any]:
        return self.tools.model_dump()


def validate_config(payload: Dict[str, Any]) -> AppConfig:
    return cast(AppConfig, AppConfig.model_validate(payload or {}))
