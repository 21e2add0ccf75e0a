"""
taskscope: configuration schema and validation.

File: src/taskscope/config/schema.py
Last updated: 2026-10-19

Purpose
- Define authoritative configuration defaults and strict validation rules.

Functional requirements
- Validate config payloads and return structured issues (field path + message).
- Reject unknown tables and keys so typos surface instead of being ignored.
"""

from __future__ import annotations

import copy
import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from taskscope.constants import CONFIG_SCHEMA_VERSION

LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS: Final[tuple[str, ...]] = ("json", "console")

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("observability", "log_file"),
    ("observability", "metrics_path"),
)


class MetaConfig(TypedDict):
    schema_version: int


class TaskGroupConfig(TypedDict):
    default_timeout_seconds: float
    record_metrics: bool


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    log_format: Literal["json", "console"]
    log_file: str
    metrics_path: str


class TaskScopeConfig(TypedDict):
    meta: MetaConfig
    task_group: TaskGroupConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[TaskScopeConfig] = {
    "meta": {"schema_version": CONFIG_SCHEMA_VERSION},
    "task_group": {
        "default_timeout_seconds": 0.0,
        "record_metrics": True,
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_file": "",
        "metrics_path": "",
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str

    def render(self) -> str:
        return f"{self.path}: {self.message}"


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return not self.issues


class ConfigValidationError(ValueError):
    """Raised when a config payload fails validation."""

    def __init__(self, issues: tuple[ConfigValidationIssue, ...]) -> None:
        self.issues = issues
        rendered = "; ".join(issue.render() for issue in issues)
        super().__init__(f"invalid configuration: {rendered}")


def default_config() -> dict[str, Any]:
    return copy.deepcopy(dict(DEFAULT_CONFIG))


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; mappings merge, scalars replace."""

    merged: dict[str, Any] = copy.deepcopy(dict(base))
    for key in sorted(overlay):
        value = overlay[key]
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def validate_config(config: Mapping[str, object]) -> ConfigValidationResult:
    issues: list[ConfigValidationIssue] = []

    for table in sorted(config):
        if table not in DEFAULT_CONFIG:
            issues.append(ConfigValidationIssue(table, "unknown table"))

    for table, defaults in DEFAULT_CONFIG.items():
        section = config.get(table)
        if not isinstance(section, Mapping):
            issues.append(ConfigValidationIssue(table, "must be a table"))
            continue
        for key in sorted(section):
            if key not in defaults:
                issues.append(ConfigValidationIssue(f"{table}.{key}", "unknown key"))

    issues.extend(_validate_meta(config.get("meta")))
    issues.extend(_validate_task_group(config.get("task_group")))
    issues.extend(_validate_observability(config.get("observability")))
    return ConfigValidationResult(tuple(issues))


def assert_valid_config(config: Mapping[str, object]) -> dict[str, Any]:
    result = validate_config(config)
    if not result.is_valid:
        raise ConfigValidationError(result.issues)
    return merge_config({}, config)


def _validate_meta(section: object) -> list[ConfigValidationIssue]:
    if not isinstance(section, Mapping):
        return []
    version = section.get("schema_version")
    if isinstance(version, bool) or not isinstance(version, int):
        return [ConfigValidationIssue("meta.schema_version", "must be an integer")]
    if version != CONFIG_SCHEMA_VERSION:
        return [
            ConfigValidationIssue(
                "meta.schema_version",
                f"unsupported schema version {version}; expected {CONFIG_SCHEMA_VERSION}",
            )
        ]
    return []


def _validate_task_group(section: object) -> list[ConfigValidationIssue]:
    if not isinstance(section, Mapping):
        return []
    issues: list[ConfigValidationIssue] = []
    timeout = section.get("default_timeout_seconds")
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
        issues.append(
            ConfigValidationIssue("task_group.default_timeout_seconds", "must be a number")
        )
    elif not math.isfinite(timeout) or timeout < 0:
        issues.append(
            ConfigValidationIssue(
                "task_group.default_timeout_seconds", "must be a finite number >= 0"
            )
        )
    if not isinstance(section.get("record_metrics"), bool):
        issues.append(ConfigValidationIssue("task_group.record_metrics", "must be a boolean"))
    return issues


def _validate_observability(section: object) -> list[ConfigValidationIssue]:
    if not isinstance(section, Mapping):
        return []
    issues: list[ConfigValidationIssue] = []
    level = section.get("log_level")
    if not isinstance(level, str) or level.upper() not in LOG_LEVELS:
        issues.append(
            ConfigValidationIssue(
                "observability.log_level", f"must be one of {', '.join(LOG_LEVELS)}"
            )
        )
    log_format = section.get("log_format")
    if log_format not in LOG_FORMATS:
        issues.append(
            ConfigValidationIssue(
                "observability.log_format", f"must be one of {', '.join(LOG_FORMATS)}"
            )
        )
    for key in ("log_file", "metrics_path"):
        if not isinstance(section.get(key), str):
            issues.append(ConfigValidationIssue(f"observability.{key}", "must be a string"))
    return issues


__all__ = [
    "DEFAULT_CONFIG",
    "LOG_FORMATS",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "TaskScopeConfig",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "validate_config",
]
