"""
taskscope: unit tests for config loader

File: tests/unit/config/test_loader.py
Last updated: 2026-10-19

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Deterministic env var path mapping and type coercion.
- Path normalization relative to the config file.
- Effective config dumping.

Non-functional requirements
- Deterministic output across repeated loads.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from taskscope.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    load_config,
)
from taskscope.config.schema import ConfigValidationError

REPO_ROOT = Path(__file__).resolve().parents[3]


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "taskscope.toml"
    default_path = tmp_path / "default.toml"
    _write_config(default_path, "")
    _write_config(
        config_path,
        """
[task_group]
default_timeout_seconds = 4.0
""".strip(),
    )
    env = {"TASKSCOPE_TASK_GROUP_DEFAULT_TIMEOUT_SECONDS": "6"}

    default_loaded = load_config(default_path)
    file_loaded = load_config(config_path)
    env_loaded = load_config(config_path, environ=env)
    cli_loaded = load_config(
        config_path,
        environ=env,
        cli_overrides={"task_group.default_timeout_seconds": 7.5},
    )

    assert default_loaded["task_group"]["default_timeout_seconds"] == 0.0
    assert file_loaded["task_group"]["default_timeout_seconds"] == 4.0
    assert env_loaded["task_group"]["default_timeout_seconds"] == 6.0
    assert cli_loaded["task_group"]["default_timeout_seconds"] == 7.5


def test_env_mapping_coerces_booleans_and_strings(tmp_path: Path) -> None:
    config_path = tmp_path / "taskscope.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        environ={
            "TASKSCOPE_TASK_GROUP_RECORD_METRICS": "off",
            "TASKSCOPE_OBSERVABILITY_LOG_LEVEL": "DEBUG",
            "TASKSCOPE_META_SCHEMA_VERSION": "99",
        },
    )

    assert loaded["task_group"]["record_metrics"] is False
    assert loaded["observability"]["log_level"] == "DEBUG"
    assert loaded["meta"]["schema_version"] == 1


@pytest.mark.parametrize(
    ("env_name", "raw"),
    [
        ("TASKSCOPE_TASK_GROUP_DEFAULT_TIMEOUT_SECONDS", "soon"),
        ("TASKSCOPE_TASK_GROUP_RECORD_METRICS", "maybe"),
    ],
)
def test_invalid_env_coercion_raises_actionable_error(
    tmp_path: Path, env_name: str, raw: str
) -> None:
    config_path = tmp_path / "taskscope.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigLoadError, match=env_name):
        load_config(config_path, environ={env_name: raw})


def test_env_timeout_accepts_integer_text_as_seconds(tmp_path: Path) -> None:
    config_path = tmp_path / "taskscope.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path, environ={"TASKSCOPE_TASK_GROUP_DEFAULT_TIMEOUT_SECONDS": " 3 "}
    )

    timeout = loaded["task_group"]["default_timeout_seconds"]
    assert timeout == 3.0
    assert isinstance(timeout, float)


@pytest.mark.parametrize("key", ["task_group", ".record_metrics", "task_group."])
def test_cli_override_keys_must_name_table_and_setting(tmp_path: Path, key: str) -> None:
    config_path = tmp_path / "taskscope.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigLoadError, match="expected 'table.key'"):
        load_config(config_path, environ={}, cli_overrides={key: True})


def test_env_override_is_validated_after_merge(tmp_path: Path) -> None:
    config_path = tmp_path / "taskscope.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigValidationError) as info:
        load_config(config_path, environ={"TASKSCOPE_OBSERVABILITY_LOG_FORMAT": "xml"})

    assert [issue.path for issue in info.value.issues] == ["observability.log_format"]


def test_loader_is_deterministic_for_same_inputs(tmp_path: Path) -> None:
    config_path = tmp_path / "taskscope.toml"
    _write_config(config_path, "")
    env = {"TASKSCOPE_TASK_GROUP_RECORD_METRICS": "false"}
    cli = {"observability.log_format": "console"}

    first = load_config(config_path, environ=env, cli_overrides=cli)
    second = load_config(config_path, environ=env, cli_overrides=cli)

    assert dump_effective_config(first) == dump_effective_config(second)


def test_path_normalization_is_relative_to_config_file(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "taskscope.toml"
    _write_config(
        config_path,
        """
[observability]
log_file = "logs/taskscope.jsonl"
""".strip(),
    )

    loaded = load_config(config_path, environ={})

    expected = (config_path.parent / "logs" / "taskscope.jsonl").as_posix()
    assert loaded["observability"]["log_file"] == expected
    assert loaded["observability"]["metrics_path"] == ""


def test_invalid_toml_raises_config_load_error(tmp_path: Path) -> None:
    config_path = tmp_path / "taskscope.toml"
    _write_config(config_path, "[task_group\n")

    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(config_path, environ={})


def test_missing_explicit_file_raises_but_missing_default_does_not(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    with pytest.raises(ConfigLoadError, match="not found"):
        load_config(tmp_path / "missing.toml", environ={})

    loaded = load_config(environ={})
    assert loaded["task_group"]["record_metrics"] is True


def test_unknown_keys_in_file_are_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "taskscope.toml"
    _write_config(
        config_path,
        """
[task_group]
max_children = 3
""".strip(),
    )

    with pytest.raises(ConfigValidationError, match="task_group.max_children: unknown key"):
        load_config(config_path, environ={})


def test_dump_effective_config_is_sorted_json(tmp_path: Path) -> None:
    config_path = tmp_path / "taskscope.toml"
    _write_config(config_path, "")

    dumped = dump_effective_config(load_config(config_path, environ={}))

    parsed = json.loads(dumped)
    assert list(parsed) == sorted(parsed)
    assert parsed["meta"]["schema_version"] == 1


def test_can_load_repo_taskscope_toml() -> None:
    loaded = load_config(
        REPO_ROOT / "taskscope.toml",
        environ={"TASKSCOPE_OBSERVABILITY_LOG_LEVEL": "WARNING"},
    )

    assert loaded["observability"]["log_level"] == "WARNING"


def test_config_package_exports_loader_and_errors(tmp_path: Path) -> None:
    import taskscope.config as config_pkg

    config_path = tmp_path / "taskscope.toml"
    _write_config(config_path, "")

    loaded = config_pkg.load_config(config_path)
    assert loaded["meta"]["schema_version"] == 1

    with pytest.raises(config_pkg.ConfigLoadError):
        config_pkg.load_config(tmp_path / "missing.toml")
