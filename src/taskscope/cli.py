"""Command-line interface for taskscope: a demo run and config inspection."""

from __future__ import annotations

import argparse
import asyncio
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.table import Table

from taskscope.config import dump_effective_config, load_config
from taskscope.constants import DEMO_FAILURE_DELAY, DEMO_SLOW_DELAY, DEMO_SUCCESS_DELAY
from taskscope.errors import DeadlineExceeded, FailureSet
from taskscope.group import TaskGroup, open_task_group
from taskscope.observability.logging import (
    LoggingConfig,
    configure_logging,
    correlation_scope,
    shutdown_logging,
)
from taskscope.observability.metrics import MetricsRegistry

if TYPE_CHECKING:
    from collections.abc import Sequence


class DemoFailure(RuntimeError):
    """Error raised on purpose by the failing demo child."""


@dataclass(frozen=True, slots=True)
class DemoReport:
    outcome: str
    children: tuple[tuple[str, str], ...]
    errors: tuple[str, ...]
    elapsed_seconds: float

    @property
    def exit_code(self) -> int:
        return {"succeeded": 0, "failed": 1, "timed_out": 3}[self.outcome]


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="taskscope",
        description=(
            "taskscope: structured task groups for asyncio.\n\n"
            "Commands:\n"
            "  taskscope demo              Run three children, one of which fails\n"
            "  taskscope demo --no-fail    Run the same children without a failure\n"
            "  taskscope config            Print the effective configuration\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to a taskscope TOML config (default: ./taskscope.toml if present).",
    )
    common.add_argument(
        "--log-level",
        default=None,
        help="Override observability.log_level.",
    )

    subparsers = parser.add_subparsers(dest="command")

    demo = subparsers.add_parser("demo", parents=[common], help="Run the demo task group.")
    demo.add_argument(
        "--no-fail",
        dest="fail_child",
        action="store_false",
        default=True,
        help="Let every child succeed instead of failing one after 5ms.",
    )
    demo.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Deadline in seconds for the whole group (default: task_group config).",
    )
    demo.add_argument(
        "--slow-delay",
        type=float,
        default=DEMO_SLOW_DELAY,
        help="How long the slow child sleeps, in seconds.",
    )
    demo.add_argument("--no-color", action="store_true", default=False)
    demo.set_defaults(handler=_cmd_demo)

    config = subparsers.add_parser("config", parents=[common], help="Print effective config.")
    config.set_defaults(handler=_cmd_config)
    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return the process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2
    return int(handler(namespace))


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    sys.stdout.write(dump_effective_config(config) + "\n")
    return 0


def _cmd_demo(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    task_group_cfg = config["task_group"]
    observability = config["observability"]

    timeout = args.timeout
    if timeout is None:
        timeout = float(task_group_cfg["default_timeout_seconds"]) or None
    metrics = MetricsRegistry() if task_group_cfg["record_metrics"] else None

    handle = configure_logging(LoggingConfig.from_mapping(observability))
    try:
        with correlation_scope(command="demo"):
            report = asyncio.run(
                run_demo(
                    fail_child=args.fail_child,
                    timeout=timeout,
                    slow_delay=args.slow_delay,
                    metrics=metrics,
                )
            )
    finally:
        shutdown_logging(handle)

    if metrics is not None and observability["metrics_path"]:
        metrics.export_json(Path(observability["metrics_path"]))

    _render_report(report, no_color=args.no_color)
    return report.exit_code


async def run_demo(
    *,
    fail_child: bool = True,
    timeout: float | None = None,
    slow_delay: float = DEMO_SLOW_DELAY,
    metrics: MetricsRegistry | None = None,
) -> DemoReport:
    """Run the three-child scenario and describe how every child ended."""

    async def succeed() -> str:
        await asyncio.sleep(DEMO_SUCCESS_DELAY)
        return "ok"

    async def fail() -> None:
        await asyncio.sleep(DEMO_FAILURE_DELAY)
        raise DemoFailure("child B failed on purpose")

    async def slow() -> None:
        await asyncio.sleep(slow_delay)

    started = time.monotonic()
    group: TaskGroup | None = None
    outcome = "succeeded"
    errors: tuple[str, ...] = ()
    try:
        async with open_task_group(name="demo", timeout=timeout, metrics=metrics) as group:
            group.spawn(succeed, name="A")
            group.spawn(fail if fail_child else succeed, name="B")
            group.spawn(slow, name="C")
    except FailureSet as exc:
        outcome = "failed"
        errors = tuple(repr(error) for error in exc.leaf_errors())
    except DeadlineExceeded as exc:
        outcome = "timed_out"
        errors = (str(exc),)

    children = () if group is None else tuple(
        (child.name, child.status.value) for child in group.children
    )
    return DemoReport(
        outcome=outcome,
        children=children,
        errors=errors,
        elapsed_seconds=time.monotonic() - started,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, object] = {}
    if args.log_level:
        overrides["observability.log_level"] = args.log_level.upper()
    return load_config(args.config_path, cli_overrides=overrides)


def _render_report(report: DemoReport, *, no_color: bool) -> None:
    console = Console(no_color=no_color, highlight=False, soft_wrap=True)
    table = Table(title="task group 'demo'")
    table.add_column("child")
    table.add_column("status")
    for name, status in report.children:
        table.add_row(name, status)
    console.print(table)
    console.print(f"outcome: {report.outcome}")
    console.print(f"elapsed: {report.elapsed_seconds:.3f}s")
    for error in report.errors:
        console.print(f"error: {error}", markup=False)


__all__ = ["DemoFailure", "DemoReport", "build_parser", "run_cli", "run_demo"]
