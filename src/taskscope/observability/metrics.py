"""Thread-safe metrics registry for task group activity, with JSON export."""

from __future__ import annotations

import json
import math
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Mapping

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_MetricLabels = tuple[tuple[str, str], ...]

CHILDREN_SPAWNED: Final[str] = "taskscope_children_spawned_total"
CHILDREN_SUCCEEDED: Final[str] = "taskscope_children_succeeded_total"
CHILDREN_FAILED: Final[str] = "taskscope_children_failed_total"
CHILDREN_CANCELLED: Final[str] = "taskscope_children_cancelled_total"
CHILDREN_RUNNING: Final[str] = "taskscope_children_running"
CHILD_DURATION_MS: Final[str] = "taskscope_child_duration_ms"
GROUPS_FAILED: Final[str] = "taskscope_groups_failed_total"

_NAME_MAX_LEN: Final[int] = 128
_LABEL_MAX_LEN: Final[int] = 256


@dataclass(frozen=True, order=True, slots=True)
class _MetricKey:
    name: str
    labels: _MetricLabels


@dataclass(slots=True)
class _Distribution:
    count: int = 0
    total: float = 0.0
    minimum: float | None = None
    maximum: float | None = None

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        if self.minimum is None or value < self.minimum:
            self.minimum = value
        if self.maximum is None or value > self.maximum:
            self.maximum = value

    def as_dict(self) -> dict[str, JSONValue]:
        return {
            "count": self.count,
            "sum": self.total,
            "min": self.minimum,
            "max": self.maximum,
            "avg": self.total / self.count if self.count else 0.0,
        }


class MetricsRegistry:
    """In-memory counters, gauges, and distributions keyed by name and labels."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._created_at = datetime.now(tz=UTC)
        self._counters: dict[_MetricKey, float] = {}
        self._gauges: dict[_MetricKey, float] = {}
        self._distributions: dict[_MetricKey, _Distribution] = {}

    def inc(
        self,
        name: str,
        amount: float = 1.0,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        """Increment a counter by ``amount`` (>= 0)."""

        delta = _finite(amount, path="amount")
        if delta < 0:
            raise ValueError("counter increment amount must be >= 0")
        key = _metric_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0.0) + delta

    def set_gauge(
        self,
        name: str,
        value: float,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        key = _metric_key(name, labels)
        gauge_value = _finite(value, path="value")
        with self._lock:
            self._gauges[key] = gauge_value

    def add_gauge(
        self,
        name: str,
        delta: float,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        """Shift a gauge by ``delta``; a missing gauge starts at zero."""

        key = _metric_key(name, labels)
        step = _finite(delta, path="delta")
        with self._lock:
            self._gauges[key] = self._gauges.get(key, 0.0) + step

    def observe(
        self,
        name: str,
        value: float,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        key = _metric_key(name, labels)
        sample = _finite(value, path="value")
        with self._lock:
            state = self._distributions.setdefault(key, _Distribution())
            state.observe(sample)

    def get_counter(self, name: str, *, labels: Mapping[str, str] | None = None) -> float:
        key = _metric_key(name, labels)
        with self._lock:
            return self._counters.get(key, 0.0)

    def get_gauge(self, name: str, *, labels: Mapping[str, str] | None = None) -> float | None:
        key = _metric_key(name, labels)
        with self._lock:
            return self._gauges.get(key)

    def get_distribution(
        self,
        name: str,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> dict[str, JSONValue] | None:
        key = _metric_key(name, labels)
        with self._lock:
            state = self._distributions.get(key)
            return None if state is None else state.as_dict()

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._distributions.clear()
            self._created_at = datetime.now(tz=UTC)

    def snapshot(self) -> dict[str, JSONValue]:
        """Return a snapshot with stable key ordering."""

        with self._lock:
            created_at = self._created_at
            counters = sorted(self._counters.items())
            gauges = sorted(self._gauges.items())
            distributions = [
                (key, state.as_dict()) for key, state in sorted(self._distributions.items())
            ]

        return {
            "metadata": {
                "created_at": _iso8601z(created_at),
                "snapshot_at": _iso8601z(datetime.now(tz=UTC)),
            },
            "counters": {_identifier(key): value for key, value in counters},
            "gauges": {_identifier(key): value for key, value in gauges},
            "distributions": {_identifier(key): value for key, value in distributions},
        }

    def to_json(self, *, indent: int | None = None) -> str:
        payload = self.snapshot()
        if indent is None:
            return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return json.dumps(payload, sort_keys=True, indent=indent, ensure_ascii=False)

    def export_json(self, path: str | Path, *, indent: int = 2) -> Path:
        """Write the snapshot to ``path`` and return it."""

        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(self.to_json(indent=indent), encoding="utf-8")
        return output_path


class GroupMetrics:
    """Records child lifecycle transitions of one task group into a registry."""

    __slots__ = ("_labels", "_registry")

    def __init__(self, registry: MetricsRegistry, group_name: str) -> None:
        self._registry = registry
        self._labels = {"group": group_name}

    def child_spawned(self) -> None:
        self._registry.inc(CHILDREN_SPAWNED, labels=self._labels)

    def child_started(self) -> None:
        self._registry.add_gauge(CHILDREN_RUNNING, 1, labels=self._labels)

    def child_finished(self, outcome: str, duration_seconds: float | None) -> None:
        counter = {
            "succeeded": CHILDREN_SUCCEEDED,
            "failed": CHILDREN_FAILED,
            "cancelled": CHILDREN_CANCELLED,
        }[outcome]
        self._registry.inc(counter, labels=self._labels)
        if duration_seconds is not None:
            self._registry.add_gauge(CHILDREN_RUNNING, -1, labels=self._labels)
            self._registry.observe(
                CHILD_DURATION_MS, duration_seconds * 1000.0, labels=self._labels
            )

    def group_failed(self) -> None:
        self._registry.inc(GROUPS_FAILED, labels=self._labels)


def _metric_key(name: str, labels: Mapping[str, str] | None) -> _MetricKey:
    if not isinstance(name, str) or not name.strip():
        raise ValueError("metric name must be a non-empty string")
    normalized = name.strip()
    if len(normalized) > _NAME_MAX_LEN:
        raise ValueError(f"metric name must be <= {_NAME_MAX_LEN} characters")
    return _MetricKey(name=normalized, labels=_normalize_labels(labels))


def _normalize_labels(labels: Mapping[str, str] | None) -> _MetricLabels:
    if not labels:
        return ()
    pairs: list[tuple[str, str]] = []
    for key, value in labels.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise ValueError("metric labels must map strings to strings")
        key_name, value_name = key.strip(), value.strip()
        if not key_name or not value_name:
            raise ValueError(f"label {key!r} must have a non-empty key and value")
        if len(value_name) > _LABEL_MAX_LEN:
            raise ValueError(f"label value for {key!r} exceeds {_LABEL_MAX_LEN} characters")
        pairs.append((key_name, value_name))
    return tuple(sorted(pairs))


def _identifier(key: _MetricKey) -> str:
    if not key.labels:
        return key.name
    rendered = ",".join(f"{k}={v}" for k, v in key.labels)
    return f"{key.name}{{{rendered}}}"


def _finite(value: float, *, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{path} must be numeric, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        raise ValueError(f"{path} must be finite")
    return parsed


def _iso8601z(moment: datetime) -> str:
    return moment.isoformat(timespec="seconds").replace("+00:00", "Z")


__all__ = [
    "CHILDREN_CANCELLED",
    "CHILDREN_FAILED",
    "CHILDREN_RUNNING",
    "CHILDREN_SPAWNED",
    "CHILDREN_SUCCEEDED",
    "CHILD_DURATION_MS",
    "GROUPS_FAILED",
    "GroupMetrics",
    "JSONValue",
    "MetricsRegistry",
]
