"""
taskscope: structured task groups for asyncio.

File: src/taskscope/group.py

Purpose
- Spawn concurrent children inside an ``async with`` block and guarantee that
  every child is finished, failed, or cancelled before the block is left.

Contracts
- The first child failure cancels the remaining children and the group body.
- Close raises every child failure as one ``FailureSet``, even when only one
  child failed. A body error that coincides with child failures is the first
  member of the set; a body error on its own propagates unchanged.
- ``spawn`` never raises a child's error; close is the only place failures
  surface. ``spawn_and_wait_for_ready`` is the exception: a child that fails
  before signalling readiness fails the waiting caller with ``ChildFailure``.
- Children may spawn siblings into their own group while the host is waiting
  in close.
- ``cancel_all`` only acts while the group is open.
- ``children`` keeps every child handle, with its value or error, for the life
  of the group. Spawn arguments are released once a child settles.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import time
from contextlib import asynccontextmanager
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from taskscope.cancellation import CancelScope, fail_after
from taskscope.errors import ChildFailure, FailureSet, InvalidStateError
from taskscope.observability.logging import get_logger
from taskscope.observability.metrics import GroupMetrics, MetricsRegistry

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine
    from types import TracebackType

T = TypeVar("T")


class ChildStatus(StrEnum):
    """Completion status of a child task."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class GroupState(StrEnum):
    NEW = "new"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class ChildTask(Generic[T]):
    """Read-only view of one child of a ``TaskGroup``."""

    __slots__ = (
        "_args",
        "_error",
        "_finished_at",
        "_name",
        "_scope",
        "_started_at",
        "_status",
        "_unit",
        "_value",
    )

    def __init__(self, name: str, unit: Any, args: tuple[Any, ...]) -> None:
        self._name = name
        self._unit = unit
        self._args = args
        self._status = ChildStatus.PENDING
        self._error: BaseException | None = None
        self._value: T | None = None
        self._scope = CancelScope()
        self._started_at: float | None = None
        self._finished_at: float | None = None

    def __repr__(self) -> str:
        return f"<ChildTask {self._name!r} {self._status.value}>"

    @property
    def name(self) -> str:
        return self._name

    @property
    def status(self) -> ChildStatus:
        return self._status

    @property
    def started(self) -> bool:
        return self._started_at is not None

    @property
    def done(self) -> bool:
        return self._status is not ChildStatus.PENDING

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def cancel_requested(self) -> bool:
        return self._scope.cancel_called

    @property
    def duration_seconds(self) -> float | None:
        if self._started_at is None or self._finished_at is None:
            return None
        return self._finished_at - self._started_at

    def result(self) -> T:
        """Return the child's value once it has succeeded."""

        if self._status is ChildStatus.PENDING:
            raise InvalidStateError(f"child task {self._name!r} has not finished")
        if self._status is ChildStatus.CANCELLED:
            raise InvalidStateError(f"child task {self._name!r} was cancelled")
        if self._status is ChildStatus.FAILED:
            assert self._error is not None
            raise ChildFailure(self._name, self._error) from self._error
        return self._value  # type: ignore[return-value]

    async def _invoke(self, task_status: TaskStatus[Any] | None) -> T:
        unit = self._unit
        self._unit = None
        if inspect.iscoroutine(unit):
            return await unit
        if task_status is not None:
            return await unit(*self._args, task_status=task_status)
        return await unit(*self._args)

    def _discard_unit(self) -> None:
        # A coroutine object that never ran must be closed or CPython warns at GC.
        if inspect.iscoroutine(self._unit):
            self._unit.close()
        self._unit = None


class TaskStatus(Generic[T]):
    """Readiness handle passed as ``task_status`` by ``spawn_and_wait_for_ready``."""

    __slots__ = ("_future",)

    def __init__(self, future: asyncio.Future[T]) -> None:
        self._future = future

    @property
    def resolved(self) -> bool:
        return self._future.done()

    def started(self, value: T | None = None) -> None:
        """Signal that initialization finished; ``value`` is returned to the waiter."""

        if self._future.cancelled():
            return
        if self._future.done():
            raise InvalidStateError("task_status.started() called more than once")
        self._future.set_result(value)  # type: ignore[arg-type]

    def _reject(self, error: BaseException) -> bool:
        if self._future.done():
            return False
        self._future.set_exception(error)
        return True


class TaskGroup:
    """Scoped container that joins or cancels every child before it exits.

    Use as ``async with TaskGroup() as group:``. The optional ``logger`` is a
    structlog-style logger; ``metrics`` records child lifecycle counters.
    """

    _group_ids = itertools.count(1)

    def __init__(
        self,
        *,
        name: str | None = None,
        logger: Any | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._name = name or f"task-group-{next(TaskGroup._group_ids)}"
        self._state = GroupState.NEW
        self._host: asyncio.Task[Any] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._body_scope = CancelScope()
        self._tasks: dict[asyncio.Task[None], ChildTask[Any]] = {}
        self._children: list[ChildTask[Any]] = []
        self._failures: list[Exception] = []
        self._fatal: BaseException | None = None
        self._aborted = False
        self._waiter: asyncio.Future[None] | None = None
        self._child_ids = itertools.count(1)
        self._opened_at = 0.0
        base_logger = logger if logger is not None else get_logger(__name__)
        self._log = base_logger.bind(task_group=self._name)
        self._metrics = GroupMetrics(metrics, self._name) if metrics is not None else None

    def __repr__(self) -> str:
        return f"<TaskGroup {self._name!r} {self._state.value} running={len(self._tasks)}>"

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> GroupState:
        return self._state

    @property
    def children(self) -> tuple[ChildTask[Any], ...]:
        """Every child spawned so far, finished ones included, in spawn order."""

        return tuple(self._children)

    @property
    def running(self) -> int:
        return len(self._tasks)

    @property
    def failures(self) -> tuple[Exception, ...]:
        return tuple(self._failures)

    @property
    def aborted(self) -> bool:
        """True once a failure or an outer cancellation has cancelled the group."""

        return self._aborted

    # -- scope --------------------------------------------------------------

    async def __aenter__(self) -> TaskGroup:
        if self._state is not GroupState.NEW:
            raise InvalidStateError(f"task group {self._name!r} cannot be entered twice")
        host = asyncio.current_task()
        if host is None:
            raise InvalidStateError("a task group must be entered from inside a task")
        self._host = host
        self._loop = host.get_loop()
        self._body_scope.__enter__()
        self._state = GroupState.OPEN
        self._opened_at = time.monotonic()
        self._log.debug("task_group.opened")
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool:
        assert self._loop is not None
        self._state = GroupState.CLOSING
        cancelled: asyncio.CancelledError | None = None
        body_error: Exception | None = None

        if exc is not None:
            if isinstance(exc, asyncio.CancelledError):
                cancelled = exc
            elif isinstance(exc, Exception):
                body_error = exc
            elif self._fatal is None:
                self._fatal = exc
            self._abort()

        while self._tasks:
            self._waiter = self._loop.create_future()
            try:
                await self._waiter
            except asyncio.CancelledError as err:
                if cancelled is None:
                    cancelled = err
                self._abort()
            finally:
                self._waiter = None

        self._state = GroupState.CLOSED
        if cancelled is not None:
            swallowed = self._body_scope.__exit__(
                type(cancelled), cancelled, cancelled.__traceback__
            )
        else:
            swallowed = self._body_scope.__exit__(None, None, None)
        self._log_closed()

        if self._fatal is not None:
            if self._fatal is exc:
                return False
            raise self._fatal

        if self._failures:
            errors: list[Exception] = list(self._failures)
            if body_error is not None:
                errors.insert(0, body_error)
            if self._metrics is not None:
                self._metrics.group_failed()
            raise FailureSet(
                f"{len(errors)} failure(s) in task group {self._name!r}", errors
            )

        if cancelled is not None and not swallowed:
            if cancelled is exc:
                return False
            raise cancelled
        return swallowed and exc is not None

    # -- spawning -----------------------------------------------------------

    def spawn(self, unit: Any, *args: Any, name: str | None = None) -> ChildTask[Any]:
        """Schedule ``unit(*args)`` (or a coroutine object) as a child; never blocks."""

        self._check_can_spawn(unit)
        child: ChildTask[Any] = ChildTask(self._child_name(unit, name), unit, args)
        self._launch(child, self._run_child(child, None))
        return child

    async def spawn_and_wait_for_ready(
        self, func: Callable[..., Awaitable[Any]], *args: Any, name: str | None = None
    ) -> Any:
        """Start ``func(*args, task_status=...)`` and wait until it reports readiness."""

        if inspect.iscoroutine(func):
            func.close()
            raise TypeError("spawn_and_wait_for_ready() needs a coroutine function")
        self._check_can_spawn(func)
        assert self._loop is not None
        child: ChildTask[Any] = ChildTask(self._child_name(func, name), func, args)
        ready: asyncio.Future[Any] = self._loop.create_future()
        self._launch(child, self._run_child(child, TaskStatus(ready)))
        try:
            return await ready
        except asyncio.CancelledError:
            child._scope.cancel()
            raise

    def cancel_all(self) -> None:
        """Request cancellation of every registered child; idempotent and non-blocking.

        Once the group has begun closing this is a no-op: close already decides
        whether the remaining children are joined or cancelled.
        """

        if self._state is not GroupState.OPEN:
            return
        self._log.debug("task_group.cancel_requested", running=len(self._tasks))
        for child in list(self._tasks.values()):
            child._scope.cancel()

    # -- internals ----------------------------------------------------------

    def _check_can_spawn(self, unit: Any) -> None:
        problem: str | None = None
        if self._state is GroupState.NEW:
            problem = f"task group {self._name!r} has not been entered"
        elif self._state is GroupState.CLOSED:
            problem = f"task group {self._name!r} is closed"
        elif self._state is GroupState.CLOSING and asyncio.current_task() not in self._tasks:
            problem = f"task group {self._name!r} is closing; only its children may spawn"
        if problem is None:
            return
        if inspect.iscoroutine(unit):
            unit.close()
        raise InvalidStateError(problem)

    def _child_name(self, unit: Any, name: str | None) -> str:
        index = next(self._child_ids)
        if name:
            return name
        label = getattr(unit, "__qualname__", None) or type(unit).__name__
        return f"{label}#{index}"

    def _launch(self, child: ChildTask[Any], runner: Coroutine[Any, Any, None]) -> None:
        assert self._loop is not None
        task = self._loop.create_task(runner, name=f"{self._name}:{child.name}")
        self._tasks[task] = child
        self._children.append(child)
        task.add_done_callback(self._on_task_done)
        if self._metrics is not None:
            self._metrics.child_spawned()
        self._log.debug("task_group.child_spawned", child=child.name)
        if self._aborted:
            child._scope.cancel()

    async def _run_child(self, child: ChildTask[Any], task_status: TaskStatus[Any] | None) -> None:
        if child._scope.cancel_called:
            child._discard_unit()
            self._settle(child, ChildStatus.CANCELLED)
            if task_status is not None:
                task_status._reject(_not_ready(child, "was cancelled"))
            return

        child._started_at = time.monotonic()
        if self._metrics is not None:
            self._metrics.child_started()

        value: Any = None
        try:
            with child._scope:
                value = await child._invoke(task_status)
        except asyncio.CancelledError:
            # Not raised by the child's own scope; the waiter still needs an answer.
            self._settle(child, ChildStatus.CANCELLED)
            if task_status is not None:
                task_status._reject(_not_ready(child, "was cancelled"))
            raise
        except Exception as exc:
            self._settle(child, ChildStatus.FAILED, error=exc)
            if task_status is not None and task_status._reject(_child_failure(child, exc)):
                return
            self._record_failure(child, exc)
            return
        except BaseException as exc:
            self._settle(child, ChildStatus.FAILED, error=exc)
            self._record_fatal(child, exc)
            return

        if child._scope.cancelled_caught:
            self._settle(child, ChildStatus.CANCELLED)
            if task_status is not None:
                task_status._reject(_not_ready(child, "was cancelled"))
            return
        self._settle(child, ChildStatus.SUCCEEDED, value=value)
        if task_status is not None:
            task_status._reject(_not_ready(child, "returned"))

    def _settle(
        self,
        child: ChildTask[Any],
        status: ChildStatus,
        *,
        value: Any = None,
        error: BaseException | None = None,
    ) -> None:
        if child._status is not ChildStatus.PENDING:
            return
        child._status = status
        child._value = value
        child._error = error
        child._args = ()
        if child._started_at is not None:
            child._finished_at = time.monotonic()
        if self._metrics is not None:
            self._metrics.child_finished(status.value, child.duration_seconds)

    def _record_failure(self, child: ChildTask[Any], exc: Exception) -> None:
        exc.add_note(f"raised by child task {child.name!r} of task group {self._name!r}")
        self._failures.append(exc)
        self._log.warning("task_group.child_failed", child=child.name, error=repr(exc))
        self._abort()
        self._body_scope.cancel()

    def _record_fatal(self, child: ChildTask[Any], exc: BaseException) -> None:
        if self._fatal is None:
            self._fatal = exc
        self._log.error("task_group.child_fatal", child=child.name, error=repr(exc))
        self._abort()
        self._body_scope.cancel()

    def _abort(self) -> None:
        self._aborted = True
        for child in list(self._tasks.values()):
            child._scope.cancel()

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        child = self._tasks.pop(task, None)
        if child is not None and child.status is ChildStatus.PENDING:
            # Cancelled before its first step, or by a raw Task.cancel().
            child._discard_unit()
            self._settle(child, ChildStatus.CANCELLED)
        if not task.cancelled():
            task.exception()
        if not self._tasks and self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(None)

    def _log_closed(self) -> None:
        counts = {status.value: 0 for status in ChildStatus}
        for child in self._children:
            counts[child.status.value] += 1
        event = "task_group.closed"
        fields = {
            "children": len(self._children),
            "succeeded": counts["succeeded"],
            "failed": counts["failed"],
            "cancelled": counts["cancelled"],
            "duration_ms": round((time.monotonic() - self._opened_at) * 1000.0, 3),
        }
        if self._failures or self._fatal is not None:
            self._log.warning(event, **fields)
        else:
            self._log.debug(event, **fields)


def _child_failure(child: ChildTask[Any], exc: Exception) -> ChildFailure:
    failure = ChildFailure(child.name, exc)
    failure.__cause__ = exc
    return failure


def _not_ready(child: ChildTask[Any], how: str) -> InvalidStateError:
    return InvalidStateError(f"child task {child.name!r} {how} before signalling readiness")


@asynccontextmanager
async def open_task_group(
    *,
    name: str | None = None,
    timeout: float | None = None,
    logger: Any | None = None,
    metrics: MetricsRegistry | None = None,
) -> AsyncIterator[TaskGroup]:
    """Open a ``TaskGroup``, optionally bounded by a ``fail_after`` deadline.

    A ``timeout`` of ``None`` or ``<= 0`` means no deadline, matching
    ``task_group.default_timeout_seconds = 0`` in config.
    """

    if timeout is None or timeout <= 0:
        async with TaskGroup(name=name, logger=logger, metrics=metrics) as group:
            yield group
        return
    with fail_after(timeout):
        async with TaskGroup(name=name, logger=logger, metrics=metrics) as group:
            yield group


__all__ = [
    "ChildStatus",
    "ChildTask",
    "GroupState",
    "TaskGroup",
    "TaskStatus",
    "open_task_group",
]
