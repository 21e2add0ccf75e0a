"""Cooperative cancel scopes with shielding and deadlines for asyncio tasks."""

from __future__ import annotations

import asyncio
import math
import weakref
from contextlib import contextmanager
from typing import TYPE_CHECKING, TypeVar

from taskscope.errors import DeadlineExceeded, InvalidStateError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Iterator
    from types import TracebackType

T = TypeVar("T")

# Scopes currently entered by each task, outermost first.
_TASK_SCOPES: weakref.WeakKeyDictionary[asyncio.Task[object], list[CancelScope]] = (
    weakref.WeakKeyDictionary()
)


def _scope_stack(task: asyncio.Task[object]) -> list[CancelScope]:
    stack = _TASK_SCOPES.get(task)
    if stack is None:
        stack = []
        _TASK_SCOPES[task] = stack
    return stack


class CancelScope:
    """Region of one task that can be cancelled as a unit.

    Cancellation is delivered from the event loop while the host task is
    suspended, so it always surfaces at an ``await``. A scope only swallows the
    ``CancelledError`` it caused itself; anything requested from outside keeps
    propagating.
    """

    def __init__(self, *, deadline: float = math.inf, shield: bool = False) -> None:
        self._deadline = deadline
        self._shield = shield
        self._host: asyncio.Task[object] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._active = False
        self._exited = False
        self._cancel_called = False
        self._cancelled_caught = False
        self._deadline_reached = False
        self._delivered = False
        self._timer: asyncio.TimerHandle | None = None

    def __repr__(self) -> str:
        state = "active" if self._active else ("exited" if self._exited else "idle")
        return (
            f"<CancelScope {state} cancel_called={self._cancel_called} "
            f"shield={self._shield} deadline={self._deadline}>"
        )

    # -- properties ---------------------------------------------------------

    @property
    def deadline(self) -> float:
        return self._deadline

    @deadline.setter
    def deadline(self, value: float) -> None:
        self._deadline = float(value)
        if self._active:
            self._arm_deadline()

    @property
    def shield(self) -> bool:
        return self._shield

    @shield.setter
    def shield(self, value: bool) -> None:
        was_shielded = self._shield
        self._shield = bool(value)
        if was_shielded and not self._shield and self._active:
            self._schedule_pending_outer()

    @property
    def cancel_called(self) -> bool:
        return self._cancel_called

    @property
    def cancelled_caught(self) -> bool:
        return self._cancelled_caught

    @property
    def deadline_reached(self) -> bool:
        return self._deadline_reached

    @property
    def active(self) -> bool:
        return self._active

    # -- context manager ----------------------------------------------------

    def __enter__(self) -> CancelScope:
        if self._active or self._exited:
            raise InvalidStateError("a cancel scope can only be entered once")
        host = asyncio.current_task()
        if host is None:
            raise InvalidStateError("a cancel scope must be entered from inside a task")

        self._host = host
        self._loop = host.get_loop()
        _scope_stack(host).append(self)
        self._active = True
        self._arm_deadline()
        if self._cancel_called:
            self._loop.call_soon(self._deliver_cancellation)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool:
        if not self._active or self._host is None:
            raise InvalidStateError("cancel scope exited without being entered")

        host = self._host
        stack = _scope_stack(host)
        if not stack or stack[-1] is not self:
            raise InvalidStateError("cancel scopes must be exited in reverse order of entry")
        stack.pop()
        self._active = False
        self._exited = True
        self._disarm_deadline()

        if self._delivered:
            self._delivered = False
            host.uncancel()

        swallow = False
        if (
            isinstance(exc, asyncio.CancelledError)
            and self._cancel_called
            and host.cancelling() == 0
        ):
            self._cancelled_caught = True
            swallow = True

        self._schedule_pending_outer()
        return swallow

    # -- cancellation -------------------------------------------------------

    def cancel(self) -> None:
        """Request cancellation of this scope; safe to call repeatedly."""

        if self._cancel_called:
            return
        self._cancel_called = True
        if self._active and self._loop is not None:
            self._loop.call_soon(self._deliver_cancellation)

    def _deliver_cancellation(self) -> None:
        host = self._host
        if not self._active or self._delivered or host is None or host.done():
            return
        if self._blocked_by_shield():
            return
        self._delivered = True
        host.cancel(msg=f"cancelled by {self!r}")

    def _blocked_by_shield(self) -> bool:
        assert self._host is not None
        stack = _scope_stack(self._host)
        try:
            index = stack.index(self)
        except ValueError:
            return True
        return any(inner._shield for inner in stack[index + 1 :])

    def _schedule_pending_outer(self) -> None:
        if self._host is None or self._loop is None:
            return
        for scope in _scope_stack(self._host):
            if scope._cancel_called and not scope._delivered:
                self._loop.call_soon(scope._deliver_cancellation)

    # -- deadline -----------------------------------------------------------

    def _arm_deadline(self) -> None:
        self._disarm_deadline()
        if self._loop is None or math.isinf(self._deadline):
            return
        self._timer = self._loop.call_at(self._deadline, self._on_deadline)

    def _disarm_deadline(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_deadline(self) -> None:
        self._timer = None
        if self._cancel_called:
            return
        self._deadline_reached = True
        self.cancel()


def current_cancel_scope() -> CancelScope | None:
    """Return the innermost active scope of the running task, if any."""

    task = asyncio.current_task()
    if task is None:
        return None
    stack = _TASK_SCOPES.get(task)
    return stack[-1] if stack else None


def _deadline_after(seconds: float) -> float:
    if seconds < 0 or math.isnan(seconds):
        raise ValueError("seconds must be >= 0")
    return asyncio.get_running_loop().time() + seconds


@contextmanager
def move_on_after(seconds: float, *, shield: bool = False) -> Iterator[CancelScope]:
    """Cancel the enclosed block after ``seconds`` and continue silently."""

    with CancelScope(deadline=_deadline_after(seconds), shield=shield) as scope:
        yield scope


@contextmanager
def fail_after(seconds: float, *, shield: bool = False) -> Iterator[CancelScope]:
    """Cancel the enclosed block after ``seconds`` and raise ``DeadlineExceeded``."""

    with CancelScope(deadline=_deadline_after(seconds), shield=shield) as scope:
        yield scope
    if scope.cancelled_caught and scope.deadline_reached:
        raise DeadlineExceeded(seconds)


async def run_shielded(awaitable: Awaitable[T]) -> T:
    """Await ``awaitable`` inside a shielded scope and return its result."""

    with CancelScope(shield=True):
        return await awaitable


__all__ = [
    "CancelScope",
    "current_cancel_scope",
    "fail_after",
    "move_on_after",
    "run_shielded",
]
