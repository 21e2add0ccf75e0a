"""
taskscope: error taxonomy.

File: src/taskscope/errors.py
Last updated: 2026-10-19

Purpose
- Define the exceptions raised by task groups, cancel scopes, and deadlines.

Contracts
- ``FailureSet`` is the only error a task group raises for child failures; a
  single failing child still produces a one-element set.
- ``CancellationSignal`` is the unwinding signal and is never aggregated into a
  ``FailureSet``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

CancellationSignal = asyncio.CancelledError


class TaskScopeError(Exception):
    """Base class for errors raised by taskscope itself."""


class InvalidStateError(TaskScopeError, RuntimeError):
    """Raised when a group or scope is used outside its valid lifecycle window."""


class ChildFailure(TaskScopeError):
    """One child's error, surfaced outside of group close.

    The original exception is chained as ``__cause__``.
    """

    def __init__(self, child_name: str, error: BaseException) -> None:
        super().__init__(f"child task {child_name!r} failed: {error!r}")
        self.child_name = child_name
        self.error = error


class DeadlineExceeded(TaskScopeError, TimeoutError):
    """Raised by ``fail_after`` when its deadline cancelled the enclosed work."""

    def __init__(self, seconds: float | None = None) -> None:
        if seconds is None:
            message = "deadline exceeded"
        else:
            message = f"deadline of {seconds:g} seconds exceeded"
        super().__init__(message)
        self.seconds = seconds


class FailureSet(ExceptionGroup):
    """Collective failure raised when a task group closes with failed children.

    Members keep the order in which the failures were observed.
    """

    def derive(self, excs: Sequence[Exception]) -> FailureSet:
        return FailureSet(self.message, excs)

    @property
    def errors(self) -> tuple[Exception, ...]:
        return tuple(self.exceptions)

    def leaf_errors(self) -> list[Exception]:
        """Flatten nested groups into the underlying errors, depth first."""

        leaves: list[Exception] = []
        for item in self.exceptions:
            if isinstance(item, ExceptionGroup):
                if isinstance(item, FailureSet):
                    leaves.extend(item.leaf_errors())
                else:
                    leaves.extend(FailureSet(item.message, item.exceptions).leaf_errors())
            else:
                leaves.append(item)
        return leaves


__all__ = [
    "CancellationSignal",
    "ChildFailure",
    "DeadlineExceeded",
    "FailureSet",
    "InvalidStateError",
    "TaskScopeError",
]
