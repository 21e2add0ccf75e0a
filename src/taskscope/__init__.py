"""
taskscope: structured concurrency for asyncio.

A ``TaskGroup`` owns the children spawned inside its ``async with`` block and
does not let control leave the block until every child has succeeded, failed,
or been cancelled. Child failures come back as one ``FailureSet``.

Importing the package has no side effects: logging is configured only by
``taskscope.observability.configure_logging``.
"""

from taskscope.cancellation import (
    CancelScope,
    current_cancel_scope,
    fail_after,
    move_on_after,
    run_shielded,
)
from taskscope.errors import (
    CancellationSignal,
    ChildFailure,
    DeadlineExceeded,
    FailureSet,
    InvalidStateError,
    TaskScopeError,
)
from taskscope.group import (
    ChildStatus,
    ChildTask,
    GroupState,
    TaskGroup,
    TaskStatus,
    open_task_group,
)
from taskscope.helpers import ResultCollector, checkpoint, gather_bounded, run_with_timeout

__version__ = "0.1.0"

__all__ = [
    "CancelScope",
    "CancellationSignal",
    "ChildFailure",
    "ChildStatus",
    "ChildTask",
    "DeadlineExceeded",
    "FailureSet",
    "GroupState",
    "InvalidStateError",
    "ResultCollector",
    "TaskGroup",
    "TaskScopeError",
    "TaskStatus",
    "__version__",
    "checkpoint",
    "current_cancel_scope",
    "fail_after",
    "gather_bounded",
    "move_on_after",
    "open_task_group",
    "run_shielded",
    "run_with_timeout",
]
