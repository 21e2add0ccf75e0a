"""Small helpers built on task groups and cancel scopes."""

from __future__ import annotations

import asyncio
import inspect
from typing import TYPE_CHECKING, Generic, TypeVar

from taskscope.cancellation import move_on_after
from taskscope.errors import DeadlineExceeded
from taskscope.group import TaskGroup

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Hashable, Iterable, Iterator

T = TypeVar("T")


class ResultCollector(Generic[T]):
    """Append-only results sink shared by the children of one group.

    Children only ever append, so no lock is needed on a single event loop.
    """

    __slots__ = ("_entries",)

    def __init__(self) -> None:
        self._entries: list[tuple[Hashable, T]] = []

    def add(self, key: Hashable, value: T) -> None:
        self._entries.append((key, value))

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[T]:
        return (value for _, value in list(self._entries))

    def values(self) -> list[T]:
        """Values in the order they were added."""

        return [value for _, value in self._entries]

    def ordered(self) -> list[T]:
        """Values sorted by their key."""

        return [value for _, value in sorted(self._entries, key=lambda entry: entry[0])]

    def as_dict(self) -> dict[Hashable, T]:
        return dict(self._entries)


async def gather_bounded(
    factories: Iterable[Callable[[], Awaitable[T]]],
    *,
    limit: int | None = None,
    name: str = "gather",
) -> list[T]:
    """Run each factory in one task group, at most ``limit`` at a time.

    Results come back in submission order. Any failure cancels the rest and is
    raised as a ``FailureSet`` by the group.
    """

    if limit is not None and limit <= 0:
        raise ValueError("limit must be > 0")
    semaphore = asyncio.Semaphore(limit) if limit is not None else None
    collector: ResultCollector[T] = ResultCollector()

    async def run_one(index: int, factory: Callable[[], Awaitable[T]]) -> None:
        if semaphore is None:
            collector.add(index, await factory())
            return
        async with semaphore:
            collector.add(index, await factory())

    async with TaskGroup(name=name) as group:
        for index, factory in enumerate(factories):
            group.spawn(run_one, index, factory, name=f"{name}[{index}]")
    return collector.ordered()


async def run_with_timeout(awaitable: Awaitable[T], timeout_seconds: float) -> T:
    """Await ``awaitable`` and raise ``DeadlineExceeded`` once ``timeout_seconds`` pass."""

    if timeout_seconds <= 0:
        _close_unscheduled_coroutine(awaitable)
        raise ValueError("timeout_seconds must be > 0")

    with move_on_after(timeout_seconds):
        return await awaitable
    raise DeadlineExceeded(timeout_seconds)


async def checkpoint() -> None:
    """Yield to the event loop so pending cancellation can be delivered."""

    await asyncio.sleep(0)


def _close_unscheduled_coroutine(awaitable: Awaitable[object]) -> None:
    # Close raw coroutine objects rejected before scheduling so CPython does not
    # emit "coroutine was never awaited" at GC time.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "ResultCollector",
    "checkpoint",
    "gather_bounded",
    "run_with_timeout",
]
