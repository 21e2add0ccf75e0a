"""
taskscope: unit tests for cancel scopes, shielding, and deadlines

File: tests/unit/test_cancellation.py
Last updated: 2026-10-19

Purpose
- Verify cooperative cancellation semantics of ``CancelScope`` and the
  deadline helpers, alone and combined with task groups.

What this test file should cover
- A scope only swallows the cancellation it requested.
- Shielded regions defer outer cancellation until they exit.
- ``move_on_after`` continues silently; ``fail_after`` raises ``DeadlineExceeded``.
- Deadlines applied to task groups cancel every child.
"""

from __future__ import annotations

import asyncio
import time

import pytest

from taskscope import (
    CancelScope,
    ChildStatus,
    DeadlineExceeded,
    InvalidStateError,
    TaskGroup,
    current_cancel_scope,
    fail_after,
    move_on_after,
    open_task_group,
    run_shielded,
)


async def _sleep_then(delay: float, value: object) -> object:
    await asyncio.sleep(delay)
    return value


@pytest.mark.asyncio
async def test_cancel_interrupts_the_next_await_and_is_swallowed() -> None:
    started = time.monotonic()
    with CancelScope() as scope:
        scope.cancel()
        await asyncio.sleep(1)

    assert scope.cancel_called
    assert scope.cancelled_caught
    assert not scope.deadline_reached
    assert time.monotonic() - started < 0.5


@pytest.mark.asyncio
async def test_cancel_without_a_following_await_does_not_leak() -> None:
    with CancelScope() as scope:
        scope.cancel()

    await asyncio.sleep(0)
    assert scope.cancel_called
    assert not scope.cancelled_caught


@pytest.mark.asyncio
async def test_cancel_is_idempotent() -> None:
    with CancelScope() as scope:
        scope.cancel()
        scope.cancel()
        await asyncio.sleep(1)

    assert scope.cancelled_caught


@pytest.mark.asyncio
async def test_inner_scope_cancellation_stays_inside() -> None:
    with CancelScope() as outer:
        with CancelScope() as inner:
            inner.cancel()
            await asyncio.sleep(1)
        await asyncio.sleep(0)

    assert inner.cancelled_caught
    assert not outer.cancel_called
    assert not outer.cancelled_caught


@pytest.mark.asyncio
async def test_outer_cancellation_passes_through_inner_scope() -> None:
    reached_after_inner = False
    with CancelScope() as outer:
        with CancelScope() as inner:
            outer.cancel()
            await asyncio.sleep(1)
        reached_after_inner = True

    assert not reached_after_inner
    assert not inner.cancelled_caught
    assert outer.cancelled_caught


@pytest.mark.asyncio
async def test_raw_task_cancellation_is_not_swallowed_by_a_scope() -> None:
    scopes: list[CancelScope] = []

    async def body() -> None:
        with CancelScope() as scope:
            scopes.append(scope)
            await asyncio.sleep(10)

    task = asyncio.create_task(body())
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert not scopes[0].cancelled_caught


@pytest.mark.asyncio
async def test_scope_cancel_together_with_raw_cancel_still_propagates() -> None:
    scopes: list[CancelScope] = []

    async def body() -> None:
        with CancelScope() as scope:
            scopes.append(scope)
            await asyncio.sleep(10)

    task = asyncio.create_task(body())
    await asyncio.sleep(0.01)
    scopes[0].cancel()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_shield_defers_outer_deadline_until_the_shield_exits() -> None:
    completed = False
    started = time.monotonic()

    with move_on_after(0.01) as outer:
        with CancelScope(shield=True):
            await asyncio.sleep(0.05)
            completed = True
        await asyncio.sleep(1)

    elapsed = time.monotonic() - started
    assert completed
    assert outer.cancelled_caught
    assert outer.deadline_reached
    assert 0.04 <= elapsed < 0.5


@pytest.mark.asyncio
async def test_removing_a_shield_releases_pending_cancellation() -> None:
    with CancelScope() as outer:
        with CancelScope(shield=True) as inner:
            outer.cancel()
            await asyncio.sleep(0.01)
            inner.shield = False
            await asyncio.sleep(1)

    assert outer.cancelled_caught


@pytest.mark.asyncio
async def test_move_on_after_stops_the_block_silently() -> None:
    started = time.monotonic()
    with move_on_after(0.01) as scope:
        await asyncio.sleep(1)

    assert scope.cancelled_caught
    assert scope.deadline_reached
    assert time.monotonic() - started < 0.5


@pytest.mark.asyncio
async def test_move_on_after_rejects_negative_durations() -> None:
    with pytest.raises(ValueError):
        with move_on_after(-1):
            pass


@pytest.mark.asyncio
async def test_fail_after_raises_deadline_exceeded() -> None:
    with pytest.raises(DeadlineExceeded) as info:
        with fail_after(0.01):
            await asyncio.sleep(1)

    assert isinstance(info.value, TimeoutError)
    assert info.value.seconds == pytest.approx(0.01)


@pytest.mark.asyncio
async def test_fail_after_is_silent_when_the_block_finishes_in_time() -> None:
    with fail_after(1) as scope:
        await asyncio.sleep(0)

    assert not scope.cancel_called


@pytest.mark.asyncio
async def test_deadline_can_be_moved_while_active() -> None:
    with CancelScope() as scope:
        scope.deadline = asyncio.get_running_loop().time() + 0.01
        await asyncio.sleep(1)

    assert scope.deadline_reached
    assert scope.cancelled_caught


@pytest.mark.asyncio
async def test_current_cancel_scope_tracks_the_innermost_scope() -> None:
    assert current_cancel_scope() is None
    with CancelScope() as outer:
        assert current_cancel_scope() is outer
        with CancelScope() as inner:
            assert current_cancel_scope() is inner
        assert current_cancel_scope() is outer
    assert current_cancel_scope() is None


@pytest.mark.asyncio
async def test_scope_cannot_be_entered_twice() -> None:
    scope = CancelScope()
    with scope:
        pass
    with pytest.raises(InvalidStateError):
        with scope:
            pass


@pytest.mark.asyncio
async def test_run_shielded_finishes_despite_outer_deadline() -> None:
    with move_on_after(0.01) as outer:
        value = await run_shielded(_sleep_then(0.03, "kept"))

    assert value == "kept"
    assert outer.cancel_called
    assert not outer.cancelled_caught


@pytest.mark.asyncio
async def test_deadline_around_a_group_cancels_every_child() -> None:
    started = time.monotonic()
    with pytest.raises(DeadlineExceeded):
        async with open_task_group(name="bounded", timeout=0.02) as group:
            children = [group.spawn(asyncio.sleep, 5) for _ in range(3)]

    assert time.monotonic() - started < 1.0
    assert [child.status for child in children] == [ChildStatus.CANCELLED] * 3


@pytest.mark.asyncio
async def test_zero_timeout_means_no_deadline() -> None:
    async with open_task_group(timeout=0) as group:
        child = group.spawn(_sleep_then, 0.01, "done")

    assert child.result() == "done"


@pytest.mark.asyncio
async def test_move_on_after_around_a_group_is_silent() -> None:
    with move_on_after(0.02) as scope:
        async with TaskGroup() as group:
            child = group.spawn(asyncio.sleep, 5)

    assert scope.cancelled_caught
    assert child.status is ChildStatus.CANCELLED


@pytest.mark.asyncio
async def test_shielded_cleanup_in_a_child_survives_the_group_deadline() -> None:
    cleaned: list[bool] = []

    async def careful() -> None:
        with CancelScope(shield=True):
            await asyncio.sleep(0.05)
            cleaned.append(True)

    started = time.monotonic()
    with pytest.raises(DeadlineExceeded):
        with fail_after(0.01):
            async with TaskGroup() as group:
                child = group.spawn(careful)

    assert cleaned == [True]
    assert child.status is ChildStatus.SUCCEEDED
    assert time.monotonic() - started >= 0.04


@pytest.mark.asyncio
async def test_shielded_cleanup_after_cancel_all() -> None:
    steps: list[str] = []

    async def worker() -> None:
        try:
            await asyncio.sleep(10)
        finally:
            with CancelScope(shield=True):
                await asyncio.sleep(0.01)
                steps.append("flushed")

    async with TaskGroup() as group:
        child = group.spawn(worker)
        await asyncio.sleep(0)
        group.cancel_all()

    assert steps == ["flushed"]
    assert child.status is ChildStatus.CANCELLED
