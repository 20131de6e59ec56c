import asyncio
import logging

import pytest

from shaderloop.scheduler import ContinuationRegistry


@pytest.mark.asyncio
async def test_scheduled_continuation_runs():
    registry = ContinuationRegistry()
    ran = []

    async def continuation():
        ran.append("p1")

    registry.schedule("p1", continuation)
    assert registry.pending("p1")
    await registry.wait_idle("p1")
    assert ran == ["p1"]
    assert not registry.active("p1")


@pytest.mark.asyncio
async def test_cancel_drops_pending_continuation():
    registry = ContinuationRegistry()
    ran = []

    async def continuation():
        ran.append("p1")

    registry.schedule("p1", continuation, delay=0.05)
    assert registry.cancel("p1")
    assert not registry.cancel("p1")
    await asyncio.sleep(0.1)
    assert ran == []
    assert not registry.active()


@pytest.mark.asyncio
async def test_schedule_replaces_pending_continuation():
    registry = ContinuationRegistry()
    ran = []

    async def first():
        ran.append("first")

    async def second():
        ran.append("second")

    registry.schedule("p1", first, delay=0.05)
    registry.schedule("p1", second)
    await registry.wait_idle()
    assert ran == ["second"]


@pytest.mark.asyncio
async def test_cancel_leaves_running_continuation_alone():
    registry = ContinuationRegistry()
    started = asyncio.Event()
    release = asyncio.Event()
    finished = []

    async def continuation():
        started.set()
        await release.wait()
        finished.append(True)

    registry.schedule("p1", continuation)
    await started.wait()
    assert not registry.cancel("p1")
    assert registry.active("p1")
    release.set()
    await registry.wait_idle("p1")
    assert finished == [True]


@pytest.mark.asyncio
async def test_failing_continuation_is_logged(caplog):
    registry = ContinuationRegistry()

    async def continuation():
        raise RuntimeError("boom")

    with caplog.at_level(logging.ERROR, logger="shaderloop.scheduler"):
        registry.schedule("p1", continuation)
        await registry.wait_idle("p1")
        # Done callbacks run on the next loop iteration.
        await asyncio.sleep(0)
    assert "boom" in caplog.text


@pytest.mark.asyncio
async def test_locks_are_per_process_and_name():
    registry = ContinuationRegistry()
    order = []

    async def hold(process_id, name, tag):
        async with registry.lock(process_id, name):
            order.append(f"{tag} in")
            await asyncio.sleep(0.01)
            order.append(f"{tag} out")

    await asyncio.gather(hold("p1", "steps", "a"), hold("p1", "steps", "b"))
    assert order == ["a in", "a out", "b in", "b out"]

    order.clear()
    await asyncio.gather(hold("p1", "steps", "a"), hold("p1", "capture", "b"))
    assert order[:2] == ["a in", "b in"]

    order.clear()
    await asyncio.gather(hold("p1", "steps", "a"), hold("p2", "steps", "b"))
    assert order[:2] == ["a in", "b in"]


@pytest.mark.asyncio
async def test_unused_locks_are_dropped():
    registry = ContinuationRegistry()
    release = asyncio.Event()

    async def hold():
        async with registry.lock("p1"):
            await release.wait()

    holders = [asyncio.create_task(hold()) for _ in range(3)]
    await asyncio.sleep(0.01)
    assert registry.lock_count() == 1

    release.set()
    await asyncio.gather(*holders)
    assert registry.lock_count() == 0


@pytest.mark.asyncio
async def test_shutdown_cancels_everything():
    registry = ContinuationRegistry()
    never = asyncio.Event()

    async def blocked():
        await never.wait()

    registry.schedule("p1", blocked)
    registry.schedule("p2", blocked, delay=10)
    await asyncio.sleep(0.01)
    await registry.shutdown()
    assert not registry.active()
