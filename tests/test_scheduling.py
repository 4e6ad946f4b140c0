import asyncio

import pytest

from practiceroom.events import ToolEvent, ToolHooks, emit_event
from practiceroom.scheduling import RetryTimer


@pytest.mark.asyncio
async def test_only_one_retry_is_pending() -> None:
    fired: list[int] = []
    timer = RetryTimer(0.01, lambda: fired.append(1))

    assert timer.schedule()
    assert not timer.schedule()
    await asyncio.sleep(0.05)

    assert fired == [1]
    assert not timer.pending


@pytest.mark.asyncio
async def test_cancelled_retry_never_fires() -> None:
    fired: list[int] = []
    timer = RetryTimer(0.01, lambda: fired.append(1))

    timer.schedule()
    timer.cancel()
    await asyncio.sleep(0.05)

    assert fired == []


@pytest.mark.asyncio
async def test_retry_checks_owner_before_firing() -> None:
    fired: list[int] = []
    wanted = {"value": True}
    timer = RetryTimer(0.01, lambda: fired.append(1), should_fire=lambda: wanted["value"])

    timer.schedule()
    wanted["value"] = False
    await asyncio.sleep(0.05)

    assert fired == []


@pytest.mark.asyncio
async def test_async_actions_are_awaited() -> None:
    done = asyncio.Event()

    async def action() -> None:
        done.set()

    timer = RetryTimer(0.0, action)
    timer.schedule()

    await asyncio.wait_for(done.wait(), timeout=1.0)


def test_failing_hook_does_not_propagate(caplog: pytest.LogCaptureFixture) -> None:
    def broken(_: object) -> None:
        raise RuntimeError("ui gone")

    emit_event(ToolHooks(on_reading=broken), ToolEvent(tool="tuner", kind="no_pitch"))

    assert "hook failed" in caplog.text


def test_events_reach_specific_and_catch_all_hooks() -> None:
    seen: list[ToolEvent] = []
    beats: list[int] = []

    emit_event(
        ToolHooks(on_event=seen.append, on_beat=beats.append),
        ToolEvent(tool="click", kind="beat", beat_index=2),
    )

    assert beats == [2]
    assert seen[0].tool == "click"
