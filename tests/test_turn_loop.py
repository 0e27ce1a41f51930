"""Tests for the Turn Loop: single-flight, ordering, history and failure paths."""

from __future__ import annotations

import asyncio

import pytest

from conftest import FakeDesktop, ScriptedBackend, actions, collect, event_types
from pilot.backends import Decision
from pilot.errors import BackendError, DesktopBusyError, SessionBusyError
from pilot.events import EventStream
from pilot.runtime import PilotRuntime


async def _invoke(runtime, session, **kwargs):
    stream = EventStream(session.id)
    reason = await runtime.turn_loop.run(session, stream, **kwargs)
    return reason, await collect(stream)


@pytest.mark.asyncio
async def test_zero_actions_on_first_decision(runtime, desktop) -> None:
    session, _ = runtime.registry.get_or_create(None, "look at the screen")
    reason, events = await _invoke(runtime, session)

    assert event_types(events) == ["screenshot", "session-complete"]
    assert events[-1].data["turn_count"] == 0
    assert reason == "no_actions"
    assert session.turn_count == 0
    assert not session.running
    assert desktop.calls == [("screenshot",)]


@pytest.mark.asyncio
async def test_action_cycle_event_order(runtime, backend, desktop) -> None:
    backend.script = [
        Decision(narrative="Clicking the icon", actions=actions({"action": "left_click", "coordinate": ["10", "20"]}).actions),
    ]
    session, _ = runtime.registry.get_or_create(None, "open it")
    _, events = await _invoke(runtime, session, max_iterations=1)

    assert event_types(events) == [
        "screenshot",
        "narrative",
        "action-proposed",
        "action-result",
        "screenshot",
        "turn-complete",
        "session-complete",
    ]
    assert ("left_click", 10, 20) in desktop.calls
    assert events[2].data["action"] == {"type": "left_click", "coordinate": [10, 20]}
    assert events[3].data["result"]["output"] == "Clicked at (10, 20)"
    assert session.turn_count == 1
    assert [e.kind for e in session.history] == ["narrative", "action", "observation"]


@pytest.mark.asyncio
async def test_no_screenshot_after_wait_or_screenshot(runtime, backend) -> None:
    backend.script = [[{"action": "wait", "duration": 0}, {"action": "screenshot"}]]
    session, _ = runtime.registry.get_or_create(None, "x")
    _, events = await _invoke(runtime, session)

    # initial + the one produced by the screenshot action itself
    assert event_types(events).count("screenshot") == 2
    assert event_types(events) == [
        "screenshot",
        "action-proposed",
        "action-result",
        "action-proposed",
        "action-result",
        "screenshot",
        "turn-complete",
        "session-complete",
    ]


@pytest.mark.asyncio
async def test_one_failing_action_of_three(runtime, backend, desktop) -> None:
    backend.script = [[
        {"action": "left_click", "coordinate": [1, 1]},
        {"action": "drag", "coordinate": [2, 2]},
        {"action": "type", "text": "hello"},
    ]]
    session, _ = runtime.registry.get_or_create(None, "x")
    _, events = await _invoke(runtime, session)

    results = [e.data["result"] for e in events if e.type == "action-result"]
    assert len(results) == 3
    assert [r["ok"] for r in results] == [True, False, True]
    assert results[1]["error"] == "unsupported action: drag"
    assert desktop.primitive_calls() == [("left_click", 1, 1), ("type", "hello")]
    assert session.turn_count == 1
    complete = [e for e in events if e.type == "turn-complete"]
    assert complete[0].data["failed"] == 1
    assert len(backend.observed[0]) == 3


@pytest.mark.asyncio
async def test_concurrent_second_call_conflicts(runtime, backend) -> None:
    release = asyncio.Event()

    class _Slow(ScriptedBackend):
        async def decide(self, context, progress):
            await release.wait()
            return Decision()

    runtime.turn_loop.backend_factory = lambda name: _Slow()
    session, _ = runtime.registry.get_or_create(None, "x")
    task = runtime.turn_loop.start(session, EventStream(session.id))
    assert session.running

    history_before = session.history
    with pytest.raises(SessionBusyError):
        runtime.turn_loop.start(session, EventStream(session.id), backend="structured")
    assert session.backend == "native"
    assert session.history == history_before
    assert session.running

    release.set()
    await task
    assert not session.running


@pytest.mark.asyncio
async def test_sequential_invocations_accumulate_history(runtime, backend) -> None:
    backend.script = [
        [{"action": "left_click", "coordinate": [5, 5]}],
        [{"action": "type", "text": "abc"}],
    ]
    session, _ = runtime.registry.get_or_create(None, "fill the form")

    await _invoke(runtime, session)
    first = session.history
    assert session.turn_count == 1

    await _invoke(runtime, session)
    second = session.history
    assert session.turn_count == 2
    assert second[: len(first)] == first
    assert len(second) > len(first)

    assert backend.contexts[0].prompt == "fill the form"
    resumed = backend.contexts[1].prompt
    assert resumed.startswith("fill the form")
    assert "Do not repeat them" in resumed
    assert "left_click" in resumed


@pytest.mark.asyncio
async def test_run_to_completion_stops_on_empty_decision(runtime, backend) -> None:
    backend.script = [
        [{"action": "left_click", "coordinate": [1, 1]}],
        [{"action": "left_click", "coordinate": [2, 2]}],
        [],
    ]
    session, _ = runtime.registry.get_or_create(None, "x")
    stream = runtime.launch(session, iteration_policy="run_to_completion")
    events = await collect(stream)

    assert session.turn_count == 2
    assert events[-1].data["reason"] == "no_actions"
    assert len(backend.contexts) == 3


@pytest.mark.asyncio
async def test_fixed_policy_stops_at_iteration_bound(runtime, backend) -> None:
    backend.script = [[{"action": "wait", "duration": 0}]] * 5
    session, _ = runtime.registry.get_or_create(None, "x")
    stream = runtime.launch(session, iteration_policy="fixed", max_iterations=2)
    events = await collect(stream)

    assert session.turn_count == 2
    assert events[-1].type == "session-complete"
    assert events[-1].data["reason"] == "iteration_limit"


@pytest.mark.asyncio
async def test_backend_failure_emits_one_error_and_releases(runtime, backend) -> None:
    backend.script = [BackendError("structured", "could not parse model output")]
    session, _ = runtime.registry.get_or_create(None, "x")
    _, events = await _invoke(runtime, session)

    assert event_types(events) == ["screenshot", "error"]
    assert "could not parse" in events[-1].data["message"]
    assert not session.running
    assert session.turn_count == 0

    # Retry is allowed after a failed invocation
    backend.script = [[]]
    _, retry = await _invoke(runtime, session)
    assert retry[-1].type == "session-complete"


@pytest.mark.asyncio
async def test_unexpected_exception_is_reported_once(runtime, backend) -> None:
    backend.script = [RuntimeError("adapter exploded")]
    session, _ = runtime.registry.get_or_create(None, "x")
    _, events = await _invoke(runtime, session)
    assert event_types(events).count("error") == 1
    assert "session-complete" not in event_types(events)
    assert not session.running


@pytest.mark.asyncio
async def test_decision_timeout_is_backend_error(desktop) -> None:
    class _Hang(ScriptedBackend):
        async def decide(self, context, progress):
            await asyncio.sleep(10)

    runtime = PilotRuntime(desktop, backend_factory=lambda name: _Hang(), screenshot_delay=0, llm_timeout=0.01)
    session, _ = runtime.registry.get_or_create(None, "x")
    _, events = await _invoke(runtime, session)
    assert events[-1].type == "error"
    assert "timed out" in events[-1].data["message"]
    assert not session.running


@pytest.mark.asyncio
async def test_detached_consumer_does_not_stop_the_run(runtime, backend) -> None:
    backend.script = [[{"action": "left_click", "coordinate": [1, 1]}]]
    session, _ = runtime.registry.get_or_create(None, "x")
    stream = EventStream(session.id)
    task = runtime.turn_loop.start(session, stream)
    assert runtime.turn_loop.detach(session.id)

    await task
    assert session.turn_count == 1
    assert len(session.history) == 2
    assert await collect(stream) == []
    assert not runtime.turn_loop.detach(session.id)


@pytest.mark.asyncio
async def test_screenshot_failure_is_not_fatal(backend) -> None:
    desktop = FakeDesktop(fail_on={"screenshot"})
    runtime = PilotRuntime(desktop, backend_factory=lambda name: backend, screenshot_delay=0)
    session, _ = runtime.registry.get_or_create(None, "x")
    _, events = await _invoke(runtime, session)
    assert event_types(events) == ["session-complete"]


@pytest.mark.asyncio
async def test_exclusive_desktop_queues_other_sessions(runtime, desktop) -> None:
    lock = runtime.turn_loop.desktop_lock
    assert lock is not None
    await lock.acquire()

    session, _ = runtime.registry.get_or_create(None, "x")
    task = runtime.turn_loop.start(session, EventStream(session.id))
    await asyncio.sleep(0.01)
    assert desktop.calls == []
    assert session.running

    lock.release()
    await task
    assert desktop.calls == [("screenshot",)]


@pytest.mark.asyncio
async def test_backend_switch_between_turns(runtime) -> None:
    chosen = []
    runtime.turn_loop.backend_factory = lambda name: chosen.append(name) or ScriptedBackend()
    session, _ = runtime.registry.get_or_create(None, "x")
    await _invoke(runtime, session)
    await _invoke(runtime, session, backend="tool_calling")
    assert chosen == ["native", "tool_calling"]
    assert session.backend == "tool_calling"


@pytest.mark.asyncio
async def test_infinite_coordinate_fails_only_that_action(runtime, backend, desktop) -> None:
    backend.script = [[
        {"action": "left_click", "coordinate": ["inf", "5"]},
        {"action": "type", "text": "hello"},
    ]]
    session, _ = runtime.registry.get_or_create(None, "x")
    _, events = await _invoke(runtime, session)

    assert "error" not in event_types(events)
    results = [e.data["result"] for e in events if e.type == "action-result"]
    assert [r["ok"] for r in results] == [False, True]
    assert desktop.primitive_calls() == [("type", "hello")]
    assert session.turn_count == 1
    assert events[-1].type == "session-complete"


class _SlowRestartDesktop(FakeDesktop):
    def __init__(self) -> None:
        super().__init__()
        self.began = asyncio.Event()
        self.release = asyncio.Event()

    async def restart(self):
        self.calls.append(("restart-begin",))
        self.began.set()
        await self.release.wait()
        self.calls.append(("restart-end",))


@pytest.mark.asyncio
@pytest.mark.parametrize("exclusive", [True, False])
async def test_no_invocation_runs_during_desktop_reset(backend, exclusive) -> None:
    desktop = _SlowRestartDesktop()
    runtime = PilotRuntime(
        desktop, backend_factory=lambda name: backend, screenshot_delay=0, exclusive_desktop=exclusive
    )
    backend.script = [[{"action": "left_click", "coordinate": [1, 1]}]]
    session, _ = runtime.registry.get_or_create(None, "x")

    reset = asyncio.create_task(runtime.reset_desktop())
    await desktop.began.wait()
    with pytest.raises(DesktopBusyError):
        runtime.launch(session)
    with pytest.raises(DesktopBusyError):
        await runtime.reset_desktop()
    assert not session.running
    assert session.turn_count == 0

    desktop.release.set()
    await reset
    assert not runtime.resetting

    await collect(runtime.launch(session))
    assert desktop.calls[:2] == [("restart-begin",), ("restart-end",)]
    assert ("left_click", 1, 1) in desktop.calls
    assert session.turn_count == 1
