"""Tests for the three decision backends and the backend factory."""

from __future__ import annotations

import pytest

from conftest import FakeAdapter, FakeDesktop, collect, event_types
from pilot.actions import ActionResult, ProposedAction
from pilot.backends import (
    DecisionContext,
    NativeAgentBackend,
    StructuredChatBackend,
    ToolCallingChatBackend,
    make_backend_factory,
)
from pilot.backends.structured import parse_structured_output
from pilot.errors import BackendError, UnknownBackendError
from pilot.events import EventStream
from pilot.llm import LLMResponse, ToolCall
from pilot.runtime import PilotRuntime
from pilot.tools import COMPUTER_TOOL_NAME, STRUCTURED_SCHEMA_TITLE


class _NullProgress:
    async def narrative(self, text):
        pass

    async def action_proposed(self, action):
        pass

    async def action_result(self, action, result):
        pass


def _ctx(prompt: str = "open the browser") -> DecisionContext:
    return DecisionContext(instruction=prompt, prompt=prompt)


# ---- StructuredChat ----


def test_parse_structured_text_and_fenced_json() -> None:
    plain = parse_structured_output(LLMResponse(text='{"actions": [{"action": "screenshot"}]}'))
    assert plain.actions == [{"action": "screenshot"}]
    assert plain.reasoning is None

    fenced = parse_structured_output(
        LLMResponse(text='```json\n{"actions": [], "reasoning": "done"}\n```')
    )
    assert fenced.actions == []
    assert fenced.reasoning == "done"


def test_parse_structured_forced_tool_call() -> None:
    response = LLMResponse(
        tool_calls=[ToolCall(name=STRUCTURED_SCHEMA_TITLE, args={"actions": [{"action": "wait"}]})]
    )
    assert parse_structured_output(response).actions == [{"action": "wait"}]


@pytest.mark.asyncio
async def test_structured_decide_returns_actions_and_reasoning() -> None:
    adapter = FakeAdapter([
        LLMResponse(text='{"actions": [{"action": "left_click", "coordinate": ["3", "4"]}], "reasoning": "click it"}')
    ])
    backend = StructuredChatBackend(adapter, model="m")
    decision = await backend.decide(_ctx("open the browser"), _NullProgress())

    assert decision.narrative == "click it"
    assert [a.raw for a in decision.actions] == [{"action": "left_click", "coordinate": ["3", "4"]}]
    call = adapter.generate_calls[0]
    assert call["contents"] == "open the browser"
    assert call["json_schema"]["title"] == STRUCTURED_SCHEMA_TITLE


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["not json at all", '{"reasoning": "no actions key"}', ""])
async def test_structured_parse_failure_is_backend_error(text) -> None:
    backend = StructuredChatBackend(FakeAdapter([LLMResponse(text=text)]), model="m")
    with pytest.raises(BackendError, match="could not parse"):
        await backend.decide(_ctx(), _NullProgress())


@pytest.mark.asyncio
async def test_transport_error_is_backend_error() -> None:
    backend = StructuredChatBackend(FakeAdapter([ConnectionError("connection reset")]), model="m")
    with pytest.raises(BackendError, match="connection reset"):
        await backend.decide(_ctx(), _NullProgress())


# ---- ToolCallingChat ----


@pytest.mark.asyncio
async def test_tool_calls_become_actions_and_results_are_fed_back() -> None:
    adapter = FakeAdapter([
        LLMResponse(
            text="Opening the menu",
            tool_calls=[
                ToolCall(name=COMPUTER_TOOL_NAME, args={"action": "left_click", "coordinate": [1, 2]}, id="call_1"),
                ToolCall(name=COMPUTER_TOOL_NAME, args={"action": "type", "text": "x"}, id="call_2"),
            ],
        ),
        LLMResponse(text="All done"),
    ])
    backend = ToolCallingChatBackend(adapter, model="m")

    first = await backend.decide(_ctx("do the thing"), _NullProgress())
    assert first.narrative == "Opening the menu"
    assert [(a.raw["action"], a.call_id) for a in first.actions] == [("left_click", "call_1"), ("type", "call_2")]

    backend.observe([
        (first.actions[0], ActionResult(action="left_click", output="Clicked at (1, 2)")),
        (first.actions[1], ActionResult(action="type", error="boom")),
    ])
    second = await backend.decide(_ctx("do the thing"), _NullProgress())
    assert second.empty

    chat = adapter.chats[0]
    assert len(adapter.chats) == 1
    assert chat.sent[0] == "do the thing"
    tool_results = chat.sent[1]
    assert [r["id"] for r in tool_results] == ["call_1", "call_2"]
    assert tool_results[1]["result"] == {"action": "type", "status": "error", "error": "boom"}
    assert chat.tools[0].name == COMPUTER_TOOL_NAME


@pytest.mark.asyncio
async def test_tool_named_after_action_is_accepted() -> None:
    adapter = FakeAdapter([LLMResponse(tool_calls=[ToolCall(name="screenshot", args={})])])
    decision = await ToolCallingChatBackend(adapter, model="m").decide(_ctx(), _NullProgress())
    assert decision.actions[0].raw == {"action": "screenshot"}


# ---- NativeAgent ----


@pytest.mark.asyncio
async def test_native_callbacks_map_onto_event_vocabulary() -> None:
    desktop = FakeDesktop(agent_events=[
        ("thinking", {"thinking": "Need to open the menu"}),
        ("tool_use", {"name": "computer", "input": {"action": "left_click", "coordinate": [5, 6]}}),
        ("text", "Menu opened"),
        ("tool_use", {"action": "key", "text": "enter"}),
    ])
    backend = NativeAgentBackend(desktop, agent_iterations=1)
    runtime = PilotRuntime(desktop, backend_factory=lambda name: backend, screenshot_delay=0)
    session, _ = runtime.registry.get_or_create(None, "open the menu")

    stream = runtime.launch(session, iteration_policy="single_step")
    events = await collect(stream)

    assert event_types(events) == [
        "screenshot",
        "narrative",
        "action-proposed",
        "action-result",
        "screenshot",
        "narrative",
        "action-proposed",
        "action-result",
        "screenshot",
        "turn-complete",
        "session-complete",
    ]
    assert events[2].data["action"] == {"type": "left_click", "coordinate": [5, 6]}
    assert events[6].data["action"] == {"type": "key", "key": "enter"}
    assert session.turn_count == 1
    assert [e.kind for e in session.history] == [
        "narrative", "action", "observation", "narrative", "action", "observation",
    ]
    assert desktop.agent_calls == [{"instruction": "open the menu", "max_iterations": 1}]
    # The runtime dispatched the actions itself
    assert desktop.primitive_calls() == []


@pytest.mark.asyncio
async def test_native_error_event_fails_pending_action() -> None:
    desktop = FakeDesktop(agent_events=[
        ("tool_use", {"action": "double_click", "coordinate": [1, 1]}),
        ("error", {"message": "xdotool failed"}),
    ])
    backend = NativeAgentBackend(desktop)
    results = []

    class _Recorder(_NullProgress):
        async def action_result(self, action, result):
            results.append(result)

    decision = await backend.decide(_ctx(), _Recorder())
    assert decision.performed == 1
    assert results[0].error == "xdotool failed"


@pytest.mark.asyncio
async def test_native_runtime_failure_is_backend_error() -> None:
    desktop = FakeDesktop(agent_error=RuntimeError("ORGO_API_KEY missing"))
    with pytest.raises(BackendError, match="ORGO_API_KEY missing"):
        await NativeAgentBackend(desktop).decide(_ctx(), _NullProgress())


@pytest.mark.asyncio
async def test_native_without_tool_use_is_empty_decision() -> None:
    desktop = FakeDesktop(agent_events=[("text", "The task is already complete.")])
    decision = await NativeAgentBackend(desktop).decide(_ctx(), _NullProgress())
    assert decision.empty


# ---- Factory ----


def test_factory_builds_each_backend_and_caches_adapters() -> None:
    built = []

    def adapter_factory(provider):
        built.append(provider)
        return FakeAdapter()

    factory = make_backend_factory(FakeDesktop(), adapter_factory=adapter_factory)
    assert isinstance(factory("native"), NativeAgentBackend)
    assert isinstance(factory("structured"), StructuredChatBackend)
    assert isinstance(factory("tool_calling"), ToolCallingChatBackend)
    assert isinstance(factory("structured"), StructuredChatBackend)
    assert built == ["groq"]

    with pytest.raises(UnknownBackendError):
        factory("telepathy")


def test_unknown_backend_rejected_before_acquiring(runtime) -> None:
    session, _ = runtime.registry.get_or_create(None, "x")
    with pytest.raises(UnknownBackendError):
        runtime.turn_loop.start(session, EventStream(session.id), backend="telepathy")
    assert not session.running
