"""Shared fakes: a scripted desktop, scripted backends and a fake LLM adapter."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from pilot.actions import ProposedAction
from pilot.backends import Decision, DecisionBackend, DecisionContext
from pilot.desktop import Desktop
from pilot.events import EventStream
from pilot.llm import ChatSession, LLMAdapter, LLMResponse
from pilot.runtime import PilotRuntime

FAKE_IMAGE = "iVBORw0KGgo="


class FakeDesktop(Desktop):
    """Records every primitive call. Names in ``fail_on`` raise RuntimeError."""

    def __init__(self, fail_on: set[str] | None = None, agent_events: list | None = None, agent_error: Exception | None = None):
        self.calls: list[tuple] = []
        self.fail_on = fail_on or set()
        self.agent_events = agent_events or []
        self.agent_error = agent_error
        self.agent_calls: list[dict] = []

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        if name in self.fail_on:
            raise RuntimeError(f"{name} failed")

    async def screenshot(self) -> str:
        self._record("screenshot")
        return FAKE_IMAGE

    async def left_click(self, x, y):
        self._record("left_click", x, y)

    async def right_click(self, x, y):
        self._record("right_click", x, y)

    async def double_click(self, x, y):
        self._record("double_click", x, y)

    async def type(self, text):
        self._record("type", text)

    async def key(self, name):
        self._record("key", name)

    async def scroll(self, direction, amount):
        self._record("scroll", direction, amount)

    async def wait(self, seconds):
        self._record("wait", seconds)

    async def run_agent(self, instruction, callback, max_iterations, max_tokens=4096, model=None):
        self.agent_calls.append({"instruction": instruction, "max_iterations": max_iterations})
        loop = asyncio.get_running_loop()

        def _emit():
            for event_type, data in self.agent_events:
                callback(event_type, data)
            if self.agent_error is not None:
                raise self.agent_error

        # Same thread hop as the real SDK call
        await loop.run_in_executor(None, _emit)

    async def restart(self):
        self._record("restart")

    def primitive_calls(self) -> list[tuple]:
        return [c for c in self.calls if c[0] != "screenshot"]


class ScriptedBackend(DecisionBackend):
    """Returns queued decisions in order; an Exception entry is raised instead."""

    name = "native"

    def __init__(self, script: list[Any] | None = None):
        self.script = list(script or [])
        self.contexts: list[DecisionContext] = []
        self.observed: list[list] = []

    async def decide(self, context, progress) -> Decision:
        self.contexts.append(context)
        if not self.script:
            return Decision()
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, Decision):
            return item
        return Decision(actions=[ProposedAction(raw=a) for a in item])

    def observe(self, results) -> None:
        self.observed.append(results)


def actions(*raw) -> Decision:
    return Decision(actions=[ProposedAction(raw=a) for a in raw])


class FakeChat(ChatSession):
    def __init__(self, responses: list[LLMResponse]):
        self.responses = responses
        self.sent: list = []

    def send(self, message) -> LLMResponse:
        self.sent.append(message)
        return self.responses.pop(0) if self.responses else LLMResponse()

    def get_history(self) -> list:
        return list(self.sent)


class FakeAdapter(LLMAdapter):
    provider = "fake"

    def __init__(self, responses: list[LLMResponse] | None = None):
        self.responses = list(responses or [])
        self.generate_calls: list[dict] = []
        self.chats: list[FakeChat] = []

    def create_chat(self, model, system_prompt, tools=None, *, max_tokens=4096):
        chat = FakeChat(self.responses)
        chat.tools = tools
        self.chats.append(chat)
        return chat

    def generate(self, model, contents, *, system_prompt=None, json_schema=None, max_tokens=4096):
        self.generate_calls.append({"model": model, "contents": contents, "json_schema": json_schema})
        item = self.responses.pop(0) if self.responses else LLMResponse()
        if isinstance(item, Exception):
            raise item
        return item

    def make_tool_result_message(self, tool_name, result, *, tool_call_id=None):
        return {"tool": tool_name, "id": tool_call_id, "result": result}

    def is_quota_error(self, exc):
        return False


async def collect(stream: EventStream) -> list:
    return [e async for e in stream.events()]


def event_types(events) -> list[str]:
    return [e.type for e in events]


@pytest.fixture
def desktop() -> FakeDesktop:
    return FakeDesktop()


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def runtime(desktop, backend) -> PilotRuntime:
    return PilotRuntime(
        desktop,
        backend_factory=lambda name: backend,
        screenshot_delay=0,
    )
