"""NativeAgent backend: the desktop provider's own agent runtime.

``Desktop.run_agent`` decides and dispatches by itself, reporting progress
through a callback from a worker thread. A ``CallbackBridge`` turns those
callbacks into an async iterator which is mapped onto the shared vocabulary:

    text / thinking  → narrative
    tool_use         → action-proposed (pending)
    next event / end → action-result for the pending action
    error            → fails the pending action, or the whole decision

The callback payload shape differs between SDK versions, so it is read
tolerantly.
"""

from __future__ import annotations

import asyncio
from typing import Any

from ..actions import ActionDescriptor, ActionResult, normalize_action
from ..desktop import Desktop
from ..errors import BackendError
from ..events import CallbackBridge
from ..logging import get_logger, tagged
from .base import Decision, DecisionBackend, DecisionContext, Progress

logger = get_logger()

_NARRATIVE_EVENTS = ("text", "thinking")
_RESULT_EVENTS = ("tool_result", "action_result")


def _text_of(data: Any) -> str:
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        for key in ("text", "thinking", "message", "content"):
            value = data.get(key)
            if isinstance(value, str):
                return value
    return "" if data is None else str(data)


def _action_of(data: Any) -> ActionDescriptor:
    if isinstance(data, dict):
        raw = data.get("input") if isinstance(data.get("input"), dict) else data
        if isinstance(raw, dict) and "action" not in raw and "type" not in raw and data.get("name"):
            raw = {"action": data["name"], **raw}
        return normalize_action(raw)
    return normalize_action(data)


def _error_of(data: Any) -> str | None:
    if isinstance(data, dict):
        if data.get("is_error") or data.get("error"):
            return str(data.get("error") or _text_of(data) or "action failed")
    return None


class NativeAgentBackend(DecisionBackend):
    """Delegates each iteration to ``Desktop.run_agent``.

    Args:
        desktop: Desktop whose agent runtime is driven.
        agent_iterations: Internal iteration bound per decision.
        max_tokens: Output token cap passed to the runtime.
        model: Optional model override for the runtime.
    """

    name = "native"

    def __init__(self, desktop: Desktop, agent_iterations: int = 1, max_tokens: int = 4096, model: str | None = None):
        self.desktop = desktop
        self.agent_iterations = agent_iterations
        self.max_tokens = max_tokens
        self.model = model

    async def decide(self, context: DecisionContext, progress: Progress) -> Decision:
        bridge = CallbackBridge(asyncio.get_running_loop())
        task = asyncio.create_task(
            self.desktop.run_agent(
                context.prompt,
                bridge.callback,
                max_iterations=self.agent_iterations,
                max_tokens=self.max_tokens,
                model=self.model,
            )
        )
        bridge.finish_when(task)

        pending: ActionDescriptor | None = None
        performed = 0
        runtime_error: str | None = None

        async def resolve(error: str | None = None, output: str | None = None) -> None:
            nonlocal pending, performed
            if pending is None:
                return
            action, pending = pending, None
            performed += 1
            if error is not None:
                result = ActionResult(action=action.type, error=error)
            else:
                result = ActionResult(action=action.type, output=output or f"Performed {action.describe()}")
            await progress.action_result(action, result)

        try:
            async for event_type, data in bridge.events():
                logger.debug(f"native event: {event_type}", extra=tagged("native"))
                if event_type in _RESULT_EVENTS:
                    await resolve(error=_error_of(data), output=_text_of(data) or None)
                    continue
                if event_type == "error":
                    message = _text_of(data) or "agent runtime error"
                    if pending is not None:
                        await resolve(error=message)
                    else:
                        runtime_error = message
                    continue
                await resolve()
                if event_type in _NARRATIVE_EVENTS:
                    text = _text_of(data).strip()
                    if text:
                        await progress.narrative(text)
                elif event_type == "tool_use":
                    pending = _action_of(data)
                    await progress.action_proposed(pending)
        finally:
            if not task.done():
                task.cancel()

        exc = task.exception() if not task.cancelled() else None
        await resolve(error=str(exc) if exc else None)
        if exc is not None:
            raise BackendError(self.name, f"{type(exc).__name__}: {exc}") from exc
        if runtime_error is not None and performed == 0:
            raise BackendError(self.name, runtime_error)

        # Narrative and actions were already reported through ``progress``.
        return Decision(performed=performed)
