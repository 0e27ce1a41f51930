"""ToolCallingChat backend: provider tool calls over a real chat history.

The chat is created on the first ``decide`` of an invocation and seeded with
the composed prompt. Every later ``decide`` sends the results of the
previous tool calls back as tool responses, so the model sees a true
multi-turn exchange within the invocation.
"""

from __future__ import annotations

from ..actions import ActionResult, ProposedAction
from ..llm import ChatSession
from ..prompts import get_system_prompt
from ..tools import COMPUTER_TOOL_NAME, get_function_schemas
from .base import ChatBackend, Decision, DecisionContext, Progress


class ToolCallingChatBackend(ChatBackend):
    name = "tool_calling"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._chat: ChatSession | None = None
        self._pending_results: list = []

    async def decide(self, context: DecisionContext, progress: Progress) -> Decision:
        if self._chat is None:
            self._chat = self.adapter.create_chat(
                self.model,
                get_system_prompt(),
                get_function_schemas(),
                max_tokens=self.max_tokens,
            )
            message = context.prompt
        elif self._pending_results:
            message, self._pending_results = self._pending_results, []
        else:
            message = "Continue with the task."

        response = await self._call(self._chat.send, message)

        actions = []
        for tc in response.tool_calls:
            raw = dict(tc.args)
            if tc.name != COMPUTER_TOOL_NAME and "action" not in raw:
                raw["action"] = tc.name
            actions.append(ProposedAction(raw=raw, call_id=tc.id))
        return Decision(narrative=response.text.strip() or None, actions=actions)

    def observe(self, results: list[tuple[ProposedAction, ActionResult]]) -> None:
        self._pending_results = [
            self.adapter.make_tool_result_message(
                COMPUTER_TOOL_NAME,
                result.to_model_payload(),
                tool_call_id=proposal.call_id,
            )
            for proposal, result in results
        ]
