"""Decision Backend interface.

A backend turns the conversation context into zero or more proposed actions
plus optional narrative text. Chat backends only propose; the Turn Loop
dispatches. The native backend delegates decide-and-dispatch to the desktop
provider's agent runtime and reports what it did through ``Progress``, so
all three publish through one vocabulary.
"""

from __future__ import annotations

import asyncio
import functools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..actions import ActionDescriptor, ActionResult, ProposedAction
from ..errors import BackendError
from ..llm import LLMAdapter


@dataclass
class DecisionContext:
    """What a backend sees on one iteration.

    Attributes:
        instruction: The conversation's original instruction.
        prompt: Instruction plus rendered prior history (see ``compose_prompt``).
        turn: Current turn counter.
        iteration: 0-based iteration within this invocation.
    """
    instruction: str
    prompt: str
    turn: int = 0
    iteration: int = 0


@dataclass
class Decision:
    """Backend output for one iteration.

    ``performed`` counts actions the backend already dispatched itself
    (native runtime); the Turn Loop dispatches ``actions``.
    """
    narrative: str | None = None
    actions: list[ProposedAction] = field(default_factory=list)
    performed: int = 0

    @property
    def empty(self) -> bool:
        return not self.actions and self.performed == 0


class Progress(Protocol):
    """Sink a self-dispatching backend reports into. Implemented by the Turn Loop."""

    async def narrative(self, text: str) -> None: ...

    async def action_proposed(self, action: ActionDescriptor) -> None: ...

    async def action_result(self, action: ActionDescriptor, result: ActionResult) -> None: ...


class DecisionBackend(ABC):
    """Abstract decision backend. One instance serves one Turn Loop invocation."""

    name: str = ""

    @abstractmethod
    async def decide(self, context: DecisionContext, progress: Progress) -> Decision:
        """Return the next decision. Raises ``BackendError`` on transport/parse failure."""

    def observe(self, results: list[tuple[ProposedAction, ActionResult]]) -> None:
        """Receive the results of the actions proposed by the last ``decide``."""


class ChatBackend(DecisionBackend):
    """Shared plumbing for the adapter-driven backends."""

    def __init__(self, adapter: LLMAdapter, model: str, max_tokens: int = 4096):
        self.adapter = adapter
        self.model = model
        self.max_tokens = max_tokens

    async def _call(self, fn, *args, **kwargs) -> Any:
        """Run a synchronous adapter call on the default executor."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))
        except BackendError:
            raise
        except Exception as e:
            if self.adapter.is_quota_error(e):
                raise BackendError(self.name, f"rate limited by {self.adapter.provider}: {e}") from e
            raise BackendError(self.name, f"{type(e).__name__}: {e}") from e
