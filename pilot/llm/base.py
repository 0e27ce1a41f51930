"""Provider-agnostic types and abstract base class for LLM adapters.

Decision backends depend on these types, never on provider-specific SDKs.
All adapter calls are synchronous; backends run them on the default
executor so the event loop keeps serving other conversations.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class ToolCall:
    """A single function/tool invocation extracted from the LLM response.

    Attributes:
        name: Tool/function name.
        args: Parsed arguments dict.
        id: Provider-assigned call ID (e.g. ``call_xxxxx`` for OpenAI,
            ``toolu_xxxxx`` for Anthropic).  None for Gemini which doesn't
            use explicit tool-call IDs.
    """
    name: str
    args: dict
    id: str | None = None


@dataclass
class UsageMetadata:
    """Normalized token counts."""
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class LLMResponse:
    """Provider-agnostic response from an LLM call.

    Attributes:
        text: Concatenated text output.
        tool_calls: Extracted function/tool calls.
        usage: Token usage for this call.
        raw: The original provider-specific response object.
    """
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: UsageMetadata = field(default_factory=UsageMetadata)
    raw: Any = None


@dataclass
class FunctionSchema:
    """Wraps a tool/function schema dict for type clarity.

    The ``parameters`` dict is already JSON-schema-shaped and provider-agnostic.
    """
    name: str
    description: str
    parameters: dict


# ---------------------------------------------------------------------------
# ChatSession ABC
# ---------------------------------------------------------------------------

class ChatSession(ABC):
    """Abstract multi-turn chat session."""

    @abstractmethod
    def send(self, message) -> LLMResponse:
        """Send a user message or tool results and return the model response.

        ``message`` can be:
        - A string (user text message)
        - A list of tool-result objects (provider-specific, built via
          ``LLMAdapter.make_tool_result_message()``)
        """

    @abstractmethod
    def get_history(self) -> list:
        """Return the conversation so far in the provider's native format."""


# ---------------------------------------------------------------------------
# LLMAdapter ABC
# ---------------------------------------------------------------------------

class LLMAdapter(ABC):
    """Abstract interface that every LLM provider adapter must implement."""

    provider: str = ""

    @abstractmethod
    def create_chat(
        self,
        model: str,
        system_prompt: str,
        tools: list[FunctionSchema] | None = None,
        *,
        max_tokens: int = 4096,
    ) -> ChatSession:
        """Create a new multi-turn chat session.

        Args:
            model: Model identifier.
            system_prompt: System instruction for the session.
            tools: Tool/function schemas available to the model.
            max_tokens: Output token cap per call.
        """

    @abstractmethod
    def generate(
        self,
        model: str,
        contents: str,
        *,
        system_prompt: str | None = None,
        json_schema: dict | None = None,
        max_tokens: int = 4096,
    ) -> LLMResponse:
        """One-shot generation (no chat history).

        If ``json_schema`` is given the provider is asked to return JSON
        conforming to it. Depending on the provider that JSON arrives either
        as ``text`` or as the arguments of a single tool call named after
        the schema's ``title``.
        """

    @abstractmethod
    def make_tool_result_message(
        self, tool_name: str, result: dict, *, tool_call_id: str | None = None
    ) -> Any:
        """Build a provider-specific tool result object.

        Returned values are collected into a list and passed to
        ``ChatSession.send()``.
        """

    @abstractmethod
    def is_quota_error(self, exc: Exception) -> bool:
        """Return True if ``exc`` represents a quota/rate-limit error (429)."""
