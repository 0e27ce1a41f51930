"""OpenAI adapter — wraps the ``openai`` SDK for OpenAI and compatible APIs.

Covers OpenAI itself and any provider exposing an OpenAI-compatible
``/chat/completions`` endpoint (Groq, Together AI, Fireworks, Ollama, vLLM).

This is the **only** module that imports the ``openai`` package.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

import openai

from .base import (
    ChatSession,
    FunctionSchema,
    LLMAdapter,
    LLMResponse,
    ToolCall,
    UsageMetadata,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _build_tools(schemas: list[FunctionSchema] | None) -> list[dict] | None:
    """Convert FunctionSchema list to OpenAI tool format."""
    if not schemas:
        return None
    return [
        {
            "type": "function",
            "function": {
                "name": s.name,
                "description": s.description,
                "parameters": s.parameters,
            },
        }
        for s in schemas
    ]


def _parse_tool_calls(raw_tool_calls) -> list[ToolCall]:
    """Parse OpenAI tool calls into our ToolCall dataclass.

    Arguments that fail to decode are kept as ``{"_raw_arguments": ...}`` so
    the caller can report them instead of silently dispatching nothing.
    """
    if not raw_tool_calls:
        return []
    result = []
    for tc in raw_tool_calls:
        try:
            args = json.loads(tc.function.arguments) if tc.function.arguments else {}
        except (json.JSONDecodeError, TypeError):
            args = {"_raw_arguments": tc.function.arguments}
        if not isinstance(args, dict):
            args = {"_raw_arguments": tc.function.arguments}
        result.append(ToolCall(name=tc.function.name, args=args, id=tc.id))
    return result


def _parse_response(raw) -> LLMResponse:
    """Parse a raw OpenAI ChatCompletion into a provider-agnostic LLMResponse."""
    if not raw.choices:
        return LLMResponse(raw=raw)

    message = raw.choices[0].message
    usage = UsageMetadata()
    if raw.usage:
        usage = UsageMetadata(
            input_tokens=raw.usage.prompt_tokens or 0,
            output_tokens=raw.usage.completion_tokens or 0,
        )

    return LLMResponse(
        text=message.content or "",
        tool_calls=_parse_tool_calls(message.tool_calls),
        usage=usage,
        raw=raw,
    )


def _response_to_message(raw) -> dict:
    """Convert an OpenAI ChatCompletion response to a message dict for history."""
    choice = raw.choices[0] if raw.choices else None
    if not choice:
        return {"role": "assistant", "content": ""}
    msg = choice.message
    result: dict[str, Any] = {"role": "assistant"}
    if msg.content:
        result["content"] = msg.content
    if msg.tool_calls:
        result["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {
                    "name": tc.function.name,
                    "arguments": tc.function.arguments,
                },
            }
            for tc in msg.tool_calls
        ]
    if not msg.content and not msg.tool_calls:
        result["content"] = ""
    return result


# ---------------------------------------------------------------------------
# OpenAIChatSession
# ---------------------------------------------------------------------------


class OpenAIChatSession(ChatSession):
    """Client-managed chat session for OpenAI-compatible APIs.

    The full message list is sent on every request.
    """

    def __init__(
        self,
        client: openai.OpenAI,
        model: str,
        messages: list[dict],
        tools: list[dict] | None,
        max_tokens: int,
    ):
        self._client = client
        self._model = model
        self._messages = messages
        self._tools = tools
        self._max_tokens = max_tokens

    def send(self, message) -> LLMResponse:
        """Send a user message (str) or tool results (list of dicts)."""
        if isinstance(message, str):
            self._messages.append({"role": "user", "content": message})
        elif isinstance(message, list):
            # Tool results: the assistant message carrying the matching
            # tool_calls was appended when the previous response was parsed.
            self._messages.extend(message)
        else:
            raise TypeError(f"Unsupported message type: {type(message)}")

        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": self._messages,
            "max_tokens": self._max_tokens,
        }
        if self._tools:
            kwargs["tools"] = self._tools
            kwargs["tool_choice"] = "auto"
        raw = self._client.chat.completions.create(**kwargs)

        self._messages.append(_response_to_message(raw))
        return _parse_response(raw)

    def get_history(self) -> list[dict]:
        return list(self._messages)


# ---------------------------------------------------------------------------
# OpenAIAdapter
# ---------------------------------------------------------------------------


class OpenAIAdapter(LLMAdapter):
    """Adapter that wraps the ``openai`` SDK for OpenAI and compatible APIs."""

    provider = "openai"

    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str | None = None,
        timeout_ms: int = 300_000,
    ):
        self.base_url = base_url
        kwargs: dict[str, Any] = {"api_key": api_key}
        if base_url:
            kwargs["base_url"] = base_url
        kwargs["timeout"] = timeout_ms / 1000.0  # openai SDK uses seconds
        self._client = openai.OpenAI(**kwargs)

    # -- LLMAdapter interface --------------------------------------------------

    def create_chat(
        self,
        model: str,
        system_prompt: str,
        tools: list[FunctionSchema] | None = None,
        *,
        max_tokens: int = 4096,
    ) -> OpenAIChatSession:
        messages: list[dict] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        return OpenAIChatSession(
            client=self._client,
            model=model,
            messages=messages,
            tools=_build_tools(tools),
            max_tokens=max_tokens,
        )

    def generate(
        self,
        model: str,
        contents: str,
        *,
        system_prompt: str | None = None,
        json_schema: dict | None = None,
        max_tokens: int = 4096,
    ) -> LLMResponse:
        messages: list[dict] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": contents})

        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
        }
        if json_schema is not None:
            # Non-strict: the action schema has optional per-action fields,
            # which strict mode would force to be present on every item.
            kwargs["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": json_schema.get("title", "response"),
                    "strict": False,
                    "schema": json_schema,
                },
            }

        raw = self._client.chat.completions.create(**kwargs)
        return _parse_response(raw)

    def make_tool_result_message(
        self, tool_name: str, result: dict, *, tool_call_id: str | None = None
    ) -> dict:
        """Build a Chat Completions tool-result message dict.

        OpenAI requires ``tool_call_id`` to match the original tool call.
        """
        return {
            "role": "tool",
            "tool_call_id": tool_call_id or f"call_{uuid.uuid4().hex[:24]}",
            "content": json.dumps(result, default=str),
        }

    def is_quota_error(self, exc: Exception) -> bool:
        """Check if the exception is an OpenAI rate-limit error."""
        return isinstance(exc, openai.RateLimitError)

    @property
    def client(self):
        """Escape hatch — the underlying ``openai.OpenAI`` client."""
        return self._client
