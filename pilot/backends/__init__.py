"""Decision backends and the factory that builds them from config.

A fresh backend instance is built for every Turn Loop invocation; LLM
adapters (which hold HTTP clients) are cached per provider.
"""

from __future__ import annotations

from typing import Callable

import config

from ..desktop import Desktop
from ..errors import UnknownBackendError
from ..llm import LLMAdapter, create_adapter
from ..turn_limits import get_limit
from .base import Decision, DecisionBackend, DecisionContext, Progress
from .native import NativeAgentBackend
from .structured import StructuredChatBackend
from .tool_calling import ToolCallingChatBackend

BACKENDS = ("native", "structured", "tool_calling")

BackendFactory = Callable[[str], DecisionBackend]


def validate_backend(name: str) -> str:
    if name not in BACKENDS:
        raise UnknownBackendError(name)
    return name


def make_backend_factory(
    desktop: Desktop,
    adapter_factory: Callable[[str], LLMAdapter] = create_adapter,
) -> BackendFactory:
    """Return ``factory(name) -> DecisionBackend`` bound to one desktop."""
    adapters: dict[str, LLMAdapter] = {}

    def _adapter(provider: str) -> LLMAdapter:
        if provider not in adapters:
            adapters[provider] = adapter_factory(provider)
        return adapters[provider]

    def factory(name: str) -> DecisionBackend:
        validate_backend(name)
        if name == "native":
            return NativeAgentBackend(
                desktop,
                agent_iterations=config.backend_get("native", "agent_iterations")
                or get_limit("native.agent_iterations"),
                max_tokens=config.backend_get("native", "max_tokens", 4096),
                model=config.get("backends.native.model"),
            )
        provider = config.backend_get(name, "provider")
        kwargs = dict(
            adapter=_adapter(provider),
            model=config.backend_get(name, "model"),
            max_tokens=config.backend_get(name, "max_tokens", 4096),
        )
        if name == "structured":
            return StructuredChatBackend(**kwargs)
        return ToolCallingChatBackend(**kwargs)

    return factory


__all__ = [
    "BACKENDS",
    "BackendFactory",
    "Decision",
    "DecisionBackend",
    "DecisionContext",
    "NativeAgentBackend",
    "Progress",
    "StructuredChatBackend",
    "ToolCallingChatBackend",
    "make_backend_factory",
    "validate_backend",
]
