"""LLM abstraction layer — provider-agnostic interface for model calls.

Re-exports the public API so consumers can write:
    from pilot.llm import LLMAdapter, LLMResponse, create_adapter, ...

Provider SDKs are imported lazily inside ``create_adapter`` so a server that
only uses the native backend never loads the chat SDKs.
"""

from .base import LLMAdapter, LLMResponse, ToolCall, UsageMetadata, ChatSession, FunctionSchema

# "groq" speaks the OpenAI chat-completions protocol at its own base URL.
PROVIDERS = ("anthropic", "openai", "groq", "gemini")


def create_adapter(provider: str) -> LLMAdapter:
    """Create the adapter for *provider* from config (api key, base URL).

    Raises ``ValueError`` for an unknown provider name.
    """
    import config

    provider = provider.lower()
    api_key = config.get_api_key(provider)
    base_url = config.provider_get(provider, "base_url")
    if provider in ("openai", "groq"):
        from .openai_adapter import OpenAIAdapter
        adapter = OpenAIAdapter(api_key=api_key, base_url=base_url)
        adapter.provider = provider
        return adapter
    if provider == "anthropic":
        from .anthropic_adapter import AnthropicAdapter
        return AnthropicAdapter(api_key=api_key, base_url=base_url)
    if provider == "gemini":
        from .gemini_adapter import GeminiAdapter
        return GeminiAdapter(api_key=api_key)
    raise ValueError(f"Unknown LLM provider: {provider!r} (expected one of {PROVIDERS})")


__all__ = [
    "LLMAdapter",
    "LLMResponse",
    "ToolCall",
    "UsageMetadata",
    "ChatSession",
    "FunctionSchema",
    "PROVIDERS",
    "create_adapter",
]
