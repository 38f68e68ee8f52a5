"""
Base provider protocols.

These define the interfaces that concrete providers must implement.
Using Protocol for structural subtyping - no explicit inheritance required.
"""

from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable


# -----------------------------------------------------------------------------
# Chat Completion
# -----------------------------------------------------------------------------

@runtime_checkable
class CompletionProvider(Protocol):
    """
    Streams a chat completion.

    Messages are OpenAI-style dicts: ``{"role": ..., "content": ...}`` with
    roles ``system``, ``user`` and ``assistant``. The stream yields text
    deltas; an empty or whitespace-only total is a valid (if useless)
    result, not an error.

    Example implementation:
        class EchoCompletion:
            async def stream_complete(self, messages, model):
                yield messages[-1]["content"]
    """

    def stream_complete(self, messages: list[dict], model: str) -> AsyncIterator[str]:
        """
        Stream the assistant reply.

        Args:
            messages: Conversation, system prompt first if any
            model: Provider-specific model name

        Yields:
            Text deltas in order
        """
        ...


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating providers.

    Providers are registered by name and created from configuration, so
    chatledger.toml can select a provider without code changes.

    Example:
        registry = get_registry()
        provider = registry.create_completion("openrouter", {"model": "openai/gpt-oss-120b"})
    """

    def __init__(self):
        self._completion_providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily load provider modules."""
        if self._lazy_loaded:
            return
        self._lazy_loaded = True
        # Import to trigger registration
        from . import llm  # noqa: F401

    def register_completion(self, name: str, provider_class: type) -> None:
        """Register a completion provider class."""
        self._completion_providers[name] = provider_class

    def create_completion(self, name: str, params: dict | None = None) -> CompletionProvider:
        """Create a completion provider instance."""
        self._ensure_providers_loaded()
        if name not in self._completion_providers:
            available = ", ".join(self._completion_providers) or "none"
            raise ValueError(
                f"Unknown completion provider: '{name}'. "
                f"Available providers: {available}."
            )
        try:
            return self._completion_providers[name](**(params or {}))
        except (TypeError, ValueError) as e:
            raise RuntimeError(
                f"Failed to create completion provider '{name}': {e}"
            ) from e

    def list_completion_providers(self) -> list[str]:
        """List registered completion provider names."""
        self._ensure_providers_loaded()
        return list(self._completion_providers.keys())


_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
