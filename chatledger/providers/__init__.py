"""Completion providers for chat turns."""

from .base import CompletionProvider, ProviderRegistry, get_registry

__all__ = ["CompletionProvider", "ProviderRegistry", "get_registry"]
