"""
Streaming completion providers backed by hosted LLM APIs.
"""

import os

from .base import get_registry


class OpenAICompletion:
    """
    Completion provider using the OpenAI chat completions API.

    Works with any OpenAI-compatible endpoint via ``base_url``.

    Requires: CHATLEDGER_OPENAI_API_KEY or OPENAI_API_KEY environment variable
    (unless ``api_key`` is given).
    """

    default_model = "gpt-4.1-mini"
    key_env_vars = ("CHATLEDGER_OPENAI_API_KEY", "OPENAI_API_KEY")

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 120.0,
        headers: dict[str, str] | None = None,
    ):
        from openai import AsyncOpenAI

        self.model = model or self.default_model

        key = api_key or next(
            (os.environ[v] for v in self.key_env_vars if os.environ.get(v)), None
        )
        if not key:
            raise ValueError(
                f"API key required. Set {' or '.join(self.key_env_vars)}"
            )

        self._client = AsyncOpenAI(
            api_key=key,
            base_url=base_url,
            timeout=timeout,
            default_headers=headers,
        )

    async def stream_complete(self, messages: list[dict], model: str | None = None):
        """Stream text deltas of the assistant reply."""
        stream = await self._client.chat.completions.create(
            model=model or self.model,
            messages=messages,
            stream=True,
        )
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                yield delta


class OpenRouterCompletion(OpenAICompletion):
    """
    OpenAI-compatible provider pointed at OpenRouter.

    Requires: OPENROUTER_API_KEY environment variable (unless ``api_key``
    is given). Default model is openai/gpt-oss-120b.
    """

    default_model = "openai/gpt-oss-120b"
    key_env_vars = ("OPENROUTER_API_KEY",)

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 120.0,
        referer: str = "http://localhost:3000",
        title: str = "chatledger",
    ):
        super().__init__(
            model=model,
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            headers={"HTTP-Referer": referer, "X-Title": title},
        )


class AnthropicCompletion:
    """
    Completion provider using Anthropic's messages API.

    Requires: ANTHROPIC_API_KEY environment variable (unless ``api_key``
    is given). System messages are passed as the ``system`` parameter.
    """

    def __init__(
        self,
        model: str = "claude-haiku-4-5-20251001",
        api_key: str | None = None,
        max_tokens: int = 4096,
        timeout: float = 120.0,
    ):
        from anthropic import AsyncAnthropic

        self.model = model
        self.max_tokens = max_tokens

        key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not key:
            raise ValueError("Anthropic API key required. Set ANTHROPIC_API_KEY")

        self._client = AsyncAnthropic(api_key=key, timeout=timeout)

    async def stream_complete(self, messages: list[dict], model: str | None = None):
        """Stream text deltas of the assistant reply."""
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        conversation = [
            {"role": m["role"], "content": m["content"]}
            for m in messages
            if m["role"] != "system"
        ]
        kwargs = {
            "model": model or self.model,
            "max_tokens": self.max_tokens,
            "messages": conversation,
        }
        if system:
            kwargs["system"] = system

        async with self._client.messages.stream(**kwargs) as stream:
            async for text in stream.text_stream:
                if text:
                    yield text


# Register providers
_registry = get_registry()
_registry.register_completion("openrouter", OpenRouterCompletion)
_registry.register_completion("openai", OpenAICompletion)
_registry.register_completion("anthropic", AnthropicCompletion)
