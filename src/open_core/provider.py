from __future__ import annotations

import asyncio
from typing import AsyncIterator, Protocol, runtime_checkable

from open_core.providers.transforms import ModelParameters
from open_core.stream_events import StreamEvent
from open_core.tool import ProviderTool


@runtime_checkable
class Provider(Protocol):
    async def generate_stream(
        self,
        *,
        model: str,
        system: list[str],
        messages: list[dict],
        tools: list[ProviderTool],
        params: ModelParameters,
        abort: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one model turn as ``StreamEvent`` values.

        Messages use Anthropic-style content blocks. SDK failures are delivered
        as a terminal ``ErrorEvent`` rather than raised.
        """
        ...

    def count_tokens(self, messages: list[dict]) -> int: ...

    async def create_message(
        self,
        *,
        model: str,
        system: list[str],
        messages: list[dict],
        max_tokens: int,
        temperature: float,
    ) -> str:
        """Non-streaming message creation (used for compression summaries)."""
        ...


def create_provider(provider_name: str, api_key: str) -> Provider:
    """Factory: create a Provider by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from open_core.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key)
    if name == "openai":
        from open_core.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'openai'")
