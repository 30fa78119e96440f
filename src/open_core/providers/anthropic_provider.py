from __future__ import annotations

import asyncio
from typing import AsyncIterator

import anthropic
from loguru import logger
from tenacity import retry

from open_core.errors import NetworkError, ProviderError
from open_core.messages import TokenUsage
from open_core.providers.common import default_retry_kwargs, estimate_message_tokens, parse_tool_arguments
from open_core.providers.transforms import ModelParameters
from open_core.stream_events import (
    FINISH_LENGTH,
    FINISH_STOP,
    FINISH_TOOL_CALLS,
    ErrorEvent,
    FinishEvent,
    FinishStepEvent,
    StartEvent,
    StartStepEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
    TextStartEvent,
    ToolCallEvent,
)
from open_core.tool import ProviderTool

_TRANSIENT_ERRORS = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
)

_FINISH_REASON_MAP = {
    "end_turn": FINISH_STOP,
    "stop_sequence": FINISH_STOP,
    "tool_use": FINISH_TOOL_CALLS,
    "max_tokens": FINISH_LENGTH,
}


def map_anthropic_error(ex: Exception) -> ProviderError:
    if isinstance(ex, (anthropic.APIConnectionError, anthropic.APITimeoutError)):
        return NetworkError(f"Anthropic connection failed: {ex}", provider_id="anthropic")
    status_code = getattr(ex, "status_code", None)
    return ProviderError(f"Anthropic request failed: {ex}", status_code=status_code, provider_id="anthropic")


def _system_blocks(system: list[str], caching: bool) -> list[dict]:
    blocks = [{"type": "text", "text": text} for text in system if text]
    if caching and blocks:
        blocks[-1]["cache_control"] = {"type": "ephemeral"}
    return blocks


class AnthropicProvider:
    def __init__(self, api_key: str, *, client: anthropic.AsyncAnthropic | None = None):
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key)

    def count_tokens(self, messages: list[dict]) -> int:
        return estimate_message_tokens(messages)

    @retry(**default_retry_kwargs(_TRANSIENT_ERRORS))
    async def _open_stream(self, **kwargs):
        return await self._client.messages.create(stream=True, **kwargs)

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
        kwargs: dict = dict(model=model, max_tokens=params.max_tokens, messages=messages)
        system_blocks = _system_blocks(system, params.caching)
        if system_blocks:
            kwargs["system"] = system_blocks
        if params.temperature is not None:
            kwargs["temperature"] = params.temperature
        if params.top_p is not None:
            kwargs["top_p"] = params.top_p
        if tools:
            kwargs["tools"] = [t.to_dict() for t in tools]

        logger.debug(
            f"API request: model={model}, max_tokens={params.max_tokens}, "
            f"messages={len(messages)}, tools={len(tools)}"
        )
        try:
            stream = await self._open_stream(**kwargs)
        except anthropic.APIError as ex:
            yield ErrorEvent(map_anthropic_error(ex))
            return

        yield StartEvent()
        yield StartStepEvent()

        usage = TokenUsage()
        stop_reason: str | None = None
        # index -> {"type", "id", "name", "json_parts"}
        blocks: dict[int, dict] = {}
        try:
            async for event in stream:
                if abort is not None and abort.is_set():
                    logger.debug("Anthropic stream aborted by caller")
                    return

                if event.type == "message_start":
                    start_usage = event.message.usage
                    usage.input = start_usage.input_tokens or 0
                    usage.cache_read = getattr(start_usage, "cache_read_input_tokens", None) or 0
                    usage.cache_write = getattr(start_usage, "cache_creation_input_tokens", None) or 0
                    usage.output = getattr(start_usage, "output_tokens", None) or 0

                elif event.type == "content_block_start":
                    block = event.content_block
                    blocks[event.index] = {
                        "type": block.type,
                        "id": getattr(block, "id", ""),
                        "name": getattr(block, "name", ""),
                        "json_parts": [],
                    }
                    if block.type == "text":
                        yield TextStartEvent()
                        if getattr(block, "text", ""):
                            yield TextDeltaEvent(text=block.text)

                elif event.type == "content_block_delta":
                    delta = event.delta
                    if delta.type == "text_delta":
                        yield TextDeltaEvent(text=delta.text)
                    elif delta.type == "input_json_delta":
                        blocks.setdefault(event.index, {"type": "tool_use", "id": "", "name": "", "json_parts": []})
                        blocks[event.index]["json_parts"].append(delta.partial_json)

                elif event.type == "content_block_stop":
                    block = blocks.get(event.index)
                    if block is None:
                        continue
                    if block["type"] == "text":
                        yield TextEndEvent()
                    elif block["type"] == "tool_use":
                        yield ToolCallEvent(
                            call_id=block["id"],
                            tool_name=block["name"],
                            input=parse_tool_arguments("".join(block["json_parts"])),
                        )

                elif event.type == "message_delta":
                    stop_reason = event.delta.stop_reason or stop_reason
                    if event.usage is not None and event.usage.output_tokens is not None:
                        usage.output = event.usage.output_tokens
        except anthropic.APIError as ex:
            yield ErrorEvent(map_anthropic_error(ex))
            return
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                await close()

        finish_reason = _FINISH_REASON_MAP.get(stop_reason or "end_turn", stop_reason)
        logger.debug(
            f"API response: stop_reason={stop_reason}, "
            f"input_tokens={usage.input}, output_tokens={usage.output}"
        )
        yield FinishStepEvent(usage=usage, finish_reason=finish_reason)
        yield FinishEvent(finish_reason=finish_reason, usage=usage)

    @retry(**default_retry_kwargs(_TRANSIENT_ERRORS))
    async def create_message(
        self,
        *,
        model: str,
        system: list[str],
        messages: list[dict],
        max_tokens: int,
        temperature: float,
    ) -> str:
        logger.debug(f"Summary API request: model={model}, messages={len(messages)}")
        kwargs: dict = dict(model=model, max_tokens=max_tokens, temperature=temperature, messages=messages)
        system_blocks = _system_blocks(system, caching=False)
        if system_blocks:
            kwargs["system"] = system_blocks
        response = await self._client.messages.create(**kwargs)
        usage = response.usage
        logger.debug(
            f"Summary API response: input_tokens={usage.input_tokens}, "
            f"output_tokens={usage.output_tokens}"
        )
        return "".join(block.text for block in response.content if block.type == "text")
