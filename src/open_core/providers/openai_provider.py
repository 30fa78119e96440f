from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import AsyncIterator

import openai
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
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.APITimeoutError,
)

_FINISH_REASON_MAP = {
    "stop": FINISH_STOP,
    "tool_calls": FINISH_TOOL_CALLS,
    "function_call": FINISH_TOOL_CALLS,
    "length": FINISH_LENGTH,
    "content_filter": "content-filter",
}


def map_openai_error(ex: Exception) -> ProviderError:
    if isinstance(ex, (openai.APIConnectionError, openai.APITimeoutError)):
        return NetworkError(f"OpenAI connection failed: {ex}", provider_id="openai")
    status_code = getattr(ex, "status_code", None)
    return ProviderError(f"OpenAI request failed: {ex}", status_code=status_code, provider_id="openai")


def _image_url(block: dict) -> str | None:
    source = block.get("source") or {}
    if source.get("type") == "url":
        return source.get("url")
    if source.get("type") == "base64":
        return f"data:{source.get('media_type', 'image/png')};base64,{source.get('data', '')}"
    return None


def _tool_result_text(block: dict) -> str:
    content = block.get("content", "")
    if isinstance(content, list):
        return "\n".join(
            sub.get("text", "") for sub in content if isinstance(sub, dict) and sub.get("type") == "text"
        )
    return str(content)


def _assistant_message(blocks: list[dict]) -> dict:
    texts = [b["text"] for b in blocks if b.get("type") == "text"]
    calls = [
        {
            "id": b["id"],
            "type": "function",
            "function": {"name": b["name"], "arguments": json.dumps(b["input"])},
        }
        for b in blocks
        if b.get("type") == "tool_use"
    ]
    message: dict = {"role": "assistant", "content": "\n".join(texts) if texts else None}
    if calls:
        message["tool_calls"] = calls
    return message


def _user_messages(role: str, blocks: list) -> list[dict]:
    """Tool results become ``tool`` messages ahead of the remaining user content."""
    converted: list[dict] = []
    parts: list[dict] = []
    for block in blocks:
        kind = "text" if isinstance(block, str) else block.get("type")
        if kind == "tool_result":
            converted.append(
                {"role": "tool", "tool_call_id": block["tool_use_id"], "content": _tool_result_text(block)}
            )
        elif kind == "text":
            parts.append({"type": "text", "text": block if isinstance(block, str) else block["text"]})
        elif kind == "image":
            url = _image_url(block)
            if url:
                parts.append({"type": "image_url", "image_url": {"url": url}})

    if parts and all(p["type"] == "text" for p in parts):
        converted.append({"role": role, "content": "\n".join(p["text"] for p in parts)})
    elif parts:
        converted.append({"role": role, "content": parts})
    return converted


def _to_openai_messages(system: list[str], messages: list[dict]) -> list[dict]:
    out: list[dict] = []
    system_text = "\n\n".join(s for s in system if s)
    if system_text:
        out.append({"role": "system", "content": system_text})

    for message in messages:
        role, content = message["role"], message.get("content", "")
        if isinstance(content, str):
            out.append({"role": role, "content": content})
        elif role == "assistant":
            out.append(_assistant_message(content))
        else:
            out.extend(_user_messages(role, content))
    return out


def _to_openai_tools(tools: list[ProviderTool]) -> list[dict]:
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.input_schema,
            },
        }
        for t in tools
    ]


@dataclass
class _PendingCall:
    """Tool call assembled from streamed fragments sharing one index."""

    call_id: str = ""
    name: str = ""
    arguments: list[str] = field(default_factory=list)

    def absorb(self, fragment) -> None:
        self.call_id = fragment.id or self.call_id
        function = fragment.function
        if function is None:
            return
        self.name = function.name or self.name
        if function.arguments:
            self.arguments.append(function.arguments)


def _usage_from_chunk(raw) -> TokenUsage:
    prompt = raw.prompt_tokens or 0
    prompt_details = getattr(raw, "prompt_tokens_details", None)
    completion_details = getattr(raw, "completion_tokens_details", None)
    cached = (getattr(prompt_details, "cached_tokens", None) or 0) if prompt_details else 0
    reasoning = (getattr(completion_details, "reasoning_tokens", None) or 0) if completion_details else 0
    return TokenUsage(
        input=prompt - cached,
        output=(raw.completion_tokens or 0) - reasoning,
        reasoning=reasoning,
        cache_read=cached,
    )


class OpenAIProvider:
    def __init__(self, api_key: str, *, client: openai.AsyncOpenAI | None = None):
        self._client = client or openai.AsyncOpenAI(api_key=api_key)

    def count_tokens(self, messages: list[dict]) -> int:
        return estimate_message_tokens(messages)

    @retry(**default_retry_kwargs(_TRANSIENT_ERRORS))
    async def _open_stream(self, **kwargs):
        return await self._client.chat.completions.create(**kwargs)

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
        oai_messages = _to_openai_messages(system, messages)
        oai_tools = _to_openai_tools(tools)

        kwargs: dict = dict(
            model=model,
            max_tokens=params.max_tokens,
            messages=oai_messages,
            stream=True,
            stream_options={"include_usage": True},
        )
        if params.temperature is not None:
            kwargs["temperature"] = params.temperature
        if params.top_p is not None:
            kwargs["top_p"] = params.top_p
        if oai_tools:
            kwargs["tools"] = oai_tools

        logger.debug(
            f"API request: model={model}, max_tokens={params.max_tokens}, "
            f"messages={len(oai_messages)}, tools={len(oai_tools)}"
        )
        try:
            stream = await self._open_stream(**kwargs)
        except openai.APIError as ex:
            yield ErrorEvent(map_openai_error(ex))
            return

        yield StartEvent()
        yield StartStepEvent()

        text_open = False
        pending: dict[int, _PendingCall] = {}
        finish_reason: str | None = None
        usage = TokenUsage()
        try:
            async for chunk in stream:
                if abort is not None and abort.is_set():
                    logger.debug("OpenAI stream aborted by caller")
                    return

                if getattr(chunk, "usage", None) is not None:
                    usage = _usage_from_chunk(chunk.usage)
                if not chunk.choices:
                    continue

                choice = chunk.choices[0]
                finish_reason = choice.finish_reason or finish_reason
                delta = choice.delta
                if delta is None:
                    continue

                if delta.content:
                    if not text_open:
                        text_open = True
                        yield TextStartEvent()
                    yield TextDeltaEvent(text=delta.content)

                for fragment in delta.tool_calls or []:
                    pending.setdefault(fragment.index, _PendingCall()).absorb(fragment)
        except openai.APIError as ex:
            yield ErrorEvent(map_openai_error(ex))
            return
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                await close()

        if text_open:
            yield TextEndEvent()
        for index in sorted(pending):
            call = pending[index]
            yield ToolCallEvent(
                call_id=call.call_id,
                tool_name=call.name,
                input=parse_tool_arguments("".join(call.arguments)),
            )

        mapped = _FINISH_REASON_MAP.get(finish_reason or "stop", finish_reason)
        logger.debug(
            f"API response: finish_reason={finish_reason}, "
            f"tool_calls={len(pending)}, input_tokens={usage.input}, output_tokens={usage.output}"
        )
        yield FinishStepEvent(usage=usage, finish_reason=mapped)
        yield FinishEvent(finish_reason=mapped, usage=usage)

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
        oai_messages = _to_openai_messages(system, messages)
        logger.debug(f"Summary API request: model={model}, messages={len(oai_messages)}")
        response = await self._client.chat.completions.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=oai_messages,
        )
        text = response.choices[0].message.content or ""
        logger.debug(f"Summary API response: len={len(text)}")
        return text
