from __future__ import annotations

import json

from loguru import logger
from tenacity import RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

RETRY_ATTEMPTS = 5
_CHARS_PER_TOKEN = 4


def _log_retry(state: RetryCallState) -> None:
    error = state.outcome.exception() if state.outcome is not None else None
    delay = state.next_action.sleep if state.next_action is not None else 0
    logger.warning(
        f"Provider call failed with {type(error).__name__ if error else 'an unknown error'}; "
        f"attempt {state.attempt_number}/{RETRY_ATTEMPTS}, next try in {delay:.0f}s"
    )


def default_retry_kwargs(exception_types: tuple[type[Exception], ...]) -> dict:
    """tenacity arguments for retrying transient provider failures."""
    return {
        "retry": retry_if_exception_type(exception_types),
        "wait": wait_exponential(multiplier=10, min=10, max=320),
        "stop": stop_after_attempt(RETRY_ATTEMPTS),
        "before_sleep": _log_retry,
        "reraise": True,
    }


def _block_chars(block) -> int:
    if isinstance(block, str):
        return len(block)
    if not isinstance(block, dict):
        return 0
    kind = block.get("type")
    if kind == "text":
        return len(block.get("text") or "")
    if kind == "tool_use":
        return len(block.get("name") or "") + len(json.dumps(block.get("input") or {}))
    if kind == "tool_result":
        inner = block.get("content")
        if isinstance(inner, list):
            return sum(_block_chars(sub) for sub in inner)
        return len(inner or "")
    return 0


def estimate_message_tokens(messages: list[dict]) -> int:
    """Character-based token estimate for Anthropic-style messages."""
    chars = 0
    for message in messages:
        content = message.get("content")
        blocks = [content] if isinstance(content, str) else content or []
        chars += sum(_block_chars(block) for block in blocks)
    return chars // _CHARS_PER_TOKEN


def parse_tool_arguments(raw_args: str) -> dict:
    if not raw_args:
        return {}
    try:
        parsed = json.loads(raw_args)
    except json.JSONDecodeError:
        logger.warning(f"Discarding malformed tool arguments: {raw_args[:200]}")
        return {}
    return parsed if isinstance(parsed, dict) else {}
