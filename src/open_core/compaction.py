from __future__ import annotations

import json
from typing import Awaitable, Callable

from loguru import logger

from open_core.messages import FilePart, StepFinishPart, StoredMessage, TextPart, ToolPart, ToolStateCompleted, ToolStateError

Summarizer = Callable[[list[StoredMessage]], Awaitable[str]]

SUMMARY_PREFIX = "[CONTEXT SUMMARY]"

_MAX_SUMMARY_INPUT_CHARS = 100_000
_SUMMARY_MAX_TOKENS = 4096


def estimate_tokens(messages: list[StoredMessage]) -> int:
    total_chars = 0
    for message in messages:
        for part in message.parts:
            if isinstance(part, TextPart):
                total_chars += len(part.text)
            elif isinstance(part, ToolPart):
                total_chars += len(part.tool)
                total_chars += len(json.dumps(part.state.input))
                if isinstance(part.state, ToolStateCompleted):
                    total_chars += len(part.state.output)
                elif isinstance(part.state, ToolStateError):
                    total_chars += len(part.state.error)
            elif isinstance(part, FilePart):
                total_chars += len(part.url)
    return total_chars // 4


def recorded_tokens(message: StoredMessage) -> int:
    """Usage reported by the provider for an assistant message."""
    steps = [p for p in message.parts if isinstance(p, StepFinishPart)]
    if steps:
        last = steps[-1].tokens
        return last.input + last.output + last.cache_read + last.cache_write
    tokens = message.info.tokens
    return tokens.input + tokens.output + tokens.cache_read + tokens.cache_write


def format_for_summarization(messages: list[StoredMessage]) -> str:
    sections = []
    for message in messages:
        lines = []
        for part in message.parts:
            if isinstance(part, TextPart):
                lines.append(part.text)
            elif isinstance(part, FilePart):
                lines.append(f"[File: {part.filename or part.url} ({part.mime})]")
            elif isinstance(part, ToolPart):
                inp = json.dumps(part.state.input, indent=None)
                if len(inp) > 200:
                    inp = inp[:200] + "..."
                lines.append(f"[Tool call: {part.tool}({inp})]")
                if isinstance(part.state, ToolStateCompleted):
                    lines.append(f"[Tool result ({part.call_id})]: {_preview_text(part.state.output)}")
                elif isinstance(part.state, ToolStateError):
                    lines.append(f"[Tool error ({part.call_id})]: {_preview_text(part.state.error)}")
        sections.append(f"[{message.info.role}]: " + "\n".join(lines))
    return "\n\n".join(sections)


def _preview_text(text: str) -> str:
    if len(text) <= 700:
        return text
    return text[:500] + "\n[...truncated...]\n" + text[-200:]


SUMMARIZE_PROMPT = """\
Summarize the following conversation history between a user and an AI coding assistant.
Preserve these details precisely:
- The original user request and any specific criteria or instructions
- All decisions made and their reasoning
- File paths, identifiers and commands that may be needed later
- Files created or modified and what changed in them
- Current task status and next steps

Do NOT include raw tool output (file contents, command logs) - just note what was
retrieved or changed and the key findings.

Format as a concise narrative summary.

---
CONVERSATION HISTORY:

"""


def build_summary_request(messages: list[StoredMessage]) -> str:
    formatted = format_for_summarization(messages)
    if len(formatted) > _MAX_SUMMARY_INPUT_CHARS:
        half = _MAX_SUMMARY_INPUT_CHARS // 2
        formatted = (
            formatted[:half]
            + "\n\n[...middle of conversation omitted for brevity...]\n\n"
            + formatted[-half:]
        )
    return SUMMARIZE_PROMPT + formatted


def provider_summarizer(provider, model: str) -> Summarizer:
    """Summarizer backed by ``provider.create_message`` (which carries its own retries)."""

    async def summarize(messages: list[StoredMessage]) -> str:
        request = build_summary_request(messages)
        logger.debug(f"Compression request: model={model}, input_chars={len(request):,}")
        summary = await provider.create_message(
            model=model,
            system=[],
            messages=[{"role": "user", "content": request}],
            max_tokens=_SUMMARY_MAX_TOKENS,
            temperature=0,
        )
        if not summary or not summary.strip():
            raise ValueError("Summarizer returned an empty summary")
        return summary

    return summarize
