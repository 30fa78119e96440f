"""Conversion of stored session history into provider request messages.

Output uses Anthropic-style content blocks: an assistant turn carries ``text``
and ``tool_use`` blocks, and its tool outcomes follow as ``tool_result`` blocks
in a user turn. Consecutive turns with the same role are merged.
"""

from __future__ import annotations

from open_core.messages import (
    FilePart,
    StoredMessage,
    TextPart,
    ToolPart,
    ToolStateCompleted,
    ToolStateError,
)


def _file_block(part: FilePart) -> dict:
    if part.mime.startswith("image/"):
        if part.url.startswith("data:") and ";base64," in part.url:
            header, data = part.url.split(";base64,", 1)
            return {
                "type": "image",
                "source": {"type": "base64", "media_type": header[len("data:"):] or part.mime, "data": data},
            }
        return {"type": "image", "source": {"type": "url", "url": part.url}}
    label = part.filename or part.url
    return {"type": "text", "text": f"[Attached file: {label} ({part.mime}) {part.url}]"}


def _tool_result_block(part: ToolPart) -> dict:
    state = part.state
    if isinstance(state, ToolStateCompleted):
        return {"type": "tool_result", "tool_use_id": part.call_id, "content": state.output}
    error = state.error if isinstance(state, ToolStateError) else "Tool call was interrupted"
    return {"type": "tool_result", "tool_use_id": part.call_id, "content": error, "is_error": True}


def to_provider_messages(messages: list[StoredMessage]) -> list[dict]:
    out: list[dict] = []

    def append(role: str, content: list[dict]) -> None:
        if not content:
            return
        if out and out[-1]["role"] == role:
            out[-1]["content"].extend(content)
        else:
            out.append({"role": role, "content": list(content)})

    for message in messages:
        if message.info.role == "user":
            blocks: list[dict] = []
            for part in message.parts:
                if isinstance(part, TextPart) and part.text:
                    blocks.append({"type": "text", "text": part.text})
                elif isinstance(part, FilePart):
                    blocks.append(_file_block(part))
            append("user", blocks)
            continue

        assistant_blocks: list[dict] = []
        results: list[dict] = []
        for part in message.parts:
            if isinstance(part, TextPart) and part.text:
                assistant_blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ToolPart):
                assistant_blocks.append(
                    {"type": "tool_use", "id": part.call_id, "name": part.tool, "input": part.state.input}
                )
                results.append(_tool_result_block(part))
        append("assistant", assistant_blocks)
        append("user", results)

    return out
