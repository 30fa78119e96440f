"""Events emitted by a provider stream and folded by the stream processor.

A stream is an ordered sequence of these events terminated by exactly one
``FinishEvent`` or ``ErrorEvent``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Union

from open_core.messages import TokenUsage


@dataclass(frozen=True)
class StartEvent:
    type: Literal["start"] = "start"


@dataclass(frozen=True)
class TextStartEvent:
    type: Literal["text-start"] = "text-start"


@dataclass(frozen=True)
class TextDeltaEvent:
    text: str
    type: Literal["text-delta"] = "text-delta"


@dataclass(frozen=True)
class TextEndEvent:
    type: Literal["text-end"] = "text-end"


@dataclass(frozen=True)
class ToolCallEvent:
    call_id: str
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: Literal["tool-call"] = "tool-call"


@dataclass(frozen=True)
class ToolResultEvent:
    call_id: str
    tool_name: str
    output: str
    title: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    type: Literal["tool-result"] = "tool-result"


@dataclass(frozen=True)
class ToolErrorEvent:
    call_id: str
    tool_name: str
    error: str
    type: Literal["tool-error"] = "tool-error"


@dataclass(frozen=True)
class StartStepEvent:
    type: Literal["start-step"] = "start-step"


@dataclass(frozen=True)
class FinishStepEvent:
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str | None = None
    type: Literal["finish-step"] = "finish-step"


@dataclass(frozen=True)
class FinishEvent:
    finish_reason: str | None = None
    usage: TokenUsage | None = None
    type: Literal["finish"] = "finish"


@dataclass(frozen=True)
class ErrorEvent:
    error: BaseException | str
    type: Literal["error"] = "error"


StreamEvent = Union[
    StartEvent,
    TextStartEvent,
    TextDeltaEvent,
    TextEndEvent,
    ToolCallEvent,
    ToolResultEvent,
    ToolErrorEvent,
    StartStepEvent,
    FinishStepEvent,
    FinishEvent,
    ErrorEvent,
]

# Finish reasons shared by adapters, the processor and the orchestrator.
FINISH_STOP = "stop"
FINISH_TOOL_CALLS = "tool-calls"
FINISH_LENGTH = "length"
FINISH_ABORTED = "aborted"
FINISH_MAX_TURNS = "max-turns"
FINISH_ERROR = "error"
