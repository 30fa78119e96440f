from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Union

from open_core.errors import InvalidToolTransitionError
from open_core.identifiers import generate_id, now_ms

Role = Literal["user", "assistant"]
Mode = Literal["chat", "plan"]


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache_read: int = 0
    cache_write: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output + self.reasoning + self.cache_read + self.cache_write

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input=self.input + other.input,
            output=self.output + other.output,
            reasoning=self.reasoning + other.reasoning,
            cache_read=self.cache_read + other.cache_read,
            cache_write=self.cache_write + other.cache_write,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input": self.input,
            "output": self.output,
            "reasoning": self.reasoning,
            "cache_read": self.cache_read,
            "cache_write": self.cache_write,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TokenUsage:
        data = data or {}
        return cls(
            input=int(data.get("input", 0)),
            output=int(data.get("output", 0)),
            reasoning=int(data.get("reasoning", 0)),
            cache_read=int(data.get("cache_read", 0)),
            cache_write=int(data.get("cache_write", 0)),
        )


@dataclass
class MessageTime:
    created: int
    completed: int | None = None


@dataclass
class MessageError:
    name: str
    message: str


@dataclass
class MessageInfo:
    id: str
    session_id: str
    role: Role
    time: MessageTime
    tokens: TokenUsage = field(default_factory=TokenUsage)
    cost: float = 0.0
    provider_id: str | None = None
    model_id: str | None = None
    mode: Mode = "chat"
    system: list[str] = field(default_factory=list)
    summary: bool = False
    finish_reason: str | None = None
    error: MessageError | None = None


# -- tool state ---------------------------------------------------------------


@dataclass
class ToolStateRunning:
    input: dict[str, Any]
    start: int
    status: Literal["running"] = "running"


@dataclass
class ToolStateCompleted:
    input: dict[str, Any]
    output: str
    title: str
    metadata: dict[str, Any]
    start: int
    end: int
    status: Literal["completed"] = "completed"


@dataclass
class ToolStateError:
    input: dict[str, Any]
    error: str
    start: int
    end: int
    incomplete: bool = False
    status: Literal["error"] = "error"


ToolState = Union[ToolStateRunning, ToolStateCompleted, ToolStateError]


# -- parts --------------------------------------------------------------------


@dataclass
class TextPart:
    id: str
    session_id: str
    message_id: str
    text: str = ""
    synthetic: bool = False
    type: Literal["text"] = "text"


@dataclass
class FilePart:
    id: str
    session_id: str
    message_id: str
    url: str
    mime: str
    filename: str | None = None
    type: Literal["file"] = "file"


@dataclass
class ToolPart:
    id: str
    session_id: str
    message_id: str
    tool: str
    call_id: str
    state: ToolState
    type: Literal["tool"] = "tool"

    @property
    def is_running(self) -> bool:
        return self.state.status == "running"

    def complete(self, output: str, *, title: str = "", metadata: dict[str, Any] | None = None) -> None:
        if not isinstance(self.state, ToolStateRunning):
            raise InvalidToolTransitionError(f"Tool part {self.call_id} is already {self.state.status}")
        self.state = ToolStateCompleted(
            input=self.state.input,
            output=output,
            title=title,
            metadata=dict(metadata or {}),
            start=self.state.start,
            end=now_ms(),
        )

    def fail(self, error: str, *, incomplete: bool = False) -> None:
        if not isinstance(self.state, ToolStateRunning):
            raise InvalidToolTransitionError(f"Tool part {self.call_id} is already {self.state.status}")
        self.state = ToolStateError(
            input=self.state.input,
            error=error,
            start=self.state.start,
            end=now_ms(),
            incomplete=incomplete,
        )


@dataclass
class StepStartPart:
    id: str
    session_id: str
    message_id: str
    type: Literal["step-start"] = "step-start"


@dataclass
class StepFinishPart:
    id: str
    session_id: str
    message_id: str
    tokens: TokenUsage = field(default_factory=TokenUsage)
    cost: float = 0.0
    type: Literal["step-finish"] = "step-finish"


MessagePart = Union[TextPart, FilePart, ToolPart, StepStartPart, StepFinishPart]


@dataclass
class StoredMessage:
    info: MessageInfo
    parts: list[MessagePart] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.info.id

    @property
    def is_completed(self) -> bool:
        return self.info.time.completed is not None

    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    def tool_parts(self) -> list[ToolPart]:
        return [p for p in self.parts if isinstance(p, ToolPart)]


def new_message(
    session_id: str,
    role: Role,
    *,
    message_id: str | None = None,
    provider_id: str | None = None,
    model_id: str | None = None,
    mode: Mode = "chat",
    system: list[str] | None = None,
) -> StoredMessage:
    info = MessageInfo(
        id=message_id or generate_id("msg"),
        session_id=session_id,
        role=role,
        time=MessageTime(created=now_ms()),
        provider_id=provider_id,
        model_id=model_id,
        mode=mode,
        system=list(system or []),
    )
    return StoredMessage(info=info)


def text_part(message: StoredMessage, text: str, *, synthetic: bool = False) -> TextPart:
    return TextPart(
        id=generate_id("prt"),
        session_id=message.info.session_id,
        message_id=message.info.id,
        text=text,
        synthetic=synthetic,
    )


# -- caller input / output ----------------------------------------------------


@dataclass(frozen=True)
class TextInput:
    text: str
    synthetic: bool = False
    type: Literal["text"] = "text"


@dataclass(frozen=True)
class FileInput:
    url: str
    mime: str
    filename: str | None = None
    type: Literal["file"] = "file"


InputPart = Union[TextInput, FileInput]


@dataclass(frozen=True)
class ChatInput:
    session_id: str
    parts: tuple[InputPart, ...]
    provider_id: str
    model_id: str
    message_id: str | None = None
    system: str | None = None
    mode: Mode = "chat"
    tools: dict[str, bool] | None = None


@dataclass
class ChatResponse:
    info: MessageInfo
    parts: list[MessagePart]
    finish_reason: str | None = None
    turns: int = 1

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))


@dataclass
class RevertInfo:
    session_id: str
    message_id: str
    part_id: str | None
    removed_messages: int
    restored_files: list[str] = field(default_factory=list)


@dataclass
class SessionInfo:
    id: str
    title: str
    created: int
    updated: int
    tokens: TokenUsage
    cost: float
    compressed: bool
    messages: list[StoredMessage]
    revert: RevertInfo | None = None


# -- serialization (used by session stores) ----------------------------------


def message_to_dict(message: StoredMessage) -> dict[str, Any]:
    info = message.info
    return {
        "info": {
            "id": info.id,
            "session_id": info.session_id,
            "role": info.role,
            "time": {"created": info.time.created, "completed": info.time.completed},
            "tokens": info.tokens.to_dict(),
            "cost": info.cost,
            "provider_id": info.provider_id,
            "model_id": info.model_id,
            "mode": info.mode,
            "system": list(info.system),
            "summary": info.summary,
            "finish_reason": info.finish_reason,
            "error": {"name": info.error.name, "message": info.error.message} if info.error else None,
        },
        "parts": [_part_to_dict(p) for p in message.parts],
    }


def message_from_dict(data: dict[str, Any]) -> StoredMessage:
    raw = data["info"]
    error = raw.get("error")
    info = MessageInfo(
        id=raw["id"],
        session_id=raw["session_id"],
        role=raw["role"],
        time=MessageTime(created=raw["time"]["created"], completed=raw["time"].get("completed")),
        tokens=TokenUsage.from_dict(raw.get("tokens")),
        cost=float(raw.get("cost", 0.0)),
        provider_id=raw.get("provider_id"),
        model_id=raw.get("model_id"),
        mode=raw.get("mode", "chat"),
        system=list(raw.get("system") or []),
        summary=bool(raw.get("summary", False)),
        finish_reason=raw.get("finish_reason"),
        error=MessageError(error["name"], error["message"]) if error else None,
    )
    return StoredMessage(info=info, parts=[_part_from_dict(p) for p in data.get("parts", [])])


def _part_to_dict(part: MessagePart) -> dict[str, Any]:
    base = {"id": part.id, "session_id": part.session_id, "message_id": part.message_id, "type": part.type}
    if isinstance(part, TextPart):
        base.update(text=part.text, synthetic=part.synthetic)
    elif isinstance(part, FilePart):
        base.update(url=part.url, mime=part.mime, filename=part.filename)
    elif isinstance(part, ToolPart):
        state = part.state
        state_dict: dict[str, Any] = {"status": state.status, "input": state.input, "start": state.start}
        if isinstance(state, ToolStateCompleted):
            state_dict.update(output=state.output, title=state.title, metadata=state.metadata, end=state.end)
        elif isinstance(state, ToolStateError):
            state_dict.update(error=state.error, end=state.end, incomplete=state.incomplete)
        base.update(tool=part.tool, call_id=part.call_id, state=state_dict)
    elif isinstance(part, StepFinishPart):
        base.update(tokens=part.tokens.to_dict(), cost=part.cost)
    return base


def _part_from_dict(data: dict[str, Any]) -> MessagePart:
    ids = {"id": data["id"], "session_id": data["session_id"], "message_id": data["message_id"]}
    part_type = data["type"]
    if part_type == "text":
        return TextPart(**ids, text=data.get("text", ""), synthetic=bool(data.get("synthetic", False)))
    if part_type == "file":
        return FilePart(**ids, url=data["url"], mime=data["mime"], filename=data.get("filename"))
    if part_type == "tool":
        raw = data["state"]
        state: ToolState
        if raw["status"] == "completed":
            state = ToolStateCompleted(
                input=raw["input"],
                output=raw["output"],
                title=raw.get("title", ""),
                metadata=raw.get("metadata") or {},
                start=raw["start"],
                end=raw["end"],
            )
        elif raw["status"] == "error":
            state = ToolStateError(
                input=raw["input"],
                error=raw["error"],
                start=raw["start"],
                end=raw["end"],
                incomplete=bool(raw.get("incomplete", False)),
            )
        else:
            state = ToolStateRunning(input=raw["input"], start=raw["start"])
        return ToolPart(**ids, tool=data["tool"], call_id=data["call_id"], state=state)
    if part_type == "step-start":
        return StepStartPart(**ids)
    if part_type == "step-finish":
        return StepFinishPart(**ids, tokens=TokenUsage.from_dict(data.get("tokens")), cost=float(data.get("cost", 0.0)))
    raise ValueError(f"Unknown message part type: {part_type!r}")
