from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Protocol, Union, runtime_checkable

PermissionCategory = Literal["edit", "shell", "network", "filesystem"]


@dataclass
class ToolContext:
    session_id: str
    message_id: str
    call_id: str
    abort: asyncio.Event = field(default_factory=asyncio.Event)
    working_directory: str | None = None


# -- result metadata, one variant per tool category ---------------------------


@dataclass(frozen=True)
class ReadMetadata:
    path: str
    total_lines: int
    lines_read: int
    offset: int = 0
    truncated: bool = False
    kind: Literal["read"] = "read"


@dataclass(frozen=True)
class WriteMetadata:
    path: str
    created: bool
    bytes_written: int
    kind: Literal["write"] = "write"


@dataclass(frozen=True)
class EditMetadata:
    path: str
    strategy: str
    replacements: int
    diff: str = ""
    created: bool = False
    kind: Literal["edit"] = "edit"


@dataclass(frozen=True)
class ShellMetadata:
    command: str
    exit_code: int | None
    duration_ms: int
    timed_out: bool = False
    kind: Literal["shell"] = "shell"


@dataclass(frozen=True)
class SearchMetadata:
    pattern: str
    matches: int
    truncated: bool = False
    kind: Literal["search"] = "search"


@dataclass(frozen=True)
class FetchMetadata:
    url: str
    status_code: int
    content_type: str
    truncated: bool = False
    kind: Literal["fetch"] = "fetch"


@dataclass(frozen=True)
class GenericMetadata:
    data: dict[str, Any] = field(default_factory=dict)
    kind: Literal["generic"] = "generic"


ToolMetadata = Union[
    ReadMetadata,
    WriteMetadata,
    EditMetadata,
    ShellMetadata,
    SearchMetadata,
    FetchMetadata,
    GenericMetadata,
]

TOOL_METADATA_TYPES: tuple[type, ...] = (
    ReadMetadata,
    WriteMetadata,
    EditMetadata,
    ShellMetadata,
    SearchMetadata,
    FetchMetadata,
    GenericMetadata,
)


@dataclass(frozen=True)
class ToolResult:
    output: str
    metadata: ToolMetadata = field(default_factory=GenericMetadata)
    title: str = ""

    def metadata_dict(self) -> dict[str, Any]:
        return asdict(self.metadata)


@dataclass(frozen=True)
class ProviderTool:
    """Tool description handed to a provider after filtering and schema transforms."""

    name: str
    description: str
    input_schema: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "input_schema": self.input_schema}


@runtime_checkable
class Tool(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def input_schema(self) -> dict[str, Any]: ...

    @property
    def permission(self) -> PermissionCategory: ...

    @property
    def is_mutating(self) -> bool: ...

    def predict_touched_paths(self, tool_input: dict[str, Any]) -> list[str]: ...

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult | str: ...
