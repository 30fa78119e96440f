from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable

from jsonschema import Draft7Validator
from loguru import logger

from open_core.errors import ToolError, ToolExecutionError, ToolValidationError
from open_core.tool import TOOL_METADATA_TYPES, GenericMetadata, Tool, ToolContext, ToolResult
from open_core.tools.bash_tool import BashTool
from open_core.tools.edit.edit_tool import EditTool
from open_core.tools.glob_tool import GlobTool
from open_core.tools.grep_tool import GrepTool
from open_core.tools.list_tool import ListTool
from open_core.tools.read_file_tool import ReadFileTool
from open_core.tools.web.web_fetch_tool import WebFetchTool
from open_core.tools.write_file_tool import WriteFileTool


class ToolRegistry:
    """Catalog of executable tools with input and result validation at the boundary."""

    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: dict[str, Tool] = {}
        self._validators: dict[str, Draft7Validator] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.debug(f"Overwriting existing tool registration for {tool.name}")
        Draft7Validator.check_schema(tool.input_schema)
        self._tools[tool.name] = tool
        self._validators[tool.name] = Draft7Validator(tool.input_schema)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def all(self) -> list[Tool]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return sorted(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def validate_input(self, name: str, tool_input: Any) -> None:
        validator = self._validators[name]
        errors = sorted(validator.iter_errors(tool_input), key=lambda exc: list(exc.path))
        if errors:
            messages = [_format_error(e) for e in errors]
            raise ToolValidationError(
                f"Invalid input for {name}: {messages[0]}",
                tool_name=name,
                errors=messages,
            )

    async def execute(self, name: str, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolExecutionError(f'Unknown tool "{name}"', tool_name=name)

        self.validate_input(name, tool_input)
        try:
            result = await tool.execute(tool_input, context)
        except ToolError:
            raise
        except Exception as ex:
            raise ToolExecutionError(f'Error executing tool "{name}": {ex}', tool_name=name) from ex
        return _coerce_result(name, result)


def _format_error(error) -> str:
    location = ".".join(str(p) for p in error.path)
    return f"{location}: {error.message}" if location else error.message


def _coerce_result(name: str, result: object) -> ToolResult:
    if isinstance(result, str):
        return ToolResult(output=result, metadata=GenericMetadata())
    if not isinstance(result, ToolResult):
        raise ToolExecutionError(
            f"Tool {name} returned {type(result).__name__}, expected ToolResult",
            tool_name=name,
        )
    if not isinstance(result.metadata, TOOL_METADATA_TYPES):
        raise ToolExecutionError(
            f"Tool {name} returned unsupported metadata {type(result.metadata).__name__}",
            tool_name=name,
        )
    return result


# -- built-in catalog ---------------------------------------------------------


@dataclass(frozen=True)
class ToolGroup:
    enabled: Callable[[dict], bool]
    build: Callable[[dict], list[Tool]]


def _always(_: dict) -> bool:
    return True


def _filesystem_tools(ctx: dict) -> list[Tool]:
    working_directory = ctx["working_directory"]
    return [
        ReadFileTool(working_directory),
        ListTool(working_directory),
        GlobTool(working_directory),
        GrepTool(working_directory),
    ]


def _edit_tools(ctx: dict) -> list[Tool]:
    working_directory = ctx["working_directory"]
    return [
        EditTool(working_directory),
        WriteFileTool(working_directory),
    ]


def _shell_tools(ctx: dict) -> list[Tool]:
    return [BashTool(ctx["working_directory"], timeout_seconds=ctx["bash_timeout_seconds"])]


def _network_enabled(ctx: dict) -> bool:
    return ctx.get("include_network", True)


def _network_tools(ctx: dict) -> list[Tool]:
    return [WebFetchTool()]


_GROUPS = [
    ToolGroup(enabled=_always, build=_filesystem_tools),
    ToolGroup(enabled=_always, build=_edit_tools),
    ToolGroup(enabled=_always, build=_shell_tools),
    ToolGroup(enabled=_network_enabled, build=_network_tools),
]


def get_all(
    working_directory: str | None = None,
    *,
    bash_timeout_seconds: float = 30.0,
    include_network: bool = True,
) -> list[Tool]:
    ctx = {
        "working_directory": working_directory,
        "bash_timeout_seconds": bash_timeout_seconds,
        "include_network": include_network,
    }

    tools: list[Tool] = []
    for group in _GROUPS:
        if group.enabled(ctx):
            tools.extend(group.build(ctx))
    return tools
