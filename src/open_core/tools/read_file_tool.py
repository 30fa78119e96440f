from typing import Any

from open_core.errors import ToolExecutionError
from open_core.tool import ReadMetadata, ToolContext, ToolResult
from open_core.tools.paths import display_path, resolve_within

_DEFAULT_LIMIT = 2000
_MAX_LINE_CHARS = 2000
_BINARY_SNIFF_BYTES = 4096


class ReadFileTool:
    def __init__(self, working_directory: str | None = None):
        self._working_directory = working_directory

    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return (
            "Read a text file and return its contents with line numbers. "
            "Use offset and limit to page through large files."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Absolute or relative path to the file to read",
                },
                "offset": {
                    "type": "integer",
                    "minimum": 0,
                    "description": "Zero-based line to start reading from",
                },
                "limit": {
                    "type": "integer",
                    "minimum": 1,
                    "description": f"Maximum number of lines to return (default {_DEFAULT_LIMIT})",
                },
            },
            "required": ["path"],
        }

    @property
    def permission(self) -> str:
        return "filesystem"

    @property
    def is_mutating(self) -> bool:
        return False

    def predict_touched_paths(self, tool_input: dict[str, Any]) -> list[str]:
        return []

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        path = resolve_within(self._working_directory, tool_input["path"], tool_name=self.name)
        offset = int(tool_input.get("offset", 0))
        limit = int(tool_input.get("limit", _DEFAULT_LIMIT))
        shown = display_path(self._working_directory, path)

        if not path.exists():
            raise ToolExecutionError(f"File not found: {shown}", tool_name=self.name)
        if path.is_dir():
            raise ToolExecutionError(f"Path is a directory: {shown}", tool_name=self.name)

        raw = path.read_bytes()
        if b"\x00" in raw[:_BINARY_SNIFF_BYTES]:
            raise ToolExecutionError(f"Cannot read binary file: {shown}", tool_name=self.name)

        lines = raw.decode("utf-8", errors="replace").splitlines()
        selected = lines[offset : offset + limit]
        numbered = []
        for index, line in enumerate(selected, start=offset + 1):
            if len(line) > _MAX_LINE_CHARS:
                line = line[:_MAX_LINE_CHARS] + "..."
            numbered.append(f"{index:6d}\t{line}")

        truncated = offset + len(selected) < len(lines)
        output = "\n".join(numbered)
        if truncated:
            output += f"\n\n(File has more lines. Use offset={offset + len(selected)} to continue.)"

        return ToolResult(
            output=output,
            title=shown,
            metadata=ReadMetadata(
                path=str(path),
                total_lines=len(lines),
                lines_read=len(selected),
                offset=offset,
                truncated=truncated,
            ),
        )
