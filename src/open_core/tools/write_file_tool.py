from typing import Any

from open_core.tool import ToolContext, ToolResult, WriteMetadata
from open_core.tools.paths import display_path, ensure_not_sensitive, resolve_within, working_root


class WriteFileTool:
    def __init__(self, working_directory: str | None = None):
        self._working_directory = working_directory

    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return "Write content to a file, creating it (and parent directories) if it doesn't exist."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Absolute or relative path to the file to write",
                },
                "content": {
                    "type": "string",
                    "description": "The content to write to the file",
                },
            },
            "required": ["path", "content"],
        }

    @property
    def permission(self) -> str:
        return "edit"

    @property
    def is_mutating(self) -> bool:
        return True

    def predict_touched_paths(self, tool_input: dict[str, Any]) -> list[str]:
        path = tool_input.get("path")
        return [path] if isinstance(path, str) and path.strip() else []

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        path = resolve_within(self._working_directory, tool_input["path"], tool_name=self.name)
        ensure_not_sensitive(working_root(self._working_directory), path, tool_name=self.name)
        content = tool_input["content"]

        created = not path.exists()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")

        shown = display_path(self._working_directory, path)
        verb = "Created" if created else "Overwrote"
        return ToolResult(
            output=f"{verb} {shown} ({len(content.splitlines())} lines)",
            title=shown,
            metadata=WriteMetadata(path=str(path), created=created, bytes_written=len(content.encode("utf-8"))),
        )
