from typing import Any

from open_core.errors import ToolExecutionError
from open_core.tool import SearchMetadata, ToolContext, ToolResult
from open_core.tools.list_tool import IGNORED_DIRECTORIES
from open_core.tools.paths import display_path, resolve_within

_DEFAULT_LIMIT = 100


class GlobTool:
    def __init__(self, working_directory: str | None = None):
        self._working_directory = working_directory

    @property
    def name(self) -> str:
        return "glob"

    @property
    def description(self) -> str:
        return "Find files by glob pattern (e.g. '**/*.py'), most recently modified first."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": "Glob pattern relative to the search path",
                },
                "path": {
                    "type": "string",
                    "description": "Directory to search (defaults to the working directory)",
                },
            },
            "required": ["pattern"],
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
        pattern = tool_input["pattern"]
        root = resolve_within(self._working_directory, tool_input.get("path") or ".", tool_name=self.name)
        if not root.is_dir():
            raise ToolExecutionError(f"Not a directory: {display_path(self._working_directory, root)}", tool_name=self.name)

        matches = [
            p for p in root.glob(pattern)
            if p.is_file() and not IGNORED_DIRECTORIES.intersection(p.relative_to(root).parts)
        ]
        matches.sort(key=lambda p: p.stat().st_mtime, reverse=True)

        truncated = len(matches) > _DEFAULT_LIMIT
        shown = [display_path(self._working_directory, p) for p in matches[:_DEFAULT_LIMIT]]
        output = "\n".join(shown) if shown else "No files found"
        if truncated:
            output += f"\n\n[showing first {_DEFAULT_LIMIT} of {len(matches)} files]"
        return ToolResult(
            output=output,
            title=pattern,
            metadata=SearchMetadata(pattern=pattern, matches=len(matches), truncated=truncated),
        )
