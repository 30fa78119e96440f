from pathlib import Path
from typing import Any

from open_core.errors import ToolExecutionError
from open_core.tool import SearchMetadata, ToolContext, ToolResult
from open_core.tools.paths import display_path, resolve_within

IGNORED_DIRECTORIES = frozenset({
    ".git",
    ".hg",
    ".svn",
    "node_modules",
    "__pycache__",
    ".venv",
    "venv",
    ".mypy_cache",
    ".pytest_cache",
    "dist",
    "build",
})

_DEFAULT_LIMIT = 500


class ListTool:
    def __init__(self, working_directory: str | None = None):
        self._working_directory = working_directory

    @property
    def name(self) -> str:
        return "list"

    @property
    def description(self) -> str:
        return "List files and directories under a path as an indented tree, skipping VCS and dependency folders."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Directory to list (defaults to the working directory)",
                },
                "limit": {
                    "type": "integer",
                    "minimum": 1,
                    "description": f"Maximum number of entries (default {_DEFAULT_LIMIT})",
                },
            },
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
        root = resolve_within(self._working_directory, tool_input.get("path") or ".", tool_name=self.name)
        limit = int(tool_input.get("limit", _DEFAULT_LIMIT))
        if not root.is_dir():
            raise ToolExecutionError(f"Not a directory: {display_path(self._working_directory, root)}", tool_name=self.name)

        lines: list[str] = []
        truncated = _walk(root, 0, lines, limit)

        shown = display_path(self._working_directory, root)
        output = f"{shown}/\n" + "\n".join(lines)
        if truncated:
            output += f"\n\n[listing truncated at {limit} entries]"
        return ToolResult(
            output=output,
            title=shown,
            metadata=SearchMetadata(pattern=shown, matches=len(lines), truncated=truncated),
        )


def _walk(directory: Path, depth: int, lines: list[str], limit: int) -> bool:
    """Append an indented entry per file/directory; returns True when the limit cut the walk short."""
    try:
        entries = sorted(directory.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
    except OSError:
        return False
    for entry in entries:
        is_dir = entry.is_dir()
        if is_dir and entry.name in IGNORED_DIRECTORIES:
            continue
        if len(lines) >= limit:
            return True
        lines.append(f"{'  ' * depth}{entry.name}{'/' if is_dir else ''}")
        if is_dir and _walk(entry, depth + 1, lines, limit):
            return True
    return False
