import re
from typing import Any

from open_core.errors import ToolExecutionError
from open_core.tool import SearchMetadata, ToolContext, ToolResult
from open_core.tools.list_tool import IGNORED_DIRECTORIES
from open_core.tools.paths import display_path, resolve_within

_MAX_MATCHES = 200
_MAX_FILE_BYTES = 1_000_000


class GrepTool:
    def __init__(self, working_directory: str | None = None):
        self._working_directory = working_directory

    @property
    def name(self) -> str:
        return "grep"

    @property
    def description(self) -> str:
        return (
            "Search file contents with a regular expression. Returns matching lines as "
            "path:line: text, optionally restricted to files matching an include glob."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": "Regular expression to search for",
                },
                "path": {
                    "type": "string",
                    "description": "File or directory to search (defaults to the working directory)",
                },
                "include": {
                    "type": "string",
                    "description": "Glob of files to include, e.g. '*.py'",
                },
                "ignore_case": {
                    "type": "boolean",
                    "description": "Case-insensitive search",
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
        pattern_text = tool_input["pattern"]
        flags = re.IGNORECASE if tool_input.get("ignore_case") else 0
        try:
            pattern = re.compile(pattern_text, flags)
        except re.error as ex:
            raise ToolExecutionError(f"Invalid regular expression: {ex}", tool_name=self.name) from ex

        root = resolve_within(self._working_directory, tool_input.get("path") or ".", tool_name=self.name)
        if not root.exists():
            raise ToolExecutionError(f"Search path does not exist: {tool_input.get('path')}", tool_name=self.name)

        include = tool_input.get("include") or "*"
        files = [root] if root.is_file() else sorted(root.rglob(include))

        results: list[str] = []
        total = 0
        for path in files:
            if context.abort.is_set():
                break
            if not path.is_file() or (root.is_dir() and IGNORED_DIRECTORIES.intersection(path.relative_to(root).parts)):
                continue
            try:
                if path.stat().st_size > _MAX_FILE_BYTES:
                    continue
                raw = path.read_bytes()
            except OSError:
                continue
            if b"\x00" in raw[:4096]:
                continue
            shown = display_path(self._working_directory, path)
            for number, line in enumerate(raw.decode("utf-8", errors="replace").splitlines(), start=1):
                if pattern.search(line):
                    total += 1
                    if len(results) < _MAX_MATCHES:
                        results.append(f"{shown}:{number}: {line.strip()[:300]}")

        truncated = total > len(results)
        output = "\n".join(results) if results else "No matches found"
        if truncated:
            output += f"\n\n[showing first {len(results)} of {total} matches]"
        return ToolResult(
            output=output,
            title=pattern_text,
            metadata=SearchMetadata(pattern=pattern_text, matches=total, truncated=truncated),
        )
