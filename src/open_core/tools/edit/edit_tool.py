import difflib
from typing import Any

from loguru import logger

from open_core.errors import EditMatchError, ToolExecutionError
from open_core.tool import EditMetadata, ToolContext, ToolResult
from open_core.tools.edit.replacers import replace
from open_core.tools.paths import display_path, ensure_not_sensitive, resolve_within, working_root

_MAX_DIFF_CHARS = 8000


class EditTool:
    def __init__(self, working_directory: str | None = None):
        self._working_directory = working_directory

    @property
    def name(self) -> str:
        return "edit"

    @property
    def description(self) -> str:
        return (
            "Replace text in a file. old_string must match the file content uniquely unless "
            "replace_all is set; small whitespace and indentation differences are tolerated. "
            "An empty old_string creates a new file containing new_string."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Absolute or relative path to the file to modify",
                },
                "old_string": {
                    "type": "string",
                    "description": "The text to replace",
                },
                "new_string": {
                    "type": "string",
                    "description": "The replacement text (must differ from old_string)",
                },
                "replace_all": {
                    "type": "boolean",
                    "description": "Replace every occurrence of old_string (default false)",
                },
            },
            "required": ["path", "old_string", "new_string"],
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
        old_string: str = tool_input["old_string"]
        new_string: str = tool_input["new_string"]
        replace_all = bool(tool_input.get("replace_all", False))
        shown = display_path(self._working_directory, path)

        if old_string == "":
            if path.exists() and path.read_text(encoding="utf-8"):
                raise ToolExecutionError(
                    f"{shown} already exists; provide old_string to edit it",
                    tool_name=self.name,
                )
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(new_string, encoding="utf-8")
            diff = _unified_diff(shown, "", new_string)
            return ToolResult(
                output=f"Created {shown}\n\n{diff}".rstrip(),
                title=shown,
                metadata=EditMetadata(path=str(path), strategy="create", replacements=0, diff=diff, created=True),
            )

        if not path.exists():
            raise ToolExecutionError(f"File not found: {shown}", tool_name=self.name)

        original = path.read_text(encoding="utf-8")
        try:
            result = replace(original, old_string, new_string, replace_all)
        except (EditMatchError, ValueError) as ex:
            raise ToolExecutionError(f"Edit failed for {shown}: {ex}", tool_name=self.name) from ex

        if result.strategy != "simple":
            logger.debug(f"Edit of {shown} matched with {result.strategy} strategy")

        path.write_text(result.content, encoding="utf-8")
        diff = _unified_diff(shown, original, result.content)
        noun = "replacement" if result.count == 1 else "replacements"
        return ToolResult(
            output=f"Edited {shown} ({result.count} {noun}, {result.strategy} match)\n\n{diff}".rstrip(),
            title=shown,
            metadata=EditMetadata(
                path=str(path),
                strategy=result.strategy,
                replacements=result.count,
                diff=diff,
            ),
        )


def _unified_diff(name: str, before: str, after: str) -> str:
    diff = "".join(
        difflib.unified_diff(
            before.splitlines(keepends=True),
            after.splitlines(keepends=True),
            fromfile=f"a/{name}",
            tofile=f"b/{name}",
        )
    )
    if len(diff) > _MAX_DIFF_CHARS:
        diff = diff[:_MAX_DIFF_CHARS] + "\n[diff truncated]"
    return diff
