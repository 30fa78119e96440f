from __future__ import annotations

import asyncio
import os
import platform
from dataclasses import dataclass
from datetime import date
from pathlib import Path

from loguru import logger

from open_core.config import WorkspaceConfig
from open_core.tools.list_tool import IGNORED_DIRECTORIES

_ANTHROPIC_HEADER = "You are an AI coding assistant built on Anthropic's Claude, working inside the user's project."

_BASE_PROMPT = """\
You are a helpful AI coding assistant with access to tools. You can read, search \
and edit files, and run shell commands to help the user with software engineering tasks.

When the user asks you to do something, use the available tools to accomplish it. \
Think step by step about which tools you need, then use them.

If a tool call fails, read the error message carefully and try a different approach.

Be concise in your responses. When you've completed a task, briefly summarize what you did."""

_FAMILY_PROMPTS = {
    "claude": _BASE_PROMPT
    + """

Prefer the edit tool for changes to existing files and keep old_string as small as \
possible while still unique. Read a file before editing it.""",
    "gpt": _BASE_PROMPT
    + """

Call tools rather than describing what you would do. Keep working until the task is \
fully resolved before ending your turn.""",
    "gemini": _BASE_PROMPT
    + """

Use absolute paths or paths relative to the working directory in every tool call.""",
    "qwen": _BASE_PROMPT
    + """

Issue one tool call at a time and wait for its result before continuing.""",
}

_PLAN_ADDITION = """\
You are in planning mode. Do not modify files or run commands with side effects. \
Investigate with read-only tools, then answer with a step-by-step plan the user can approve."""

_TREE_SKIP = IGNORED_DIRECTORIES | {".idea", ".vscode", ".tox", ".pytest_cache"}


@dataclass(frozen=True)
class PromptContext:
    mode: str = "chat"
    custom_system: str | None = None
    working_directory: str | None = None
    project_root: str | None = None


def _prompt_family(model_id: str) -> str:
    model = model_id.lower()
    if "claude" in model:
        return "claude"
    if "gpt" in model or "o1" in model or "o3" in model:
        return "gpt"
    if "gemini" in model:
        return "gemini"
    if "qwen" in model:
        return "qwen"
    return "default"


class SystemPromptAssembler:
    """Builds the ordered system prompt sections for one provider call."""

    def __init__(self, workspace: WorkspaceConfig | None = None):
        self._workspace = workspace or WorkspaceConfig()

    async def assemble(self, provider_id: str, model_id: str, context: PromptContext | None = None) -> list[str]:
        context = context or PromptContext()
        sections: list[str] = []

        if provider_id.lower() == "anthropic":
            sections.append(_ANTHROPIC_HEADER)

        if context.custom_system:
            sections.append(context.custom_system)
        else:
            sections.append(_FAMILY_PROMPTS.get(_prompt_family(model_id), _BASE_PROMPT))
            if context.mode == "plan":
                sections.append(_PLAN_ADDITION)

        working_directory = Path(context.working_directory).resolve() if context.working_directory else (
            self._workspace.resolved_working_directory()
        )
        sections.append(await asyncio.to_thread(self.environment_block, working_directory))

        project_root = Path(context.project_root).resolve() if context.project_root else (
            self._workspace.resolved_project_root()
        )
        sections.extend(await asyncio.to_thread(self.custom_instructions, project_root))

        return self.optimize_for_caching(sections)

    @staticmethod
    def optimize_for_caching(sections: list[str]) -> list[str]:
        sections = [s for s in sections if s and s.strip()]
        if len(sections) <= 2:
            return sections
        return [sections[0], "\n\n".join(sections[1:])]

    def environment_block(self, working_directory: Path) -> str:
        branch = _git_branch(working_directory)
        lines = [
            "<env>",
            f"Working directory: {working_directory}",
            f"Is directory a git repo: {'yes' if branch is not None else 'no'}",
        ]
        if branch:
            lines.append(f"Git branch: {branch}")
        lines.extend(
            [
                f"Platform: {platform.system().lower() or os.name}",
                f"Today's date: {date.today().isoformat()}",
                "</env>",
            ]
        )
        if self._workspace.include_project_tree:
            tree = project_tree(working_directory, self._workspace.max_tree_entries)
            if tree:
                lines.extend(["<project>", tree, "</project>"])
        return "\n".join(lines)

    def custom_instructions(self, project_root: Path) -> list[str]:
        found: list[Path] = []
        for filename in self._workspace.custom_instruction_files:
            path = _find_upwards(project_root, filename)
            if path is not None and path not in found:
                found.append(path)
        for raw in self._workspace.global_instruction_paths:
            path = Path(raw).expanduser()
            if path.is_file() and path not in found:
                found.append(path)

        instructions: list[str] = []
        for path in found:
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as ex:
                logger.warning(f"Could not read instruction file {path}: {ex}")
                continue
            if text.strip():
                instructions.append(f"Instructions from: {path}\n{text.strip()}")
        return instructions


def _find_upwards(start: Path, filename: str) -> Path | None:
    for directory in (start, *start.parents):
        candidate = directory / filename
        if candidate.is_file():
            return candidate
    return None


def _git_branch(directory: Path) -> str | None:
    """Branch name when ``directory`` is inside a git work tree, "" when detached, None otherwise."""
    for candidate in (directory, *directory.parents):
        git_dir = candidate / ".git"
        if not git_dir.exists():
            continue
        head = git_dir / "HEAD"
        try:
            content = head.read_text(encoding="utf-8").strip()
        except OSError:
            return ""
        prefix = "ref: refs/heads/"
        return content[len(prefix):] if content.startswith(prefix) else ""
    return None


def project_tree(root: Path, max_entries: int) -> str:
    lines: list[str] = []

    def walk(directory: Path, depth: int) -> bool:
        try:
            entries = sorted(directory.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
        except OSError:
            return True
        for entry in entries:
            if entry.name in _TREE_SKIP:
                continue
            if len(lines) >= max_entries:
                return False
            indent = "  " * depth
            lines.append(f"{indent}{entry.name}/" if entry.is_dir() else f"{indent}{entry.name}")
            if entry.is_dir() and not entry.is_symlink() and not walk(entry, depth + 1):
                return False
        return True

    complete = walk(root, 0)
    if not complete:
        lines.append(f"[truncated at {max_entries} entries]")
    return "\n".join(lines)
