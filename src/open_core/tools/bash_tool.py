import asyncio
import platform
import re
import shlex
import subprocess
import time
from pathlib import Path
from typing import Any

from open_core.errors import ToolSecurityError
from open_core.tool import ShellMetadata, ToolContext, ToolResult
from open_core.tools.paths import is_within, working_root

_IS_WINDOWS = platform.system() == "Windows"

_BLOCKED_PATTERNS = (
    (re.compile(r"\brm\s+-[a-zA-Z]*[rf][a-zA-Z]*\s+/(\s|$)"), "rm -rf /"),
    (re.compile(r"(^|[\s;&|(])sudo\b"), "sudo"),
    (re.compile(r"(^|[\s;&|(])su(\s|$)"), "su"),
    (re.compile(r"\bchmod\s+777\b"), "chmod 777"),
    (re.compile(r"(^|[\s;&|(])(passwd|useradd|userdel|systemctl|killall|mkfs(\.\w+)?)\b"), "system administration"),
    (re.compile(r":\(\)\s*\{"), "fork bomb"),
    (re.compile(r"\d?>\s*/dev/(?!null\b)"), "direct device access"),
)

_PATH_COMMANDS = {"cd", "rm", "cp", "mv", "mkdir", "touch", "chmod", "chown", "rmdir"}


class BashTool:
    def __init__(self, working_directory: str | None = None, timeout_seconds: float = 30.0):
        self._cwd = working_directory
        self._timeout = timeout_seconds

    @property
    def name(self) -> str:
        return "bash"

    @property
    def description(self) -> str:
        return (
            "Execute a shell command in the working directory and return its output (stdout + stderr). "
            f"Commands time out after {self._timeout:.0f}s."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The bash command to execute",
                },
                "description": {
                    "type": "string",
                    "description": "Short description of what the command does",
                },
            },
            "required": ["command"],
        }

    @property
    def permission(self) -> str:
        return "shell"

    @property
    def is_mutating(self) -> bool:
        return True

    def predict_touched_paths(self, tool_input: dict[str, Any]) -> list[str]:
        return []

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        command = tool_input["command"].strip()
        self._check_command(command)
        title = tool_input.get("description") or (command if len(command) <= 50 else command[:47] + "...")

        started = time.monotonic()
        if _IS_WINDOWS:
            proc = await asyncio.create_subprocess_shell(
                f"cmd.exe /c {command}",
                stdin=subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                creationflags=subprocess.CREATE_NEW_PROCESS_GROUP,
            )
        else:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdin=subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
            )

        communicate = asyncio.ensure_future(proc.communicate())
        aborted = asyncio.ensure_future(context.abort.wait())
        done, _ = await asyncio.wait({communicate, aborted}, timeout=self._timeout, return_when=asyncio.FIRST_COMPLETED)
        aborted.cancel()

        if communicate not in done:
            await _kill(proc, communicate)
            reason = "aborted" if context.abort.is_set() else f"timed out after {self._timeout:.0f}s"
            return ToolResult(
                output=f"[{reason}]",
                title=title,
                metadata=ShellMetadata(
                    command=command,
                    exit_code=None,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    timed_out=not context.abort.is_set(),
                ),
            )

        stdout, stderr = communicate.result()
        sections = []
        if stdout:
            sections.append(f"<stdout>\n{stdout.decode(errors='replace').rstrip()}\n</stdout>")
        if stderr:
            sections.append(f"<stderr>\n{stderr.decode(errors='replace').rstrip()}\n</stderr>")
        output = "\n".join(sections)
        if proc.returncode != 0:
            output = f"{output}\n[exit code {proc.returncode}]".lstrip()

        return ToolResult(
            output=output,
            title=title,
            metadata=ShellMetadata(
                command=command,
                exit_code=proc.returncode,
                duration_ms=int((time.monotonic() - started) * 1000),
            ),
        )

    def _check_command(self, command: str) -> None:
        for pattern, label in _BLOCKED_PATTERNS:
            if pattern.search(command):
                raise ToolSecurityError(f"Command contains blocked operation: {label}", tool_name=self.name)

        try:
            tokens = shlex.split(command)
        except ValueError:
            tokens = command.split()

        root = working_root(self._cwd)
        for index, token in enumerate(tokens):
            if token not in _PATH_COMMANDS:
                continue
            for arg in tokens[index + 1 : index + 3]:
                if arg.startswith("-") or arg in {"&&", "||", ";", "|"}:
                    continue
                if token == "chmod" and arg.isdigit():
                    continue
                candidate = Path(arg).expanduser()
                resolved = (candidate if candidate.is_absolute() else root / candidate).resolve()
                if not is_within(root, resolved):
                    raise ToolSecurityError(
                        f"Command references path outside working directory: {arg}",
                        tool_name=self.name,
                    )


async def _kill(proc: asyncio.subprocess.Process, communicate: asyncio.Future) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        pass
    try:
        await asyncio.wait_for(communicate, timeout=5)
    except (asyncio.TimeoutError, ProcessLookupError):
        communicate.cancel()
