import shutil
import unittest
from pathlib import Path
from types import SimpleNamespace
from typing import Any
from uuid import uuid4

from open_core.identifiers import now_ms
from open_core.messages import StoredMessage, TokenUsage, new_message, text_part
from open_core.tool import GenericMetadata, ToolContext, ToolResult

PROJECT_ROOT = Path(__file__).resolve().parents[1]


class WorkspaceTestCase(unittest.TestCase):
    """Gives each test an empty working directory under .test-artifacts."""

    def setUp(self) -> None:
        self.workdir = PROJECT_ROOT / ".test-artifacts" / f"{self.__class__.__name__.lower()}-{uuid4().hex}"
        self.workdir.mkdir(parents=True, exist_ok=True)
        self.workdir = self.workdir.resolve()

    def tearDown(self) -> None:
        shutil.rmtree(self.workdir, ignore_errors=True)

    def write(self, relative: str, content: str) -> Path:
        path = self.workdir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path


def tool_context(call_id: str = "call-1") -> ToolContext:
    return ToolContext(session_id="s1", message_id="msg-1", call_id=call_id)


def completed_message(
    session_id: str,
    role: str,
    text: str = "",
    *,
    tokens: TokenUsage | None = None,
    created: int | None = None,
) -> StoredMessage:
    message = new_message(session_id, role)
    if text:
        message.parts.append(text_part(message, text))
    if tokens is not None:
        message.info.tokens = tokens
    if created is not None:
        message.info.time.created = created
    message.info.time.completed = now_ms()
    return message


async def collect(stream) -> list:
    return [event async for event in stream]


async def stream_of(events):
    for event in events:
        yield event


class EchoTool:
    """Minimal read-only tool: returns its ``text`` input."""

    def __init__(self, name: str = "echo", permission: str = "filesystem", fail_with: Exception | None = None):
        self._name = name
        self._permission = permission
        self._fail_with = fail_with
        self.calls: list[dict[str, Any]] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return f"Echo tool {self._name}"

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        }

    @property
    def permission(self) -> str:
        return self._permission

    @property
    def is_mutating(self) -> bool:
        return False

    def predict_touched_paths(self, tool_input: dict[str, Any]) -> list[str]:
        return []

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        self.calls.append(tool_input)
        if self._fail_with is not None:
            raise self._fail_with
        return ToolResult(output=tool_input["text"], title=self._name, metadata=GenericMetadata({"echoed": True}))


class ScriptedProvider:
    """Provider double that replays one list of stream events per turn."""

    def __init__(self, turns: list[list], summary: str = "Earlier work summarized."):
        self._turns = list(turns)
        self.summary = summary
        self.calls: list[SimpleNamespace] = []
        self.summary_requests: list[dict] = []

    def count_tokens(self, messages: list[dict]) -> int:
        return 0

    async def generate_stream(self, *, model, system, messages, tools, params, abort=None):
        self.calls.append(SimpleNamespace(model=model, system=system, messages=messages, tools=tools, params=params))
        for event in self._turns.pop(0):
            if callable(event):
                event = await event()
            yield event

    async def create_message(self, **kwargs) -> str:
        self.summary_requests.append(kwargs)
        return self.summary
