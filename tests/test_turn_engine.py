import asyncio
import unittest

from open_core.errors import ToolExecutionError, ToolPermissionError, ToolSecurityError, ToolValidationError
from open_core.snapshots import FileSnapshotManager
from open_core.stream_events import (
    FinishEvent,
    FinishStepEvent,
    StartEvent,
    ToolCallEvent,
    ToolErrorEvent,
    ToolResultEvent,
)
from open_core.tool_registry import ToolRegistry
from open_core.tools.edit.edit_tool import EditTool
from open_core.turn_engine import TurnEngine
from tests.support import EchoTool, WorkspaceTestCase, collect, stream_of


def _engine(tools, *, offered=None, snapshots=None, working_directory=None, max_chars=40_000):
    registry = ToolRegistry(tools)
    offered = {tool.name: tool for tool in (offered if offered is not None else tools)}
    return TurnEngine(
        registry=registry,
        tools=offered,
        session_id="s1",
        message_id="m1",
        abort=asyncio.Event(),
        working_directory=working_directory,
        snapshots=snapshots,
        max_tool_result_chars=max_chars,
    )


def _call(call_id: str, name: str = "echo", **tool_input) -> ToolCallEvent:
    return ToolCallEvent(call_id=call_id, tool_name=name, input=tool_input)


class TurnEngineTests(unittest.TestCase):
    def test_results_are_emitted_before_the_step_boundary(self) -> None:
        engine = _engine([EchoTool()])
        events = asyncio.run(
            collect(
                engine.run(
                    stream_of(
                        [StartEvent(), _call("c1", text="one"), _call("c2", text="two"), FinishStepEvent(), FinishEvent()]
                    )
                )
            )
        )

        types = [event.type for event in events]
        self.assertEqual(
            ["start", "tool-call", "tool-call", "tool-result", "tool-result", "finish-step", "finish"],
            types,
        )
        self.assertEqual(["one", "two"], [e.output for e in events if isinstance(e, ToolResultEvent)])
        self.assertEqual({"data": {"echoed": True}, "kind": "generic"}, events[3].metadata)
        self.assertEqual(2, engine.executed_calls)

    def test_provider_resolved_calls_are_not_executed(self) -> None:
        tool = EchoTool()
        engine = _engine([tool])
        events = [
            _call("c1", text="x"),
            ToolResultEvent(call_id="c1", tool_name="echo", output="from provider"),
            FinishEvent(),
        ]
        result = asyncio.run(collect(engine.run(stream_of(events))))
        self.assertEqual(events, result)
        self.assertEqual([], tool.calls)
        self.assertEqual(0, engine.executed_calls)

    def test_long_output_is_truncated(self) -> None:
        engine = _engine([EchoTool()], max_chars=5)
        events = asyncio.run(collect(engine.run(stream_of([_call("c1", text="abcdefghij"), FinishEvent()]))))
        result = events[1]
        self.assertTrue(result.output.startswith("abcde\n\n[OUTPUT TRUNCATED: Showing 5 of 10 characters]"))

    def test_unknown_tool_becomes_tool_error(self) -> None:
        engine = _engine([EchoTool()])
        events = asyncio.run(collect(engine.run(stream_of([_call("c1", name="teleport"), FinishEvent()]))))
        self.assertIsInstance(events[1], ToolErrorEvent)
        self.assertIn("Unknown tool", events[1].error)

    def test_execution_failure_becomes_tool_error(self) -> None:
        engine = _engine([EchoTool(fail_with=ToolExecutionError("exploded", tool_name="echo"))])
        events = asyncio.run(collect(engine.run(stream_of([_call("c1", text="x"), FinishEvent()]))))
        self.assertEqual(["tool-call", "tool-error", "finish"], [e.type for e in events])
        self.assertEqual("exploded", events[1].error)

    def _run_until_error(self, engine, events):
        seen = []

        async def scenario():
            async for event in engine.run(stream_of(events)):
                seen.append(event)

        return seen, scenario

    def test_tool_not_offered_is_a_permission_error(self) -> None:
        echo, other = EchoTool(), EchoTool("other")
        engine = _engine([echo, other], offered=[other])
        seen, scenario = self._run_until_error(engine, [_call("c1", text="x"), FinishEvent()])

        with self.assertRaises(ToolPermissionError):
            asyncio.run(scenario())
        self.assertEqual(["tool-call", "tool-error"], [e.type for e in seen])
        self.assertEqual([], echo.calls)

    def test_invalid_input_is_surfaced(self) -> None:
        tool = EchoTool()
        engine = _engine([tool])
        seen, scenario = self._run_until_error(engine, [_call("c1", text=7), FinishEvent()])

        with self.assertRaises(ToolValidationError):
            asyncio.run(scenario())
        self.assertIsInstance(seen[-1], ToolErrorEvent)
        self.assertEqual([], tool.calls)


class TurnEngineSnapshotTests(WorkspaceTestCase):
    def test_mutating_tools_are_snapshotted_before_running(self) -> None:
        path = self.write("app.py", "x = 1\n")
        snapshots = FileSnapshotManager()
        engine = _engine([EditTool(str(self.workdir))], snapshots=snapshots, working_directory=str(self.workdir))
        call = _call("c1", name="edit", path="app.py", old_string="x = 1", new_string="x = 2")

        events = asyncio.run(collect(engine.run(stream_of([call, FinishEvent()]))))

        self.assertIsInstance(events[1], ToolResultEvent)
        self.assertEqual("x = 2\n", path.read_text(encoding="utf-8"))
        (snapshot,) = snapshots.snapshots_for("s1")
        self.assertEqual(("m1", "c1", str(path)), (snapshot.message_id, snapshot.call_id, snapshot.path))
        self.assertEqual(b"x = 1\n", snapshot.content)

    def test_paths_outside_workspace_are_not_snapshotted(self) -> None:
        snapshots = FileSnapshotManager()
        engine = _engine([EditTool(str(self.workdir))], snapshots=snapshots, working_directory=str(self.workdir))
        call = _call("c1", name="edit", path="../escape.py", old_string="", new_string="x")

        seen = []

        async def scenario():
            async for event in engine.run(stream_of([call, FinishEvent()])):
                seen.append(event)

        with self.assertRaises(ToolSecurityError):
            asyncio.run(scenario())
        self.assertEqual([], snapshots.snapshots_for("s1"))


if __name__ == "__main__":
    unittest.main()
