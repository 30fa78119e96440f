from __future__ import annotations

import asyncio
from typing import AsyncIterator

from loguru import logger

from open_core.errors import FATAL_TOOL_ERRORS, ToolError, ToolPermissionError, ToolSecurityError
from open_core.snapshots import FileSnapshotManager
from open_core.stream_events import (
    FinishEvent,
    FinishStepEvent,
    StreamEvent,
    ToolCallEvent,
    ToolErrorEvent,
    ToolResultEvent,
)
from open_core.tool import Tool, ToolContext
from open_core.tool_registry import ToolRegistry
from open_core.tools.paths import resolve_within


class TurnEngine:
    """Wraps one provider stream and runs the tools it asks for.

    Tool calls the provider did not resolve itself are executed concurrently at
    the next step boundary; their result events are emitted just before the
    boundary event so the processor sees them in order.
    """

    def __init__(
        self,
        *,
        registry: ToolRegistry,
        tools: dict[str, Tool],
        session_id: str,
        message_id: str,
        abort: asyncio.Event,
        working_directory: str | None = None,
        snapshots: FileSnapshotManager | None = None,
        max_tool_result_chars: int = 40_000,
    ):
        self._registry = registry
        self._tools = tools
        self._session_id = session_id
        self._message_id = message_id
        self._abort = abort
        self._working_directory = working_directory
        self._snapshots = snapshots
        self._max_tool_result_chars = max_tool_result_chars
        self.executed_calls = 0

    async def run(self, stream: AsyncIterator[StreamEvent]) -> AsyncIterator[StreamEvent]:
        pending: dict[str, ToolCallEvent] = {}
        try:
            async for event in stream:
                if isinstance(event, ToolCallEvent):
                    pending[event.call_id] = event
                elif isinstance(event, (ToolResultEvent, ToolErrorEvent)):
                    pending.pop(event.call_id, None)
                elif isinstance(event, (FinishStepEvent, FinishEvent)) and pending:
                    calls = list(pending.values())
                    pending.clear()
                    outcomes = await self._execute_all(calls)
                    for result_event, _ in outcomes:
                        yield result_event
                    fatal = next((error for _, error in outcomes if error is not None), None)
                    if fatal is not None:
                        raise fatal
                yield event
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _execute_all(self, calls: list[ToolCallEvent]) -> list[tuple[StreamEvent, ToolError | None]]:
        logger.debug(f"Executing {len(calls)} tool call(s): {', '.join(c.tool_name for c in calls)}")
        outcomes = await asyncio.gather(*(self._execute_one(call) for call in calls))
        self.executed_calls += len(calls)
        return list(outcomes)

    async def _execute_one(self, call: ToolCallEvent) -> tuple[StreamEvent, ToolError | None]:
        tool = self._tools.get(call.tool_name)
        if tool is None:
            if call.tool_name in self._registry:
                error = ToolPermissionError(
                    f'Tool "{call.tool_name}" is not enabled for this request',
                    tool_name=call.tool_name,
                )
                return self._error_event(call, error), error
            logger.warning(f"Model requested unknown tool {call.tool_name}")
            return ToolErrorEvent(call_id=call.call_id, tool_name=call.tool_name, error=f'Unknown tool "{call.tool_name}"'), None

        context = ToolContext(
            session_id=self._session_id,
            message_id=self._message_id,
            call_id=call.call_id,
            abort=self._abort,
            working_directory=self._working_directory,
        )
        try:
            self._registry.validate_input(call.tool_name, call.input)
            if tool.is_mutating:
                self._snapshot(tool, call)
            result = await self._registry.execute(call.tool_name, call.input, context)
        except FATAL_TOOL_ERRORS as ex:
            logger.warning(f"Tool {call.tool_name} rejected: {ex}")
            return self._error_event(call, ex), ex
        except ToolError as ex:
            logger.debug(f"Tool {call.tool_name} failed: {ex}")
            return self._error_event(call, ex), None

        output = result.output
        if len(output) > self._max_tool_result_chars:
            original = len(output)
            output = (
                output[: self._max_tool_result_chars]
                + f"\n\n[OUTPUT TRUNCATED: Showing {self._max_tool_result_chars:,} of {original:,} characters]"
            )
            logger.warning(
                f"{call.tool_name} output truncated from {original:,} to {self._max_tool_result_chars:,} chars"
            )
        return (
            ToolResultEvent(
                call_id=call.call_id,
                tool_name=call.tool_name,
                output=output,
                title=result.title,
                metadata=result.metadata_dict(),
            ),
            None,
        )

    def _snapshot(self, tool: Tool, call: ToolCallEvent) -> None:
        if self._snapshots is None:
            return
        paths = []
        for raw in tool.predict_touched_paths(call.input):
            try:
                paths.append(resolve_within(self._working_directory, raw, tool_name=tool.name))
            except ToolSecurityError:
                # The tool refuses the same path when it runs.
                continue
        if paths:
            self._snapshots.capture(self._session_id, self._message_id, call.call_id, paths)

    @staticmethod
    def _error_event(call: ToolCallEvent, error: ToolError) -> ToolErrorEvent:
        return ToolErrorEvent(call_id=call.call_id, tool_name=call.tool_name, error=str(error))
