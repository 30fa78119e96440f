from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable

from loguru import logger

from open_core.errors import ProviderError, StreamAbortedError, StreamProtocolError
from open_core.event_bus import BusEvent, EventBus
from open_core.identifiers import generate_id, now_ms
from open_core.messages import (
    ChatResponse,
    MessageError,
    StepFinishPart,
    StepStartPart,
    StoredMessage,
    TextPart,
    TokenUsage,
    ToolPart,
    ToolStateRunning,
)
from open_core.stream_events import (
    FINISH_ABORTED,
    FINISH_ERROR,
    ErrorEvent,
    FinishEvent,
    FinishStepEvent,
    StartStepEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
    TextStartEvent,
    ToolCallEvent,
    ToolErrorEvent,
    ToolResultEvent,
)

CostFunction = Callable[[TokenUsage], float]


def linear_cost(usage: TokenUsage) -> float:
    return usage.input * 0.01 / 1000 + usage.output * 0.03 / 1000


_ABORTED = object()


async def _anext(iterator: AsyncIterator[StreamEvent]) -> StreamEvent:
    return await iterator.__anext__()


async def _next_event(iterator: AsyncIterator[StreamEvent], abort: asyncio.Event | None):
    """Next event from ``iterator``, or ``_ABORTED`` once ``abort`` is set.

    A pull that is still waiting on the provider when the abort arrives is
    cancelled. Raises StopAsyncIteration when the stream is exhausted.
    """
    if abort is None:
        return await iterator.__anext__()
    if abort.is_set():
        return _ABORTED

    pull = asyncio.create_task(_anext(iterator))
    aborted = asyncio.create_task(abort.wait())
    try:
        await asyncio.wait({pull, aborted}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        aborted.cancel()
        if not pull.done():
            pull.cancel()
            await asyncio.wait({pull})

    if abort.is_set():
        if not pull.cancelled() and pull.exception() is not None:
            logger.debug(f"Stream failed after abort: {pull.exception()!r}")
        return _ABORTED
    return pull.result()


class _Fold:
    """Mutable state for one ``process`` call."""

    def __init__(self, message: StoredMessage):
        self.message = message
        self.text: TextPart | None = None
        self.tools: dict[str, ToolPart] = {
            p.call_id: p for p in message.parts if isinstance(p, ToolPart)
        }
        self.finished = False

    def new_id(self) -> dict:
        return {
            "id": generate_id("prt"),
            "session_id": self.message.info.session_id,
            "message_id": self.message.info.id,
        }

    def open_text(self) -> TextPart:
        if self.text is None:
            self.text = TextPart(**self.new_id())
        return self.text

    def close_text(self) -> None:
        if self.text is not None and self.text.text:
            self.message.parts.append(self.text)
        self.text = None


class StreamEventProcessor:
    """Folds one provider event stream into a caller-owned ``StoredMessage``.

    The message is always finalized (completion time set) when ``process``
    returns or raises, so partial output can be stored.
    """

    def __init__(self, bus: EventBus | None = None, cost: CostFunction = linear_cost):
        self._bus = bus
        self._cost = cost

    async def process(
        self,
        stream: AsyncIterator[StreamEvent],
        message: StoredMessage,
        *,
        abort: asyncio.Event | None = None,
    ) -> ChatResponse:
        if message.is_completed:
            raise StreamProtocolError(f"Message {message.id} is already finalized")

        fold = _Fold(message)
        iterator = stream.__aiter__()
        try:
            while True:
                try:
                    event = await _next_event(iterator, abort)
                except StopAsyncIteration:
                    break
                if event is _ABORTED:
                    break
                self._apply(fold, event)
                self._publish(message, event)
                if fold.finished:
                    break
            if not fold.finished and abort is not None and abort.is_set():
                self._finalize_aborted(fold)
                raise StreamAbortedError(f"Stream for message {message.id} was aborted")
        except asyncio.CancelledError:
            self._finalize_aborted(fold)
            raise
        except Exception as ex:
            if not message.is_completed:
                self._finalize_error(fold, ex)
            raise
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if not fold.finished:
            error = StreamProtocolError(f"Stream for message {message.id} ended without a finish event")
            self._finalize_error(fold, error)
            raise error

        dangling = [p for p in message.tool_parts() if p.is_running]
        if dangling:
            for part in dangling:
                part.fail("Tool call did not receive a result before the stream finished", incomplete=True)
            names = ", ".join(f"{p.tool}({p.call_id})" for p in dangling)
            logger.error(f"Stream finished with unresolved tool calls: {names}")
            error = StreamProtocolError(f"Unresolved tool calls at end of stream: {names}")
            message.info.error = MessageError(name=type(error).__name__, message=str(error))
            raise error

        return ChatResponse(
            info=message.info,
            parts=list(message.parts),
            finish_reason=message.info.finish_reason,
        )

    # -- folding ---------------------------------------------------------------

    def _apply(self, fold: _Fold, event: StreamEvent) -> None:
        message = fold.message
        if isinstance(event, TextStartEvent):
            fold.close_text()
            fold.open_text()
        elif isinstance(event, TextDeltaEvent):
            fold.open_text().text += event.text
        elif isinstance(event, TextEndEvent):
            fold.close_text()
        elif isinstance(event, ToolCallEvent):
            if event.call_id in fold.tools:
                raise StreamProtocolError(f"Duplicate tool call id {event.call_id}")
            fold.close_text()
            part = ToolPart(
                **fold.new_id(),
                tool=event.tool_name,
                call_id=event.call_id,
                state=ToolStateRunning(input=dict(event.input), start=now_ms()),
            )
            fold.tools[event.call_id] = part
            message.parts.append(part)
        elif isinstance(event, ToolResultEvent):
            part = self._running_part(fold, event.call_id, event.type)
            if part is not None:
                part.complete(event.output, title=event.title, metadata=event.metadata)
        elif isinstance(event, ToolErrorEvent):
            part = self._running_part(fold, event.call_id, event.type)
            if part is not None:
                part.fail(event.error)
        elif isinstance(event, StartStepEvent):
            fold.close_text()
            message.parts.append(StepStartPart(**fold.new_id()))
        elif isinstance(event, FinishStepEvent):
            fold.close_text()
            usage = TokenUsage.from_dict(event.usage.to_dict())
            cost = self._cost(usage)
            message.parts.append(StepFinishPart(**fold.new_id(), tokens=usage, cost=cost))
            message.info.tokens = message.info.tokens + usage
            message.info.cost += cost
        elif isinstance(event, FinishEvent):
            fold.close_text()
            if event.usage is not None:
                message.info.tokens = TokenUsage.from_dict(event.usage.to_dict())
                message.info.cost = self._cost(message.info.tokens)
            message.info.finish_reason = event.finish_reason
            message.info.time.completed = now_ms()
            fold.finished = True
        elif isinstance(event, ErrorEvent):
            error = event.error
            if not isinstance(error, BaseException):
                error = ProviderError(str(error))
            self._publish(message, event)
            raise error

    @staticmethod
    def _running_part(fold: _Fold, call_id: str, event_type: str) -> ToolPart | None:
        part = fold.tools.get(call_id)
        if part is None:
            logger.warning(f"Ignoring {event_type} for unknown tool call {call_id}")
            return None
        if not part.is_running:
            logger.debug(f"Ignoring {event_type} for settled tool call {call_id}")
            return None
        return part

    # -- finalization ------------------------------------------------------------

    def _finalize_error(self, fold: _Fold, error: BaseException) -> None:
        fold.close_text()
        message = fold.message
        for part in message.tool_parts():
            if part.is_running:
                part.fail(f"Stream failed: {error}", incomplete=True)
        message.info.error = MessageError(name=type(error).__name__, message=str(error))
        message.info.finish_reason = FINISH_ERROR
        message.info.time.completed = now_ms()

    def _finalize_aborted(self, fold: _Fold) -> None:
        fold.close_text()
        message = fold.message
        if message.is_completed:
            return
        for part in message.tool_parts():
            if part.is_running:
                part.fail("Tool execution aborted", incomplete=True)
        message.info.error = MessageError(name="MessageAbortedError", message="The request was aborted")
        message.info.finish_reason = FINISH_ABORTED
        message.info.time.completed = now_ms()

    def _publish(self, message: StoredMessage, event: StreamEvent) -> None:
        if self._bus is not None:
            self._bus.publish(BusEvent(session_id=message.info.session_id, message_id=message.info.id, event=event))
