from __future__ import annotations

import asyncio
from typing import AsyncIterator, Mapping

from loguru import logger

from open_core.compaction import provider_summarizer
from open_core.config import CoreConfig
from open_core.dynamic_tool_registry import DynamicToolRegistry, permission_of
from open_core.errors import CompressionError, ProviderError, StreamAbortedError
from open_core.event_bus import BusEvent, EventBus
from open_core.history import to_provider_messages
from open_core.identifiers import generate_id, now_ms
from open_core.messages import (
    ChatInput,
    ChatResponse,
    FileInput,
    FilePart,
    MessageError,
    RevertInfo,
    SessionInfo,
    StoredMessage,
    new_message,
    text_part,
)
from open_core.provider import Provider
from open_core.providers.transforms import ProviderTransformRegistry
from open_core.session_state import SessionLock, SessionStateManager
from open_core.stream_events import FINISH_ABORTED, FINISH_ERROR, FINISH_LENGTH, FINISH_MAX_TURNS, FINISH_TOOL_CALLS
from open_core.stream_processor import StreamEventProcessor
from open_core.system_prompt import PromptContext, SystemPromptAssembler
from open_core.tool import Tool
from open_core.turn_engine import TurnEngine

_CONTINUE_PROMPT = "Your previous response was cut off by the output token limit. Continue exactly where you left off."


class SessionOrchestrator:
    """Top-level coordinator for chat requests against a session."""

    def __init__(
        self,
        *,
        config: CoreConfig,
        providers: Mapping[str, Provider],
        state: SessionStateManager,
        prompts: SystemPromptAssembler,
        transforms: ProviderTransformRegistry,
        tools: DynamicToolRegistry,
        processor: StreamEventProcessor,
        bus: EventBus,
    ):
        self._config = config
        self._providers = {name.lower(): provider for name, provider in providers.items()}
        self._state = state
        self._prompts = prompts
        self._transforms = transforms
        self._tools = tools
        self._processor = processor
        self._bus = bus

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def state(self) -> SessionStateManager:
        return self._state

    # -- public API ------------------------------------------------------------

    async def chat(self, chat_input: ChatInput) -> ChatResponse:
        return await self._submit(chat_input)

    async def chat_stream(self, chat_input: ChatInput) -> AsyncIterator[BusEvent]:
        queue: asyncio.Queue[BusEvent] = asyncio.Queue()
        task = asyncio.create_task(self._submit(chat_input, queue.put_nowait))
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield getter.result()
                    continue
                getter.cancel()
                break
            while not queue.empty():
                yield queue.get_nowait()
            task.result()
        finally:
            if not task.done():
                task.cancel()

    def abort(self, session_id: str) -> bool:
        return self._state.abort(session_id)

    async def revert(self, session_id: str, message_id: str, part_id: str | None = None) -> RevertInfo:
        return await self._state.revert(session_id, message_id, part_id)

    async def compress(self, session_id: str, provider_id: str, model_id: str) -> bool:
        summarize = provider_summarizer(self._provider(provider_id), model_id)
        return await self._state.compress(session_id, summarize)

    def get_session(self, session_id: str) -> SessionInfo:
        return self._state.get_session(session_id)

    # -- chat loop ---------------------------------------------------------------

    async def _submit(self, chat_input: ChatInput, listener=None) -> ChatResponse:
        """Queue a chat on its session; ``listener`` sees only this request's events."""
        self._provider(chat_input.provider_id)
        self._state.get_or_create_session(chat_input.session_id)

        async def request(lock: SessionLock) -> ChatResponse:
            if listener is None:
                return await self._run_chat(chat_input, lock)
            unsubscribe = self._bus.subscribe(listener, session_id=chat_input.session_id)
            try:
                return await self._run_chat(chat_input, lock)
            finally:
                unsubscribe()

        return await self._state.enqueue(chat_input.session_id, request)

    async def _run_chat(self, chat_input: ChatInput, lock: SessionLock) -> ChatResponse:
        session_id = chat_input.session_id
        user = self._user_message(chat_input)
        self._state.add_message(user)
        logger.info(f"Chat started: session={session_id}, model={chat_input.provider_id}/{chat_input.model_id}")

        max_turns = self._config.session.max_turns
        length_retries = 0
        last: ChatResponse | None = None
        for turn in range(1, max_turns + 1):
            if lock.abort.is_set():
                return self._aborted(last, user, turn - 1)

            await self._maybe_compress(chat_input, lock)
            response, executed = await self._run_turn(chat_input, lock)
            response.turns = turn
            last = response

            if response.finish_reason == FINISH_ABORTED:
                logger.info(f"Chat aborted: session={session_id}")
                return response
            if executed or response.finish_reason == FINISH_TOOL_CALLS:
                continue
            if response.finish_reason == FINISH_LENGTH:
                if length_retries < self._config.session.max_tokens_retries:
                    length_retries += 1
                    logger.warning(
                        f"Output token limit reached, requesting continuation "
                        f"({length_retries}/{self._config.session.max_tokens_retries})"
                    )
                    self._add_continue_message(chat_input)
                    continue
                logger.warning("Output token limit reached and continuation retries exhausted")
            return response

        logger.warning(f"Max turns ({max_turns}) exhausted for session {session_id}")
        info = last.info if last is not None else user.info
        parts = last.parts if last is not None else []
        return ChatResponse(info=info, parts=parts, finish_reason=FINISH_MAX_TURNS, turns=max_turns)

    async def _run_turn(self, chat_input: ChatInput, lock: SessionLock) -> tuple[ChatResponse, int]:
        provider_id, model_id = chat_input.provider_id, chat_input.model_id
        provider = self._provider(provider_id)
        workspace = self._config.workspace

        system = await self._prompts.assemble(
            provider_id,
            model_id,
            PromptContext(
                mode=chat_input.mode,
                custom_system=chat_input.system,
                working_directory=workspace.working_directory,
                project_root=workspace.project_root,
            ),
        )
        tools = self._select_tools(chat_input)
        messages = self._transforms.transform_messages(
            to_provider_messages(self._state.get_messages(chat_input.session_id)),
            provider_id,
            model_id,
        )
        params = self._transforms.get_optimal_parameters(provider_id, model_id)

        assistant = new_message(
            chat_input.session_id,
            "assistant",
            provider_id=provider_id,
            model_id=model_id,
            mode=chat_input.mode,
            system=system,
        )
        engine = TurnEngine(
            registry=self._tools.registry,
            tools=tools,
            session_id=chat_input.session_id,
            message_id=assistant.id,
            abort=lock.abort,
            working_directory=str(workspace.resolved_working_directory()),
            snapshots=self._state.snapshots,
            max_tool_result_chars=self._config.tools.max_tool_result_chars,
        )
        try:
            stream = provider.generate_stream(
                model=model_id,
                system=system,
                messages=messages,
                tools=self._tools.describe(tools, provider_id, model_id),
                params=params,
                abort=lock.abort,
            )
            response = await self._processor.process(engine.run(stream), assistant, abort=lock.abort)
        except StreamAbortedError:
            response = ChatResponse(info=assistant.info, parts=list(assistant.parts), finish_reason=FINISH_ABORTED)
        finally:
            if not assistant.is_completed:
                assistant.info.error = assistant.info.error or MessageError("MessageIncompleteError", "Turn ended early")
                assistant.info.finish_reason = assistant.info.finish_reason or FINISH_ERROR
                assistant.info.time.completed = now_ms()
            self._state.add_message(assistant)
        return response, engine.executed_calls

    def _select_tools(self, chat_input: ChatInput) -> dict[str, Tool]:
        tools = self._tools.resolve_tools(chat_input.provider_id, chat_input.model_id, chat_input.tools)
        if chat_input.mode == "plan":
            tools = {
                name: tool
                for name, tool in tools.items()
                if not tool.is_mutating and permission_of(tool) != "shell"
            }
        return tools

    async def _maybe_compress(self, chat_input: ChatInput, lock: SessionLock) -> None:
        capabilities = self._transforms.get_model_capabilities(chat_input.provider_id, chat_input.model_id)
        if not self._state.should_compress(chat_input.session_id, capabilities.context_window):
            return
        summarize = provider_summarizer(self._provider(chat_input.provider_id), chat_input.model_id)
        try:
            await self._state.compress(chat_input.session_id, summarize, lock=lock)
        except CompressionError as ex:
            logger.warning(f"Automatic compression failed, continuing with full history: {ex}")

    # -- helpers -------------------------------------------------------------------

    def _provider(self, provider_id: str) -> Provider:
        provider = self._providers.get(provider_id.lower())
        if provider is None:
            raise ProviderError(f"No provider configured for {provider_id!r}", provider_id=provider_id)
        return provider

    @staticmethod
    def _user_message(chat_input: ChatInput) -> StoredMessage:
        message = new_message(
            chat_input.session_id,
            "user",
            message_id=chat_input.message_id,
            provider_id=chat_input.provider_id,
            model_id=chat_input.model_id,
            mode=chat_input.mode,
        )
        for part in chat_input.parts:
            if isinstance(part, FileInput):
                message.parts.append(
                    FilePart(
                        id=generate_id("prt"),
                        session_id=message.info.session_id,
                        message_id=message.id,
                        url=part.url,
                        mime=part.mime,
                        filename=part.filename,
                    )
                )
            else:
                message.parts.append(text_part(message, part.text, synthetic=part.synthetic))
        message.info.time.completed = now_ms()
        return message

    def _add_continue_message(self, chat_input: ChatInput) -> None:
        message = new_message(
            chat_input.session_id,
            "user",
            provider_id=chat_input.provider_id,
            model_id=chat_input.model_id,
            mode=chat_input.mode,
        )
        message.parts.append(text_part(message, _CONTINUE_PROMPT, synthetic=True))
        message.info.time.completed = now_ms()
        self._state.add_message(message)

    @staticmethod
    def _aborted(last: ChatResponse | None, user: StoredMessage, turns: int) -> ChatResponse:
        info = last.info if last is not None else user.info
        parts = last.parts if last is not None else []
        return ChatResponse(info=info, parts=parts, finish_reason=FINISH_ABORTED, turns=turns)
