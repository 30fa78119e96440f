from __future__ import annotations

import asyncio
import math
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from loguru import logger

from open_core.compaction import SUMMARY_PREFIX, Summarizer, estimate_tokens, recorded_tokens
from open_core.config import SessionConfig
from open_core.errors import CompressionError, SessionError
from open_core.identifiers import now_ms
from open_core.messages import RevertInfo, SessionInfo, StoredMessage, ToolPart, new_message, text_part
from open_core.session import Session, title_from_message
from open_core.snapshots import FileSnapshotManager
from open_core.store import SessionStore

T = TypeVar("T")


class SessionLock:
    """Handle for one logical request's hold on a session."""

    def __init__(self, manager: SessionStateManager, session_id: str):
        self._manager = manager
        self.session_id = session_id
        self.abort = asyncio.Event()
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._manager._release(self)


@dataclass
class _LockState:
    holders: list[SessionLock] = field(default_factory=list)
    waiters: deque[asyncio.Future] = field(default_factory=deque)


class SessionStateManager:
    """Owns session history and serializes requests per session.

    Ownership of a busy session passes directly from the releasing holder to the
    oldest waiter, so requests run strictly in submission order.
    """

    def __init__(
        self,
        config: SessionConfig | None = None,
        *,
        store: SessionStore | None = None,
        snapshots: FileSnapshotManager | None = None,
    ):
        self._config = config or SessionConfig()
        self._store = store
        self._snapshots = snapshots or FileSnapshotManager()
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, _LockState] = {}

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def snapshots(self) -> FileSnapshotManager:
        return self._snapshots

    # -- sessions ---------------------------------------------------------------

    def get_or_create_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        if self._store is not None:
            session = self._store.load_session(session_id)
            if session is not None:
                logger.debug(f"Loaded session {session_id} from store ({len(session.messages)} messages)")
        if session is None:
            session = Session(id=session_id)
            logger.info(f"Session created: {session_id}")
        self._sessions[session_id] = session
        return session

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get_session(self, session_id: str) -> SessionInfo:
        return self._require(session_id).to_info()

    def get_messages(self, session_id: str) -> list[StoredMessage]:
        return list(self._require(session_id).messages)

    def add_message(self, message: StoredMessage) -> None:
        session = self._require(message.info.session_id)
        if not message.is_completed:
            raise ValueError(f"Message {message.id} must be finalized before it is stored")
        if session.index_of(message.id) >= 0:
            raise ValueError(f"Message {message.id} already exists in session {session.id}")

        session.messages.append(message)
        session.tokens = session.tokens + message.info.tokens
        session.cost += message.info.cost
        if not session.title and message.info.role == "user":
            session.title = title_from_message(message)
        session.touch()
        self._persist(session)

    # -- locking ----------------------------------------------------------------

    def is_locked(self, session_id: str) -> bool:
        state = self._locks.get(session_id)
        return bool(state and state.holders)

    def queue_depth(self, session_id: str) -> int:
        state = self._locks.get(session_id)
        if state is None:
            return 0
        return sum(1 for waiter in state.waiters if not waiter.done())

    def abort(self, session_id: str) -> bool:
        state = self._locks.get(session_id)
        if not state or not state.holders:
            return False
        for holder in state.holders:
            holder.abort.set()
        logger.info(f"Abort requested for session {session_id}")
        return True

    @asynccontextmanager
    async def acquire_lock(self, session_id: str) -> AsyncIterator[SessionLock]:
        lock = await self._acquire(session_id)
        try:
            yield lock
        finally:
            lock.release()

    async def enqueue(self, session_id: str, request: Callable[[SessionLock], Awaitable[T]]) -> T:
        async with self.acquire_lock(session_id) as lock:
            return await request(lock)

    async def _acquire(self, session_id: str) -> SessionLock:
        state = self._locks.setdefault(session_id, _LockState())
        config = self._config

        if not config.enable_locking or not state.holders:
            lock = SessionLock(self, session_id)
            state.holders.append(lock)
            return lock

        if not config.enable_queuing:
            raise SessionError(SessionError.BUSY, f"Session {session_id} is busy", session_id=session_id)
        if self.queue_depth(session_id) >= config.max_queue_depth:
            raise SessionError(
                SessionError.QUEUE_FULL,
                f"Session {session_id} already has {config.max_queue_depth} queued requests",
                session_id=session_id,
            )

        waiter: asyncio.Future[SessionLock] = asyncio.get_running_loop().create_future()
        state.waiters.append(waiter)
        logger.debug(f"Request queued for session {session_id} (depth {self.queue_depth(session_id)})")
        try:
            return await asyncio.wait_for(waiter, timeout=config.lock_timeout_seconds)
        except asyncio.TimeoutError:
            self._abandon(state, waiter)
            raise SessionError(
                SessionError.LOCK_TIMEOUT,
                f"Timed out after {config.lock_timeout_seconds}s waiting for session {session_id}",
                session_id=session_id,
            ) from None
        except asyncio.CancelledError:
            self._abandon(state, waiter)
            raise

    def _abandon(self, state: _LockState, waiter: asyncio.Future) -> None:
        if waiter in state.waiters:
            state.waiters.remove(waiter)
        # Ownership may have been handed over just as the wait ended.
        if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
            waiter.result().release()

    def _release(self, lock: SessionLock) -> None:
        state = self._locks.get(lock.session_id)
        if state is None or lock not in state.holders:
            return
        state.holders.remove(lock)
        if not self._config.enable_locking:
            return
        while state.waiters:
            waiter = state.waiters.popleft()
            if waiter.done():
                continue
            successor = SessionLock(self, lock.session_id)
            state.holders.append(successor)
            waiter.set_result(successor)
            return

    # -- revert -------------------------------------------------------------------

    async def revert(self, session_id: str, message_id: str, part_id: str | None = None) -> RevertInfo:
        if not self._config.enable_revert:
            raise SessionError(SessionError.REVERT_DISABLED, "Revert is disabled", session_id=session_id)
        session = self._require(session_id)
        if self.is_locked(session_id):
            raise SessionError(
                SessionError.LOCKED,
                f"Session {session_id} has a request in progress",
                session_id=session_id,
            )

        index = session.index_of(message_id)
        if index < 0:
            raise SessionError(SessionError.NOT_FOUND, f"Message {message_id} not found", session_id=session_id)

        call_ids: set[str] = set()
        target = None
        kept_parts: list = []
        if part_id is None:
            removed = session.messages[index:]
            kept = session.messages[:index]
        else:
            target = session.messages[index]
            part_index = next((i for i, p in enumerate(target.parts) if p.id == part_id), -1)
            if part_index < 0:
                raise SessionError(SessionError.NOT_FOUND, f"Part {part_id} not found", session_id=session_id)
            call_ids = {p.call_id for p in target.parts[part_index:] if isinstance(p, ToolPart)}
            kept_parts = target.parts[:part_index]
            removed = session.messages[index + 1 :]
            kept = session.messages[: index + 1]

        restored = self._snapshots.restore(
            session_id,
            message_ids={m.id for m in removed},
            call_ids=call_ids,
        )
        if target is not None:
            target.parts = kept_parts
        session.messages = list(kept)
        session.recompute_totals()
        info = RevertInfo(
            session_id=session_id,
            message_id=message_id,
            part_id=part_id,
            removed_messages=len(removed),
            restored_files=restored,
        )
        session.revert = info
        session.touch()
        self._persist(session)
        logger.info(f"Reverted session {session_id} to {message_id}: removed {len(removed)} message(s)")
        return info

    # -- compression --------------------------------------------------------------

    def should_compress(self, session_id: str, context_window: int) -> bool:
        session = self._require(session_id)
        if not session.messages:
            return False
        estimated = estimate_tokens(session.messages)
        recorded = 0
        last = session.last_assistant()
        summary_time = max((m.info.time.created for m in session.messages if m.info.summary), default=0)
        if last is not None and last.info.time.created >= summary_time:
            recorded = recorded_tokens(last)
        usable = context_window - self._config.output_reserve
        return max(estimated, recorded) > self._config.compression_threshold * usable

    async def compress(self, session_id: str, summarize: Summarizer, *, lock: SessionLock | None = None) -> bool:
        self._require(session_id)
        if lock is not None:
            return await self._compress(session_id, summarize)
        async with self.acquire_lock(session_id):
            return await self._compress(session_id, summarize)

    async def _compress(self, session_id: str, summarize: Summarizer) -> bool:
        session = self._require(session_id)
        total = len(session.messages)
        if total < 2:
            return False
        keep = max(1, math.floor(total * self._config.preserve_threshold))
        if keep >= total:
            return False

        older = session.messages[: total - keep]
        before = estimate_tokens(session.messages)
        try:
            summary = await summarize(older)
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            raise CompressionError(f"Failed to summarize session {session_id}: {ex}") from ex

        message = new_message(session_id, "user")
        message.info.summary = True
        message.parts.append(text_part(message, f"{SUMMARY_PREFIX}\n{summary}", synthetic=True))
        message.info.time.completed = now_ms()

        session.messages = [message] + session.messages[total - keep :]
        session.compressed = True
        session.touch()
        self._persist(session)
        logger.info(
            f"Compressed session {session_id}: summarized {len(older)} message(s), "
            f"~{before:,} -> ~{estimate_tokens(session.messages):,} estimated tokens"
        )
        return True

    # -- internals ----------------------------------------------------------------

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionError(SessionError.NOT_FOUND, f"Session {session_id} not found", session_id=session_id)
        return session

    def _persist(self, session: Session) -> None:
        if self._store is not None:
            self._store.save_session(session)
