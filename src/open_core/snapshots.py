from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from open_core.identifiers import now_ms


@dataclass(frozen=True)
class FileSnapshot:
    session_id: str
    message_id: str
    call_id: str
    path: str
    existed_before: bool
    content: bytes | None
    created: int


class FileSnapshotManager:
    """Captures file contents before a mutating tool runs so revert can undo it.

    One snapshot is kept per (session, message, call, path); later captures of
    the same key are ignored so the pre-tool state is what gets restored.
    """

    def __init__(self, *, enabled: bool = True):
        self._enabled = enabled
        self._snapshots: dict[str, list[FileSnapshot]] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    def capture(self, session_id: str, message_id: str, call_id: str, paths: list[str | Path]) -> list[str]:
        if not self._enabled:
            return []
        history = self._snapshots.setdefault(session_id, [])
        tracked: list[str] = []
        for raw in paths:
            path = Path(raw).resolve()
            key = str(path)
            if any(s.message_id == message_id and s.call_id == call_id and s.path == key for s in history):
                continue
            existed_before = path.is_file()
            try:
                content = path.read_bytes() if existed_before else None
            except OSError as ex:
                logger.warning(f"Could not snapshot {key}: {ex}")
                continue
            history.append(
                FileSnapshot(
                    session_id=session_id,
                    message_id=message_id,
                    call_id=call_id,
                    path=key,
                    existed_before=existed_before,
                    content=content,
                    created=now_ms(),
                )
            )
            tracked.append(key)
        if tracked:
            logger.debug(f"Snapshot taken for call {call_id}: {', '.join(tracked)}")
        return tracked

    def snapshots_for(self, session_id: str) -> list[FileSnapshot]:
        return list(self._snapshots.get(session_id, []))

    def restore(
        self,
        session_id: str,
        *,
        message_ids: set[str] | None = None,
        call_ids: set[str] | None = None,
    ) -> list[str]:
        """Restore snapshots belonging to the given messages or tool calls.

        Applied newest to oldest, so a path touched several times ends up with
        the content captured first. Restored snapshots are discarded.
        """
        message_ids = message_ids or set()
        call_ids = call_ids or set()
        history = self._snapshots.get(session_id, [])
        selected = [s for s in history if s.message_id in message_ids or s.call_id in call_ids]
        if not selected:
            return []

        restored: list[str] = []
        for snapshot in reversed(selected):
            path = Path(snapshot.path)
            try:
                if snapshot.existed_before:
                    path.parent.mkdir(parents=True, exist_ok=True)
                    path.write_bytes(snapshot.content or b"")
                elif path.exists():
                    path.unlink()
            except OSError as ex:
                logger.error(f"Failed to restore {snapshot.path}: {ex}")
                continue
            if snapshot.path not in restored:
                restored.append(snapshot.path)

        self._snapshots[session_id] = [s for s in history if s not in selected]
        logger.info(f"Restored {len(restored)} file(s) for session {session_id}")
        return sorted(restored)

    def discard(self, session_id: str) -> None:
        self._snapshots.pop(session_id, None)
