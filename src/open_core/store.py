from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Protocol, runtime_checkable

from loguru import logger

from open_core.messages import TokenUsage, message_from_dict, message_to_dict
from open_core.session import Session


@runtime_checkable
class SessionStore(Protocol):
    def load_session(self, session_id: str) -> Session | None: ...

    def save_session(self, session: Session) -> None: ...

    def list_sessions(self, *, limit: int = 50) -> list[dict]: ...


class SqliteSessionStore:
    """Persists sessions and their finalized messages to a local SQLite file.

    ``save_session`` rewrites the message rows inside one transaction so that
    truncation by revert or compression is stored atomically.
    """

    def __init__(self, db_path: str):
        self._db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._initialize_schema()

    def close(self) -> None:
        self._conn.close()

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        return self._conn.execute(query, params)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        try:
            yield
        except BaseException:
            self._conn.rollback()
            raise
        else:
            self._conn.commit()

    def load_session(self, session_id: str) -> Session | None:
        row = self.execute("SELECT * FROM sessions WHERE id = ? LIMIT 1", (session_id,)).fetchone()
        if row is None:
            return None
        rows = self.execute(
            "SELECT content_json FROM messages WHERE session_id = ? ORDER BY seq ASC",
            (session_id,),
        ).fetchall()
        return Session(
            id=row["id"],
            messages=[message_from_dict(json.loads(r["content_json"])) for r in rows],
            created=int(row["created"]),
            updated=int(row["updated"]),
            title=row["title"],
            tokens=TokenUsage.from_dict(json.loads(row["tokens_json"])),
            cost=float(row["cost"]),
            compressed=bool(row["compressed"]),
        )

    def save_session(self, session: Session) -> None:
        with self.transaction():
            self.execute(
                """
                INSERT INTO sessions (id, title, created, updated, tokens_json, cost, compressed)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    updated = excluded.updated,
                    tokens_json = excluded.tokens_json,
                    cost = excluded.cost,
                    compressed = excluded.compressed
                """,
                (
                    session.id,
                    session.title,
                    session.created,
                    session.updated,
                    json.dumps(session.tokens.to_dict()),
                    session.cost,
                    1 if session.compressed else 0,
                ),
            )
            self.execute("DELETE FROM messages WHERE session_id = ?", (session.id,))
            self._conn.executemany(
                """
                INSERT INTO messages (id, session_id, seq, role, content_json, created)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        message.id,
                        session.id,
                        seq,
                        message.info.role,
                        json.dumps(message_to_dict(message), ensure_ascii=True),
                        message.info.time.created,
                    )
                    for seq, message in enumerate(session.messages)
                ],
            )
        logger.debug(f"Saved session {session.id} ({len(session.messages)} messages)")

    def list_sessions(self, *, limit: int = 50) -> list[dict]:
        rows = self.execute(
            """
            SELECT id, title, created, updated, cost, compressed
            FROM sessions
            ORDER BY updated DESC, created DESC
            LIMIT ?
            """,
            (max(1, limit),),
        ).fetchall()
        return [dict(row) for row in rows]

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL DEFAULT '',
                created INTEGER NOT NULL,
                updated INTEGER NOT NULL,
                tokens_json TEXT NOT NULL DEFAULT '{}',
                cost REAL NOT NULL DEFAULT 0,
                compressed INTEGER NOT NULL DEFAULT 0 CHECK (compressed IN (0, 1))
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT NOT NULL,
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                seq INTEGER NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                content_json TEXT NOT NULL,
                created INTEGER NOT NULL,
                PRIMARY KEY (session_id, id),
                UNIQUE(session_id, seq)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_session_seq
                ON messages(session_id, seq);
            CREATE INDEX IF NOT EXISTS idx_sessions_updated
                ON sessions(updated);
            """
        )
        self._conn.commit()
