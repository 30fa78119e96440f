from __future__ import annotations

from dataclasses import dataclass, field

from open_core.identifiers import now_ms
from open_core.messages import RevertInfo, SessionInfo, StoredMessage, TextPart, TokenUsage

_TITLE_CHARS = 60


@dataclass
class Session:
    id: str
    messages: list[StoredMessage] = field(default_factory=list)
    created: int = field(default_factory=now_ms)
    updated: int = field(default_factory=now_ms)
    title: str = ""
    tokens: TokenUsage = field(default_factory=TokenUsage)
    cost: float = 0.0
    compressed: bool = False
    revert: RevertInfo | None = None

    def touch(self) -> None:
        self.updated = now_ms()

    def index_of(self, message_id: str) -> int:
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                return index
        return -1

    def last_assistant(self) -> StoredMessage | None:
        for message in reversed(self.messages):
            if message.info.role == "assistant":
                return message
        return None

    def recompute_totals(self) -> None:
        tokens = TokenUsage()
        cost = 0.0
        for message in self.messages:
            tokens = tokens + message.info.tokens
            cost += message.info.cost
        self.tokens = tokens
        self.cost = cost

    def to_info(self) -> SessionInfo:
        return SessionInfo(
            id=self.id,
            title=self.title,
            created=self.created,
            updated=self.updated,
            tokens=TokenUsage.from_dict(self.tokens.to_dict()),
            cost=self.cost,
            compressed=self.compressed,
            messages=list(self.messages),
            revert=self.revert,
        )


def title_from_message(message: StoredMessage) -> str:
    for part in message.parts:
        if isinstance(part, TextPart) and part.text.strip():
            line = part.text.strip().splitlines()[0]
            return line if len(line) <= _TITLE_CHARS else line[: _TITLE_CHARS - 3] + "..."
    return ""
