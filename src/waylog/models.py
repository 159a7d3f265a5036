from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

ROLES = ("user", "assistant", "system", "tool")


@dataclass(frozen=True)
class TokenUsage:
    input: int
    output: int


@dataclass(frozen=True)
class DraftMessage:
    role: str
    content: str
    timestamp: datetime | None = None
    tool_calls: tuple[str, ...] = ()
    thoughts: tuple[str, ...] = ()
    tokens: TokenUsage | None = None


@dataclass(frozen=True)
class SessionDraft:
    """A session as read from a vendor store, before normalization."""

    session_id: str
    provider: str
    source_path: Path
    messages: tuple[DraftMessage, ...]
    project_path: Path | None = None
    started_at: datetime | None = None
    updated_at: datetime | None = None
    malformed_lines: int = 0


@dataclass(frozen=True)
class Message:
    role: str
    content: str
    sequence_no: int
    timestamp: datetime | None = None
    tool_calls: tuple[str, ...] = ()
    thoughts: tuple[str, ...] = ()


@dataclass(frozen=True)
class SessionRecord:
    session_id: str
    provider: str
    project_path: Path | None
    started_at: datetime | None
    ended_at: datetime | None
    messages: tuple[Message, ...]
    title: str
    total_tokens: int = 0
    tags: tuple[str, ...] = field(default=())


@dataclass(frozen=True)
class SyncEntry:
    provider: str
    session_id: str
    content_hash: str
    synced_at: str
    file_path: str

    @property
    def key(self) -> str:
        return ledger_key(self.provider, self.session_id)


def ledger_key(provider: str, session_id: str) -> str:
    return f"{provider}:{session_id}"
