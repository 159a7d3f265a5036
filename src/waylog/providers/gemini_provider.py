from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

from waylog.errors import MalformedRecord, UnreadableStore
from waylog.models import DraftMessage, SessionDraft, TokenUsage
from waylog.providers.common import BaseProvider, ensure_readable_dir, newest_first, parse_timestamp

_ROLE_MAP = {"user": "user", "gemini": "assistant"}


def project_hash(project: Path) -> str:
    """Gemini CLI files a project's chats under the SHA-256 of its absolute path."""
    return hashlib.sha256(str(project).encode("utf-8")).hexdigest()


class GeminiProvider(BaseProvider):
    provider_name = "gemini"
    default_executable = "gemini"

    def __init__(self, **kwargs: Any):
        super().__init__(**kwargs)
        # The store only holds the hash; remember which project produced it.
        self._projects_by_hash: dict[str, Path] = {}

    @classmethod
    def default_data_dir(cls) -> Path:
        return Path.home() / ".gemini" / "tmp"

    def chats_dir(self, project: Path) -> Path:
        digest = project_hash(project)
        self._projects_by_hash[digest] = project
        return self._data_dir / digest / "chats"

    def session_files(self, project: Path) -> list[Path]:
        ensure_readable_dir(self._data_dir, self.name)
        chats = self.chats_dir(project)
        if not chats.is_dir():
            return []
        try:
            return newest_first(list(chats.glob("*.json")))
        except PermissionError as ex:
            raise UnreadableStore(f"Cannot list sessions: {ex}", provider=self.name, path=chats)

    def load_session(self, path: Path) -> SessionDraft:
        try:
            data = json.loads(path.read_text(encoding="utf-8", errors="replace"))
        except json.JSONDecodeError as ex:
            raise MalformedRecord(f"Invalid session JSON: {ex.msg} at line {ex.lineno}", provider=self.name, path=path)
        if not isinstance(data, dict) or not isinstance(data.get("sessionId"), str):
            raise MalformedRecord("Session document has no sessionId", provider=self.name, path=path)

        raw_messages = data.get("messages")
        if not isinstance(raw_messages, list):
            raw_messages = []

        messages: list[DraftMessage] = []
        malformed = 0
        for raw in raw_messages:
            if not isinstance(raw, dict) or not isinstance(raw.get("type"), str):
                malformed += 1
                continue
            message = self._parse_message(raw)
            if message is not None:
                messages.append(message)

        started_at = parse_timestamp(data.get("startTime"))
        return SessionDraft(
            session_id=data["sessionId"],
            provider=self.name,
            source_path=path,
            messages=tuple(messages),
            project_path=self._projects_by_hash.get(path.parent.parent.name),
            started_at=started_at,
            updated_at=parse_timestamp(data.get("lastUpdated")) or started_at,
            malformed_lines=malformed,
        )

    def _parse_message(self, raw: dict) -> DraftMessage | None:
        role = _ROLE_MAP.get(raw.get("type"))
        if role is None:
            return None
        content = _extract_text(raw.get("content"))
        if not content:
            return None
        return DraftMessage(
            role=role,
            content=content,
            timestamp=parse_timestamp(raw.get("timestamp")),
            thoughts=_extract_thoughts(raw.get("thoughts")),
            tokens=_extract_tokens(raw.get("tokens")),
        )


def _extract_text(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, list):
        return "\n".join(p["text"] for p in raw if isinstance(p, dict) and isinstance(p.get("text"), str))
    return ""


def _extract_thoughts(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, list):
        return ()
    thoughts = []
    for thought in raw:
        if isinstance(thought, dict) and thought.get("subject") is not None:
            thoughts.append(f"{thought.get('subject')}: {thought.get('description', '')}")
    return tuple(thoughts)


def _extract_tokens(raw: Any) -> TokenUsage | None:
    if not isinstance(raw, dict):
        return None
    try:
        return TokenUsage(
            input=int(raw.get("input", 0)),
            output=int(raw.get("output", 0)),
        )
    except (TypeError, ValueError):
        return None
