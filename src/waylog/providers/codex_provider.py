from __future__ import annotations

import os
import re
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from loguru import logger

from waylog.errors import MalformedRecord, UnreadableStore
from waylog.models import DraftMessage, SessionDraft
from waylog.providers.common import (
    BaseProvider,
    ensure_readable_dir,
    first_modified_since,
    head_json_lines,
    newest_first,
    parse_timestamp,
    read_json_lines,
)

_PROBE_LINES = 50
_RECENT_DAYS = 7
_CWD_TAG = re.compile(r"<cwd>(.*?)</cwd>", re.DOTALL)
_INJECTED_MARKERS = ("<environment_context>", "<INSTRUCTIONS>", "# AGENTS.md instructions")


class CodexProvider(BaseProvider):
    """Codex CLI keeps every project's sessions under one date-partitioned tree."""

    provider_name = "codex"
    default_executable = "codex"

    @classmethod
    def default_data_dir(cls) -> Path:
        codex_home = os.environ.get("CODEX_HOME")
        base = Path(codex_home).expanduser() if codex_home else Path.home() / ".codex"
        return base / "sessions"

    def session_files(self, project: Path) -> list[Path]:
        ensure_readable_dir(self._data_dir, self.name)
        return newest_first([p for p in self._walk(self._data_dir) if self._probe_project(p, project)])

    def find_latest(self, project: Path, since: datetime | None = None) -> Path | None:
        if not self._data_dir.is_dir():
            return None
        now = datetime.now(UTC)
        candidates: list[Path] = []
        for days_ago in range(_RECENT_DAYS):
            day = now - timedelta(days=days_ago)
            day_dir = self._data_dir / f"{day:%Y}" / f"{day:%m}" / f"{day:%d}"
            if day_dir.is_dir():
                candidates.extend(p for p in day_dir.glob("*.jsonl") if self._probe_project(p, project))
        return first_modified_since(newest_first(candidates), since)

    def load_session(self, path: Path) -> SessionDraft:
        records, malformed = read_json_lines(path)
        if not records:
            raise MalformedRecord("No decodable events", provider=self.name, path=path)

        session_id: str | None = None
        meta_started: datetime | None = None
        cwd: str | None = None
        messages: list[DraftMessage] = []

        for record in records:
            payload = record.get("payload")
            if isinstance(payload, dict) and "type" in record:
                kind = record["type"]
                if kind in ("session_meta", "turn_context"):
                    if isinstance(payload.get("cwd"), str):
                        cwd = payload["cwd"]
                    if kind == "session_meta":
                        if session_id is None and isinstance(payload.get("id"), str):
                            session_id = payload["id"]
                        meta_started = meta_started or parse_timestamp(payload.get("timestamp"))
                    continue
                if kind != "response_item":
                    continue
                item, timestamp = payload, record.get("timestamp")
            else:
                # Legacy framing: a header line {id, timestamp}, then bare items.
                if "type" not in record and isinstance(record.get("id"), str):
                    session_id = session_id or record["id"]
                    meta_started = meta_started or parse_timestamp(record.get("timestamp"))
                    continue
                item, timestamp = record, record.get("timestamp")

            message = self._parse_item(item, timestamp)
            if message is None:
                if cwd is None:
                    cwd = _cwd_from_environment(item)
                continue
            if messages and messages[-1].role == message.role and messages[-1].content == message.content:
                continue
            messages.append(message)

        started_at = next((m.timestamp for m in messages if m.timestamp is not None), None) or meta_started
        updated_at = next((m.timestamp for m in reversed(messages) if m.timestamp is not None), None)
        return SessionDraft(
            session_id=session_id or path.stem,
            provider=self.name,
            source_path=path,
            messages=tuple(messages),
            project_path=Path(cwd) if cwd else None,
            started_at=started_at,
            updated_at=updated_at or started_at,
            malformed_lines=malformed,
        )

    def _parse_item(self, item: dict, timestamp: Any) -> DraftMessage | None:
        if item.get("type", "message") != "message":
            return None
        role = item.get("role")
        if role not in ("user", "assistant"):
            return None
        content = _extract_text(item.get("content"))
        if not content:
            return None
        if role == "user" and any(marker in content for marker in _INJECTED_MARKERS):
            return None
        return DraftMessage(role=role, content=content, timestamp=parse_timestamp(timestamp))

    def _probe_project(self, path: Path, project: Path) -> bool:
        try:
            for record in head_json_lines(path, _PROBE_LINES):
                cwd = _record_cwd(record)
                if cwd is not None:
                    return self._policy.matches(cwd, project)
        except OSError as ex:
            logger.warning(f"Cannot probe codex session {path}: {ex}")
        return False

    def _walk(self, root: Path) -> list[Path]:
        def _on_error(error: OSError) -> None:
            if error.filename and Path(error.filename) == root:
                raise UnreadableStore(f"Cannot list session store: {error}", provider=self.name, path=root)
            logger.warning(f"Skipping unreadable codex directory {error.filename}: {error.strerror}")

        found: list[Path] = []
        for dirpath, _dirnames, filenames in os.walk(root, onerror=_on_error):
            found.extend(Path(dirpath) / name for name in filenames if name.endswith(".jsonl"))
        return found


def _extract_text(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    if not isinstance(raw, list):
        return ""
    texts = [
        block["text"]
        for block in raw
        if isinstance(block, dict) and isinstance(block.get("text"), str) and block["text"]
    ]
    return "\n".join(texts)


def _record_cwd(record: dict) -> str | None:
    payload = record.get("payload")
    if isinstance(payload, dict) and isinstance(payload.get("cwd"), str):
        return payload["cwd"]
    if isinstance(record.get("cwd"), str):
        return record["cwd"]
    return _cwd_from_environment(payload if isinstance(payload, dict) else record)


def _cwd_from_environment(item: dict) -> str | None:
    text = _extract_text(item.get("content"))
    if "<environment_context>" not in text:
        return None
    match = _CWD_TAG.search(text)
    return match.group(1).strip() if match else None
