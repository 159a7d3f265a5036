from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

from waylog.errors import MalformedRecord, UnreadableStore
from waylog.models import DraftMessage, SessionDraft, TokenUsage
from waylog.providers.common import (
    BaseProvider,
    ensure_readable_dir,
    head_json_lines,
    newest_first,
    parse_timestamp,
    read_json_lines,
)

_SIDECHAIN_PROBE_LINES = 10
_COMMAND_NAME = re.compile(r"<command-name>(.*?)</command-name>", re.DOTALL)
_COMMAND_STDOUT = re.compile(r"<local-command-stdout>(.*?)</local-command-stdout>", re.DOTALL)


def encode_project_dir(project: Path) -> str:
    """Claude Code names a project's folder after its path with every non-alphanumeric replaced by '-'."""
    return re.sub(r"[^A-Za-z0-9]", "-", str(project))


def format_command_markup(content: str) -> str:
    """Render Claude Code's slash-command wrappers the way its own export does."""
    name = _COMMAND_NAME.search(content)
    if name and name.group(1).strip().startswith("/"):
        return f"> {name.group(1).strip()}"
    stdout = _COMMAND_STDOUT.search(content)
    if stdout:
        return f"> ⎿ {stdout.group(1).strip()}"
    return content


class ClaudeProvider(BaseProvider):
    provider_name = "claude"
    default_executable = "claude"

    @classmethod
    def default_data_dir(cls) -> Path:
        config_dir = os.environ.get("CLAUDE_CONFIG_DIR")
        base = Path(config_dir).expanduser() if config_dir else Path.home() / ".claude"
        return base / "projects"

    def project_dirs(self, project: Path) -> list[Path]:
        encoded = encode_project_dir(project)
        dirs = [self._data_dir / encoded]
        if self._policy.includes_subdirectories():
            try:
                children = sorted(self._data_dir.iterdir())
            except PermissionError as ex:
                raise UnreadableStore(f"Cannot list session store: {ex}", provider=self.name, path=self._data_dir)
            # Sub-directory folders share the prefix; belongs_to() rejects siblings like "proj-old".
            dirs.extend(d for d in children if d.is_dir() and d.name.startswith(encoded + "-"))
        return dirs

    def accepts_without_project(self, draft: SessionDraft, project: Path) -> bool:
        # A prefix-matched folder may be a sibling such as "proj-old"; only the
        # project's own folder vouches for a session with no cwd.
        return draft.source_path.parent.name == encode_project_dir(project)

    def session_files(self, project: Path) -> list[Path]:
        ensure_readable_dir(self._data_dir, self.name)
        files: list[Path] = []
        for directory in self.project_dirs(project):
            if not directory.is_dir():
                continue
            try:
                candidates = list(directory.glob("*.jsonl"))
            except PermissionError as ex:
                raise UnreadableStore(f"Cannot list sessions: {ex}", provider=self.name, path=directory)
            files.extend(path for path in candidates if self._is_main_session(path))
        return newest_first(files)

    def load_session(self, path: Path) -> SessionDraft:
        records, malformed = read_json_lines(path)
        if not records:
            raise MalformedRecord("No decodable events", provider=self.name, path=path)

        session_id = ""
        cwd: str | None = None
        messages: list[DraftMessage] = []
        for event in records:
            if not session_id and isinstance(event.get("sessionId"), str):
                session_id = event["sessionId"]
            if cwd is None and isinstance(event.get("cwd"), str):
                cwd = event["cwd"]
            if event.get("type") not in ("user", "assistant") or event.get("isMeta"):
                continue
            message = self._parse_message(event)
            if message is not None:
                messages.append(message)

        return SessionDraft(
            session_id=session_id or path.stem,
            provider=self.name,
            source_path=path,
            messages=tuple(messages),
            project_path=Path(cwd) if cwd else None,
            started_at=messages[0].timestamp if messages else None,
            updated_at=messages[-1].timestamp if messages else None,
            malformed_lines=malformed,
        )

    def _parse_message(self, event: dict) -> DraftMessage | None:
        role = event["type"]
        payload = event.get("message")
        if not isinstance(payload, dict):
            return None

        content, tool_calls = _extract_content(payload.get("content"))
        if not content:
            return None
        if role == "user":
            content = format_command_markup(content)

        return DraftMessage(
            role=role,
            content=content,
            timestamp=parse_timestamp(event.get("timestamp")),
            tool_calls=tool_calls,
            tokens=_extract_usage(payload.get("usage")),
        )

    def _is_main_session(self, path: Path) -> bool:
        if path.name.startswith("agent-"):
            return False
        try:
            for event in head_json_lines(path, _SIDECHAIN_PROBE_LINES):
                if event.get("isSidechain") is True:
                    return False
                if event.get("isSidechain") is False:
                    return True
        except OSError:
            # Unreadable files are reported by load_session during the scan.
            return True
        return True


def _extract_content(raw: Any) -> tuple[str, tuple[str, ...]]:
    if isinstance(raw, str):
        return raw, ()
    if not isinstance(raw, list):
        return "", ()
    texts: list[str] = []
    tools: list[str] = []
    for block in raw:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text" and isinstance(block.get("text"), str):
            texts.append(block["text"])
        elif block.get("type") == "tool_use" and isinstance(block.get("name"), str):
            tools.append(block["name"])
    return "\n".join(texts), tuple(tools)


def _extract_usage(raw: Any) -> TokenUsage | None:
    if not isinstance(raw, dict):
        return None
    try:
        return TokenUsage(
            input=int(raw.get("input_tokens", 0)),
            output=int(raw.get("output_tokens", 0)),
        )
    except (TypeError, ValueError):
        return None
