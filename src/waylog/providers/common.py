from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterator

from loguru import logger

from waylog.attribution import AncestorPathPolicy, AttributionPolicy
from waylog.errors import MalformedRecord, UnreadableStore
from waylog.models import SessionDraft


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an RFC 3339 string or epoch number into an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 10**11 else value
        try:
            return datetime.fromtimestamp(seconds, UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def read_json_lines(path: Path) -> tuple[list[dict], int]:
    """Read a JSONL file, returning (records, malformed_line_count).

    A torn final line (vendor still writing) counts as malformed and is skipped.
    """
    records: list[dict] = []
    malformed = 0
    with open(path, encoding="utf-8", errors="replace") as f:
        for lineno, line in enumerate(f, start=1):
            stripped = line.strip()
            if not stripped:
                continue
            try:
                value = json.loads(stripped)
            except json.JSONDecodeError:
                malformed += 1
                logger.debug(f"Skipping undecodable line {lineno} in {path}")
                continue
            if not isinstance(value, dict):
                malformed += 1
                continue
            records.append(value)
    return records, malformed


def head_json_lines(path: Path, limit: int) -> Iterator[dict]:
    """Yield decodable records among the first ``limit`` non-empty lines."""
    checked = 0
    with open(path, encoding="utf-8", errors="replace") as f:
        for line in f:
            stripped = line.strip()
            if not stripped:
                continue
            if checked >= limit:
                return
            checked += 1
            try:
                value = json.loads(stripped)
            except json.JSONDecodeError:
                continue
            if isinstance(value, dict):
                yield value


def newest_first(paths: list[Path]) -> list[Path]:
    stamped: list[tuple[float, str, Path]] = []
    for path in paths:
        try:
            stamped.append((path.stat().st_mtime, path.name, path))
        except OSError:
            continue
    stamped.sort(key=lambda item: (item[0], item[1]), reverse=True)
    return [path for _, _, path in stamped]


def ensure_readable_dir(path: Path, provider: str) -> None:
    if not path.exists():
        raise UnreadableStore("Session store not found", provider=provider, path=path)
    if not path.is_dir():
        raise UnreadableStore("Session store is not a directory", provider=provider, path=path)
    if not os.access(path, os.R_OK | os.X_OK):
        raise UnreadableStore("Session store is not readable", provider=provider, path=path)


class SessionScan:
    """Restartable iteration over a project's sessions in one vendor store.

    Each ``iter()`` re-lists the store. Counters describe the most recent pass.
    ``UnreadableStore`` propagates from the listing. Any failure reading a
    single file is logged and counted as malformed so the rest of the store
    still imports.
    """

    def __init__(self, adapter: BaseProvider, project: Path):
        self._adapter = adapter
        self._project = project
        self.discovered = 0
        self.malformed = 0
        self.malformed_lines = 0
        self.unattributed = 0

    def __iter__(self) -> Iterator[SessionDraft]:
        self.discovered = 0
        self.malformed = 0
        self.malformed_lines = 0
        self.unattributed = 0
        for path in self._adapter.session_files(self._project):
            try:
                draft = self._adapter.load_session(path)
            except MalformedRecord as ex:
                self.malformed += 1
                logger.warning(f"Skipping malformed session: {ex}")
                continue
            except OSError as ex:
                self.malformed += 1
                logger.warning(f"Skipping unreadable session file {path}: {ex}")
                continue
            except Exception as ex:
                self.malformed += 1
                logger.warning(f"Skipping session file {path}: {type(ex).__name__}: {ex}")
                continue

            if draft.malformed_lines:
                self.malformed_lines += draft.malformed_lines
                logger.warning(
                    f"Skipped {draft.malformed_lines} malformed line(s) in {self._adapter.name} session "
                    f"{draft.session_id} ({path})"
                )

            if not self._adapter.belongs_to(draft, self._project):
                self.unattributed += 1
                logger.debug(f"Session {draft.session_id} not attributed to {self._project}")
                continue

            self.discovered += 1
            yield draft


class BaseProvider:
    """Shared scanning behaviour. Subclasses supply the layout and the record framing."""

    provider_name = ""
    default_executable = ""

    def __init__(
        self,
        *,
        data_dir: Path | None = None,
        executable: str | None = None,
        policy: AttributionPolicy | None = None,
    ):
        self._data_dir = data_dir if data_dir is not None else self.default_data_dir()
        self._executable = executable or self.default_executable
        self._policy = policy or AncestorPathPolicy()

    @classmethod
    def default_data_dir(cls) -> Path:
        raise NotImplementedError

    @property
    def name(self) -> str:
        return self.provider_name

    @property
    def executable(self) -> str:
        return self._executable

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    @property
    def policy(self) -> AttributionPolicy:
        return self._policy

    def is_installed(self) -> bool:
        return self._data_dir.is_dir()

    def session_files(self, project: Path) -> list[Path]:
        raise NotImplementedError

    def load_session(self, path: Path) -> SessionDraft:
        raise NotImplementedError

    def belongs_to(self, draft: SessionDraft, project: Path) -> bool:
        if draft.project_path is None:
            return self.accepts_without_project(draft, project)
        return self._policy.matches(draft.project_path, project)

    def accepts_without_project(self, draft: SessionDraft, project: Path) -> bool:
        """Whether a session that never recorded its directory was still filed under ``project``."""
        return True

    def scan(self, project: Path) -> SessionScan:
        return SessionScan(self, project)

    def find_latest(self, project: Path, since: datetime | None = None) -> Path | None:
        try:
            candidates = self.session_files(project)
        except UnreadableStore as ex:
            logger.debug(f"No latest session: {ex}")
            return None
        return first_modified_since(candidates, since)


def first_modified_since(candidates: list[Path], since: datetime | None) -> Path | None:
    for path in candidates:
        if since is None:
            return path
        try:
            modified = path.stat().st_mtime
        except OSError:
            continue
        if modified >= since.timestamp():
            return path
    return None
