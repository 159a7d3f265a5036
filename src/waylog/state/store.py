from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from filelock import FileLock, Timeout
from loguru import logger

from waylog.errors import StateCorruption, WaylogError
from waylog.fs_utils import atomic_write_text
from waylog.models import SyncEntry, ledger_key

_ENTRY_FIELDS = ("content_hash", "synced_at", "file_path")


class StateStore:
    """The sync ledger: an in-memory mapping persisted as one JSON file.

    Keys are ``"<provider>:<session_id>"``. Writes go through a temp file and
    an atomic rename, so a crash never leaves a half-written ledger.
    """

    def __init__(self, path: Path, *, lock_timeout: float = 10):
        self._path = path
        self._entries: dict[str, SyncEntry] = {}
        self._guard = threading.Lock()
        self._file_lock = FileLock(str(path.with_name(path.name + ".lock")), timeout=lock_timeout)
        self._dirty = False
        self.persisted = False

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> None:
        self._entries = {}
        self._dirty = False
        self.persisted = False
        if not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as ex:
            raise StateCorruption(f"Sync ledger is unreadable: {ex}", path=self._path) from ex

        if not isinstance(raw, dict):
            raise StateCorruption("Sync ledger is not a JSON object", path=self._path)
        for key, value in raw.items():
            provider, sep, session_id = key.partition(":")
            if not sep or not provider or not session_id:
                raise StateCorruption(f"Invalid ledger key {key!r}", path=self._path)
            if not isinstance(value, dict) or not all(isinstance(value.get(f), str) for f in _ENTRY_FIELDS):
                raise StateCorruption(f"Invalid ledger entry for {key!r}", path=self._path)
            self._entries[key] = SyncEntry(
                provider=provider,
                session_id=session_id,
                content_hash=value["content_hash"],
                synced_at=value["synced_at"],
                file_path=value["file_path"],
            )
        self.persisted = True

    def reset(self) -> None:
        with self._guard:
            self._entries = {}
            self._dirty = True

    def lookup(self, provider: str, session_id: str) -> SyncEntry | None:
        with self._guard:
            return self._entries.get(ledger_key(provider, session_id))

    def upsert(self, entry: SyncEntry) -> None:
        with self._guard:
            self._entries[entry.key] = entry
            self._dirty = True

    def enumerate(self) -> list[SyncEntry]:
        with self._guard:
            return [self._entries[key] for key in sorted(self._entries)]

    def save(self) -> None:
        with self._guard:
            payload = {
                key: {f: getattr(entry, f) for f in _ENTRY_FIELDS}
                for key, entry in sorted(self._entries.items())
            }
            atomic_write_text(self._path, json.dumps(payload, indent=2, ensure_ascii=False) + "\n")
            self._dirty = False
            self.persisted = True

    @contextmanager
    def batch(self, *, repair: bool = False) -> Iterator[StateStore]:
        """Exclusive access for a batch: lock, reload, and save on success.

        With ``repair``, a corrupt ledger is discarded instead of raising.
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._file_lock.acquire()
        except Timeout as ex:
            raise WaylogError("Sync ledger is locked by another waylog process", path=self._path) from ex
        try:
            try:
                self.load()
            except StateCorruption as ex:
                if not repair:
                    raise
                logger.warning(f"Discarding corrupt ledger: {ex}")
                self.reset()
            yield self
            if self._dirty:
                self.save()
        finally:
            self._file_lock.release()
