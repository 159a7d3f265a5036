from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from loguru import logger

from waylog.archive import read_frontmatter, write_archive
from waylog.errors import StateCorruption, UnknownProvider, UnreadableStore, WaylogError
from waylog.models import SessionDraft, SessionRecord, SyncEntry
from waylog.normalizer import archive_filename, content_hash, normalize, render_archive
from waylog.paths import history_dir, lock_dir, relative_to_project, resolve_in_project
from waylog.provider import ProviderAdapter
from waylog.recorder import TranscriptRecorder
from waylog.state import StateStore, seed_from_archives


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


class SyncStatus(str, Enum):
    IMPORTED = "imported"
    UP_TO_DATE = "up_to_date"
    EMPTY = "empty"


@dataclass
class ProviderResult:
    provider: str
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    malformed: int = 0
    malformed_lines: int = 0
    unattributed: int = 0
    not_installed: bool = False
    error: str | None = None


@dataclass
class PullSummary:
    results: list[ProviderResult] = field(default_factory=list)
    seeded: int = 0

    @property
    def imported(self) -> int:
        return sum(r.imported for r in self.results)

    @property
    def skipped(self) -> int:
        return sum(r.skipped for r in self.results)

    @property
    def failed(self) -> int:
        return sum(r.failed for r in self.results)

    @property
    def ok(self) -> bool:
        return all(r.error is None for r in self.results)


class Synchronizer:
    """Drives ``run`` (live capture) and ``pull`` (bulk import) for one project."""

    def __init__(
        self,
        project_dir: Path,
        providers: dict[str, ProviderAdapter],
        store: StateStore,
        *,
        poll_interval: float = 2.0,
        lock_timeout: float = 10,
    ):
        self._project_dir = project_dir
        self._providers = providers
        self._store = store
        self._poll_interval = poll_interval
        self._lock_timeout = lock_timeout
        self._history_dir = history_dir(project_dir)
        self._lock_dir = lock_dir(project_dir)

    @property
    def provider_names(self) -> list[str]:
        return list(self._providers)

    def provider(self, name: str) -> ProviderAdapter:
        adapter = self._providers.get(name.strip().lower())
        if adapter is None:
            raise UnknownProvider(f"Unknown provider: {name!r}. Supported: {', '.join(self._providers)}")
        return adapter

    # --- pull -----------------------------------------------------------------

    async def pull(
        self,
        provider_names: list[str] | None = None,
        *,
        force: bool = False,
        repair_state: bool = False,
    ) -> PullSummary:
        explicit = provider_names is not None
        adapters = [self.provider(n) for n in (provider_names or self.provider_names)]
        summary = PullSummary()

        with self._store.batch(repair=repair_state) as store:
            if not store.persisted:
                summary.seeded = seed_from_archives(store, self._history_dir, self._project_dir)
            results = await asyncio.gather(
                *(asyncio.to_thread(self._pull_provider, adapter, force, explicit) for adapter in adapters)
            )
        summary.results = list(results)
        return summary

    def _pull_provider(self, adapter: ProviderAdapter, force: bool, explicit: bool) -> ProviderResult:
        result = ProviderResult(provider=adapter.name)
        if not explicit and not adapter.is_installed():
            logger.debug(f"Skipping {adapter.name}: no session store at {adapter.data_dir}")
            result.not_installed = True
            return result

        scan = adapter.scan(self._project_dir)
        try:
            for draft in scan:
                try:
                    status = self.sync_session(draft, force=force)
                except (WaylogError, OSError) as ex:
                    result.failed += 1
                    logger.error(f"Failed to sync {draft.provider} session {draft.session_id} ({draft.source_path}): {ex}")
                    continue
                except Exception as ex:
                    result.failed += 1
                    logger.error(
                        f"Failed to sync {draft.provider} session {draft.session_id} ({draft.source_path}): "
                        f"{type(ex).__name__}: {ex}"
                    )
                    continue
                if status is SyncStatus.IMPORTED:
                    result.imported += 1
                else:
                    result.skipped += 1
        except UnreadableStore as ex:
            result.error = str(ex)
            logger.error(f"Cannot scan {adapter.name}: {ex}")
        except Exception as ex:
            result.error = f"{type(ex).__name__}: {ex}"
            logger.error(f"Scan of {adapter.name} aborted: {result.error}")
        result.malformed = scan.malformed
        result.malformed_lines = scan.malformed_lines
        result.unattributed = scan.unattributed
        logger.info(
            f"{adapter.name}: imported={result.imported} skipped={result.skipped} "
            f"failed={result.failed} malformed={result.malformed}"
        )
        return result

    def sync_session(self, draft: SessionDraft, *, force: bool = False) -> SyncStatus:
        record = normalize(draft)
        if not record.messages:
            return SyncStatus.EMPTY

        text = render_archive(record)
        digest = content_hash(text)
        entry = self._store.lookup(record.provider, record.session_id)
        target = self.archive_path_for(record)

        if entry is not None and not force and entry.content_hash == digest and target.exists():
            return SyncStatus.UP_TO_DATE

        write_archive(target, text, lock_dir=self._lock_dir, timeout=self._lock_timeout)
        self._record_sync(record, digest, target)
        logger.debug(f"Wrote {len(record.messages)} message(s) to {target}")
        return SyncStatus.IMPORTED

    def archive_path_for(self, record: SessionRecord) -> Path:
        """The ledger's path for a known session, else a fresh deterministic filename."""
        entry = self._store.lookup(record.provider, record.session_id)
        if entry is not None:
            return resolve_in_project(entry.file_path, self._project_dir)

        target = self._history_dir / archive_filename(record)
        if target.exists() and not self._owned_by(target, record):
            target = target.with_name(f"{target.stem}-{record.session_id[:8]}{target.suffix}")
        return target

    def _owned_by(self, path: Path, record: SessionRecord) -> bool:
        try:
            frontmatter = read_frontmatter(path)
        except (OSError, UnicodeDecodeError, ValueError):
            return False
        return (
            str(frontmatter.get("provider")) == record.provider
            and str(frontmatter.get("session_id")) == record.session_id
        )

    def _record_sync(self, record: SessionRecord, digest: str, target: Path) -> None:
        self._store.upsert(
            SyncEntry(
                provider=record.provider,
                session_id=record.session_id,
                content_hash=digest,
                synced_at=utc_now(),
                file_path=relative_to_project(target, self._project_dir),
            )
        )

    # --- run ------------------------------------------------------------------

    async def run(self, provider_name: str, args: list[str]) -> int:
        adapter = self.provider(provider_name)
        try:
            self._store.load()
        except StateCorruption as ex:
            logger.warning(f"Ignoring corrupt ledger while recording: {ex}")

        recorder = TranscriptRecorder(
            adapter,
            self._project_dir,
            lock_dir=self._lock_dir,
            resolve_path=self.archive_path_for,
            poll_interval=self._poll_interval,
        )
        result = await recorder.record(args)

        if result.record is not None and result.archive_path is not None and result.content_hash:
            try:
                with self._store.batch() as store:
                    store.upsert(
                        SyncEntry(
                            provider=result.record.provider,
                            session_id=result.record.session_id,
                            content_hash=result.content_hash,
                            synced_at=utc_now(),
                            file_path=relative_to_project(result.archive_path, self._project_dir),
                        )
                    )
            except WaylogError as ex:
                logger.error(f"Archive written but ledger not updated: {ex}")
        return result.exit_code
