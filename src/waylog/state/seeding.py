from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from waylog.archive import split_frontmatter
from waylog.models import SyncEntry
from waylog.normalizer import content_hash
from waylog.paths import relative_to_project
from waylog.state.store import StateStore


def seed_from_archives(store: StateStore, history_dir: Path, project_dir: Path) -> int:
    """Rebuild ledger entries from existing archive files. Returns the number added.

    Entries already in the ledger win; archives without provider/session_id are skipped.
    """
    if not history_dir.is_dir():
        return 0

    added = 0
    for path in sorted(history_dir.glob("*.md")):
        try:
            text = path.read_text(encoding="utf-8")
            frontmatter, _ = split_frontmatter(text)
        except (OSError, UnicodeDecodeError, ValueError) as ex:
            logger.warning(f"Cannot seed ledger from {path}: {ex}")
            continue

        provider = frontmatter.get("provider")
        session_id = frontmatter.get("session_id")
        if not provider or not session_id:
            logger.warning(f"Archive {path} has no provider/session_id; not seeded")
            continue
        if store.lookup(str(provider), str(session_id)) is not None:
            continue

        synced_at = datetime.fromtimestamp(path.stat().st_mtime, UTC).isoformat(timespec="seconds")
        store.upsert(
            SyncEntry(
                provider=str(provider),
                session_id=str(session_id),
                content_hash=content_hash(text),
                synced_at=synced_at,
                file_path=relative_to_project(path, project_dir),
            )
        )
        added += 1

    if added:
        logger.info(f"Seeded {added} ledger entr{'y' if added == 1 else 'ies'} from {history_dir}")
    return added
