import json
import unittest

from tests.base import WorkspaceTestCase
from waylog.errors import StateCorruption
from waylog.models import SyncEntry
from waylog.paths import state_path
from waylog.state import StateStore


def _entry(session_id: str, digest: str = "h1") -> SyncEntry:
    return SyncEntry(
        provider="claude",
        session_id=session_id,
        content_hash=digest,
        synced_at="2025-03-14T09:30:00+00:00",
        file_path=f".waylog/history/{session_id}.md",
    )


class StateStoreTests(WorkspaceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._path = state_path(self._project)

    def test_missing_ledger_loads_empty(self) -> None:
        store = StateStore(self._path)
        store.load()

        self.assertEqual([], store.enumerate())
        self.assertFalse(store.persisted)

    def test_save_and_reload(self) -> None:
        store = StateStore(self._path)
        store.upsert(_entry("b"))
        store.upsert(_entry("a"))
        store.upsert(_entry("a", digest="h2"))
        store.save()

        reloaded = StateStore(self._path)
        reloaded.load()

        self.assertTrue(reloaded.persisted)
        self.assertEqual(["a", "b"], [e.session_id for e in reloaded.enumerate()])
        self.assertEqual("h2", reloaded.lookup("claude", "a").content_hash)
        self.assertIsNone(reloaded.lookup("codex", "a"))
        raw = json.loads(self._path.read_text(encoding="utf-8"))
        self.assertEqual({"content_hash", "synced_at", "file_path"}, set(raw["claude:a"]))

    def test_session_ids_containing_colons_survive(self) -> None:
        store = StateStore(self._path)
        store.upsert(_entry("2025:weird:id"))
        store.save()

        reloaded = StateStore(self._path)
        reloaded.load()

        self.assertIsNotNone(reloaded.lookup("claude", "2025:weird:id"))

    def test_corrupt_ledger_is_reported(self) -> None:
        self._path.parent.mkdir(parents=True)
        for payload in ("{not json", "[1, 2]", '{"no-separator": {}}', '{"claude:x": {"content_hash": 1}}'):
            self._path.write_text(payload, encoding="utf-8")
            with self.assertRaises(StateCorruption) as ctx:
                StateStore(self._path).load()
            self.assertIn(str(self._path), str(ctx.exception))

    def test_batch_saves_on_success_only(self) -> None:
        store = StateStore(self._path)
        with store.batch() as batch:
            batch.upsert(_entry("kept"))
        self.assertTrue(self._path.exists())

        with self.assertRaises(RuntimeError):
            with store.batch() as batch:
                batch.upsert(_entry("dropped"))
                raise RuntimeError("boom")

        reloaded = StateStore(self._path)
        reloaded.load()
        self.assertEqual(["kept"], [e.session_id for e in reloaded.enumerate()])

    def test_batch_refuses_corrupt_ledger_unless_repairing(self) -> None:
        self._path.parent.mkdir(parents=True)
        self._path.write_text("{oops", encoding="utf-8")
        store = StateStore(self._path)

        with self.assertRaises(StateCorruption):
            with store.batch():
                pass
        self.assertEqual("{oops", self._path.read_text(encoding="utf-8"))

        with store.batch(repair=True) as batch:
            batch.upsert(_entry("fresh"))

        reloaded = StateStore(self._path)
        reloaded.load()
        self.assertEqual(["fresh"], [e.session_id for e in reloaded.enumerate()])


if __name__ == "__main__":
    unittest.main()
