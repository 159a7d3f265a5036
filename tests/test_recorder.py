import asyncio
import json
import os
import signal
import sys
import unittest
from datetime import timedelta
from pathlib import Path

from tests.base import BASE_TIME, WorkspaceTestCase, claude_events
from waylog.archive import read_archive
from waylog.errors import SubprocessLaunchFailure
from waylog.paths import history_dir, state_path
from waylog.providers.claude_provider import ClaudeProvider, encode_project_dir
from waylog.recorder import exit_status
from waylog.state import StateStore
from waylog.synchronizer import Synchronizer

# Stands in for a vendor CLI: appends session events one by one, then exits.
FAKE_VENDOR = """
import json, os, sys, time
path, events, code = sys.argv[1], json.loads(sys.argv[2]), int(sys.argv[3])
os.makedirs(os.path.dirname(path), exist_ok=True)
for event in events:
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(event) + "\\n")
    time.sleep(0.15)
if code < 0:
    os.kill(os.getpid(), -code)
    time.sleep(5)
sys.exit(code)
"""


class ExitStatusTests(unittest.TestCase):
    def test_exit_status(self) -> None:
        self.assertEqual(0, exit_status(0))
        self.assertEqual(3, exit_status(3))
        self.assertEqual(130, exit_status(-2))
        self.assertEqual(143, exit_status(-15))


class RecorderTests(WorkspaceTestCase):
    def _synchronizer(self, executable: str = sys.executable) -> Synchronizer:
        provider = ClaudeProvider(data_dir=self._claude_dir, executable=executable)
        return Synchronizer(
            self._project,
            {"claude": provider},
            StateStore(state_path(self._project)),
            poll_interval=0.05,
        )

    def _run(self, session_id: str, turns, *, code: int = 0, start=BASE_TIME) -> int:
        session_file = self._claude_dir / encode_project_dir(self._project) / f"{session_id}.jsonl"
        events = claude_events(session_id, self._project, turns, start=start)
        args = ["-c", FAKE_VENDOR, str(session_file), json.dumps(events), str(code)]
        return asyncio.run(self._synchronizer().run("claude", args))

    def _archives(self) -> list[Path]:
        return sorted(history_dir(self._project).glob("*.md"))

    def test_run_records_session_and_updates_ledger(self) -> None:
        exit_code = self._run("live-1", [("user", "hello recorder"), ("assistant", "hi there"), ("user", "bye")])

        self.assertEqual(0, exit_code)
        archives = self._archives()
        self.assertEqual(1, len(archives))
        parsed = read_archive(archives[0])
        self.assertEqual(["hello recorder", "hi there", "bye"], [m.content for m in parsed.messages])
        self.assertEqual("live-1", parsed.frontmatter["session_id"])
        self.assertIn("ended_at", parsed.frontmatter)

        store = StateStore(state_path(self._project))
        store.load()
        entry = store.lookup("claude", "live-1")
        self.assertIsNotNone(entry)
        self.assertEqual(".waylog/history/" + archives[0].name, entry.file_path)

    def test_pull_after_run_is_a_no_op(self) -> None:
        self._run("live-1", [("user", "hello"), ("assistant", "hi")])

        summary = asyncio.run(self._synchronizer().pull(["claude"]))

        self.assertEqual(0, summary.imported)
        self.assertEqual(1, summary.skipped)

    def test_exit_code_is_mirrored_and_partial_transcript_kept(self) -> None:
        exit_code = self._run("crashy", [("user", "start"), ("assistant", "partial answer")], code=3)

        self.assertEqual(3, exit_code)
        parsed = read_archive(self._archives()[0])
        self.assertEqual(["start", "partial answer"], [m.content for m in parsed.messages])

    @unittest.skipIf(os.name == "nt", "POSIX signals only")
    def test_signal_death_maps_to_128_plus_signal(self) -> None:
        exit_code = self._run("killed", [("user", "about to die")], code=-signal.SIGTERM)

        self.assertEqual(128 + signal.SIGTERM, exit_code)
        self.assertEqual(1, len(self._archives()))

    def test_two_runs_yield_two_archives(self) -> None:
        self._run("first-session", [("user", "same prompt")], start=BASE_TIME)
        self._run("second-session", [("user", "same prompt")], start=BASE_TIME + timedelta(minutes=5))

        archives = self._archives()
        self.assertEqual(2, len(archives))
        ids = [read_archive(p).frontmatter["session_id"] for p in archives]
        self.assertEqual(["first-session", "second-session"], ids)

    def test_run_without_any_session_writes_nothing(self) -> None:
        exit_code = asyncio.run(self._synchronizer().run("claude", ["-c", "import sys; sys.exit(0)"]))

        self.assertEqual(0, exit_code)
        self.assertEqual([], self._archives())

    def test_launch_failure(self) -> None:
        synchronizer = self._synchronizer(executable=str(self._tmp_dir / "missing-claude-binary"))
        with self.assertRaises(SubprocessLaunchFailure):
            asyncio.run(synchronizer.run("claude", ["--version"]))


if __name__ == "__main__":
    unittest.main()
