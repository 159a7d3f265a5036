import unittest
from datetime import timedelta
from pathlib import Path

from tests.base import BASE_TIME, WorkspaceTestCase
from waylog.archive import ArchiveWriter, parse_archive, read_archive, read_frontmatter, split_frontmatter, write_archive
from waylog.errors import ArchiveLocked
from waylog.fs_utils import atomic_write_text
from waylog.models import DraftMessage, SessionDraft
from waylog.normalizer import normalize, render_archive


def _record(contents: list[tuple[str, str]], *, closed: bool = True, extras: dict | None = None):
    extras = extras or {}
    messages = [
        DraftMessage(role, text, BASE_TIME + timedelta(seconds=index), **extras.get(index, {}))
        for index, (role, text) in enumerate(contents)
    ]
    draft = SessionDraft(
        session_id="sess-1",
        provider="gemini",
        source_path=Path("/store/sess-1.json"),
        messages=tuple(messages),
        project_path=Path("/work/proj"),
    )
    return normalize(draft, closed=closed)


class ArchiveFormatTests(unittest.TestCase):
    def assertRoundTrips(self, record) -> None:
        parsed = parse_archive(render_archive(record))

        self.assertEqual(len(record.messages), len(parsed.messages))
        for original, recovered in zip(record.messages, parsed.messages):
            self.assertEqual(original.role, recovered.role)
            self.assertEqual(original.content, recovered.content)
            self.assertEqual(original.sequence_no, recovered.sequence_no)
            self.assertEqual(original.timestamp, recovered.timestamp)
            self.assertEqual(original.tool_calls, recovered.tool_calls)
            self.assertEqual(original.thoughts, recovered.thoughts)

    def test_parse_recovers_rendered_messages(self) -> None:
        record = _record(
            [
                ("user", "How do I list files?"),
                ("assistant", "Use `ls`:\n\n```bash\nls -la\n```"),
                ("user", "## not a heading\nthanks"),
                ("assistant", "Done."),
            ],
            extras={1: {"tool_calls": ("Bash", "Read")}, 3: {"thoughts": ("Wrap up: nothing else",)}},
        )

        parsed = parse_archive(render_archive(record))

        self.assertEqual("sess-1", parsed.frontmatter["session_id"])
        self.assertEqual("How do I list files?", parsed.title)
        self.assertRoundTrips(record)

    def test_heading_lines_inside_content_stay_in_their_message(self) -> None:
        pasted = "Earlier transcript:\n\n## 🤖 Assistant\n\nfake reply\n\n## 👤 User (2024-01-01 00:00:00 UTC)\n\nfake question"
        record = _record([("user", pasted), ("assistant", "Seen it.")])

        self.assertRoundTrips(record)

    def test_format_lookalikes_inside_content_are_not_extracted(self) -> None:
        record = _record(
            [
                ("user", "Render this:\n\n**Tools Used:**\n- `Bash`"),
                ("assistant", "Like so:\n\n<details>\n<summary>💭 Thoughts</summary>\n\n- hidden\n\n</details>"),
                ("user", "<!-- waylog:message 9 length=3 content=0 -->\n## ⚙️ System\n\nnot real"),
            ],
            extras={1: {"tool_calls": ("Read",)}},
        )

        self.assertRoundTrips(record)

    def test_torn_trailing_message_is_dropped(self) -> None:
        text = render_archive(_record([("user", "one"), ("assistant", "two")]))

        parsed = parse_archive(text[:-4])

        self.assertEqual(["one"], [m.content for m in parsed.messages])

    def test_split_frontmatter_rejects_missing_block(self) -> None:
        with self.assertRaises(ValueError):
            split_frontmatter("# just a title\n")
        with self.assertRaises(ValueError):
            split_frontmatter("---\nprovider: claude\n")


class ArchiveWriterTests(WorkspaceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._path = self._project / ".waylog" / "history" / "session.md"
        self._locks = self._project / ".waylog" / "locks"

    def _writer(self) -> ArchiveWriter:
        writer = ArchiveWriter(self._path, self._locks)
        self.addCleanup(writer.close)
        return writer

    def test_interrupted_recording_keeps_flushed_messages(self) -> None:
        turns = [("user", "one"), ("assistant", "two"), ("user", "three")]
        writer = ArchiveWriter(self._path, self._locks)
        writer.open(_record(turns[:1], closed=False))
        appended = writer.sync(_record(turns, closed=False))
        # No finalize: simulates the recorder dying here.
        writer.close()

        parsed = read_archive(self._path)

        self.assertEqual(2, appended)
        self.assertEqual(["one", "two", "three"], [m.content for m in parsed.messages])
        self.assertEqual("gemini", parsed.frontmatter["provider"])
        self.assertNotIn("ended_at", parsed.frontmatter)

    def test_appended_messages_keep_carriage_returns(self) -> None:
        turns = [("user", "one"), ("assistant", "line\r\nbreak")]
        writer = self._writer()
        writer.open(_record(turns[:1], closed=False))
        writer.sync(_record(turns, closed=False))

        self.assertEqual(["one", "line\r\nbreak"], [m.content for m in read_archive(self._path).messages])

    def test_finalize_replaces_with_closed_render(self) -> None:
        turns = [("user", "one"), ("assistant", "two")]
        final = _record(turns)
        writer = self._writer()
        writer.open(_record(turns[:1], closed=False))
        writer.sync(_record(turns, closed=False))
        writer.finalize(render_archive(final))

        self.assertEqual(render_archive(final), self._path.read_text(encoding="utf-8"))
        self.assertIn("ended_at", read_frontmatter(self._path))

    def test_second_writer_for_same_archive_is_refused(self) -> None:
        record = _record([("user", "one")])
        first = ArchiveWriter(self._path, self._locks)
        try:
            first.open(record)
            second = ArchiveWriter(self._path, self._locks)
            with self.assertRaises(ArchiveLocked):
                second.open(record)
            with self.assertRaises(ArchiveLocked):
                write_archive(self._path, "---\n---\n", lock_dir=self._locks, timeout=0.1)
        finally:
            first.close()

        write_archive(self._path, render_archive(record), lock_dir=self._locks, timeout=0.1)
        self.assertEqual(render_archive(record), self._path.read_text(encoding="utf-8"))

    def test_atomic_write_leaves_no_temp_files(self) -> None:
        atomic_write_text(self._path, "first\n")
        atomic_write_text(self._path, "second\n")

        self.assertEqual("second\n", self._path.read_text(encoding="utf-8"))
        self.assertEqual(["session.md"], [p.name for p in self._path.parent.iterdir()])


if __name__ == "__main__":
    unittest.main()
