from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import yaml
from filelock import FileLock, Timeout
from loguru import logger

from waylog.errors import ArchiveLocked
from waylog.fs_utils import atomic_write_text
from waylog.models import Message, SessionRecord
from waylog.normalizer import HEADING_TIME_FORMAT, ROLE_MARKERS, render_archive, render_message

_LABEL_TO_ROLE = {label: role for role, (_, label) in ROLE_MARKERS.items()}
_MARKER = re.compile(r"<!-- waylog:message (\d+) length=(\d+) content=(\d+) -->\n")
_FIRST_MARKER = re.compile(r"^<!-- waylog:message \d+ length=\d+ content=\d+ -->$", re.MULTILINE)
_HEADING = re.compile(
    r"## (?:%s) (%s)(?: \((\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}) UTC\))?\n"
    % (
        "|".join(re.escape(emoji) for emoji, _ in ROLE_MARKERS.values()),
        "|".join(label for _, label in ROLE_MARKERS.values()),
    ),
)
_TOOLS_HEADER = "\n**Tools Used:**\n"
_THOUGHTS_HEADER = "\n<details>\n<summary>💭 Thoughts</summary>\n\n"
_THOUGHTS_FOOTER = "\n</details>\n"


@dataclass(frozen=True)
class ParsedMessage:
    role: str
    content: str
    sequence_no: int
    timestamp: datetime | None = None
    tool_calls: tuple[str, ...] = ()
    thoughts: tuple[str, ...] = ()


@dataclass
class ParsedArchive:
    frontmatter: dict
    title: str | None
    messages: list[ParsedMessage] = field(default_factory=list)


def split_frontmatter(text: str) -> tuple[dict, str]:
    if not text.startswith("---\n"):
        raise ValueError("Archive does not start with a frontmatter block")
    end = text.find("\n---\n", 3)
    if end == -1:
        raise ValueError("Archive frontmatter block is not terminated")
    try:
        data = yaml.safe_load(text[4:end + 1]) or {}
    except yaml.YAMLError as ex:
        raise ValueError(f"Archive frontmatter is not valid YAML: {ex}") from ex
    if not isinstance(data, dict):
        raise ValueError("Archive frontmatter is not a mapping")
    return data, text[end + len("\n---\n"):]


def parse_archive(text: str) -> ParsedArchive:
    """Inverse of ``render_archive``: recover frontmatter, title and messages.

    Messages are read marker by marker. A torn or foreign trailing block ends
    the scan; everything before it is still returned.
    """
    frontmatter, body = split_frontmatter(text)
    first = _FIRST_MARKER.search(body)

    preamble = body[: first.start()] if first else body
    title = next((line[2:] for line in preamble.splitlines() if line.startswith("# ")), None)

    messages: list[ParsedMessage] = []
    pos = first.start() if first else len(body)
    while pos < len(body):
        marker = _MARKER.match(body, pos)
        heading = _HEADING.match(body, marker.end()) if marker else None
        if heading is None:
            logger.warning(f"Unrecognized archive content at offset {pos}; stopping after {len(messages)} message(s)")
            break
        length, content_len = int(marker.group(2)), int(marker.group(3))
        block = body[heading.end(): heading.end() + length]
        if len(block) < length or content_len + 3 > length:
            logger.warning(f"Truncated archive message {marker.group(1)}; stopping after {len(messages)} message(s)")
            break
        tools, thoughts = _split_extras(block[content_len + 2: -1])
        timestamp = None
        if heading.group(2):
            timestamp = datetime.strptime(heading.group(2), HEADING_TIME_FORMAT.removesuffix(" UTC")).replace(tzinfo=UTC)
        messages.append(
            ParsedMessage(
                role=_LABEL_TO_ROLE[heading.group(1)],
                content=block[1: content_len + 1],
                sequence_no=len(messages) + 1,
                timestamp=timestamp,
                tool_calls=tools,
                thoughts=thoughts,
            )
        )
        pos = heading.end() + length
    return ParsedArchive(frontmatter=frontmatter, title=title, messages=messages)


def _split_extras(extras: str) -> tuple[tuple[str, ...], tuple[str, ...]]:
    tools: tuple[str, ...] = ()
    if extras.startswith(_TOOLS_HEADER):
        rest = extras[len(_TOOLS_HEADER):]
        end = rest.find(_THOUGHTS_HEADER)
        listing, extras = (rest, "") if end == -1 else (rest[:end], rest[end:])
        tools = tuple(line[3:-1] for line in listing.splitlines() if line.startswith("- `") and line.endswith("`"))

    thoughts: tuple[str, ...] = ()
    if extras.startswith(_THOUGHTS_HEADER) and extras.endswith(_THOUGHTS_FOOTER):
        inner = extras[len(_THOUGHTS_HEADER): -len(_THOUGHTS_FOOTER)]
        thoughts = tuple(line[2:] for line in inner.splitlines() if line.startswith("- "))
    return tools, thoughts


def read_archive(path: Path) -> ParsedArchive:
    # newline="" keeps carriage returns inside message content, so the marker
    # lengths still line up with what was written.
    with open(path, encoding="utf-8", newline="") as f:
        return parse_archive(f.read())


def read_frontmatter(path: Path) -> dict:
    return split_frontmatter(path.read_text(encoding="utf-8"))[0]


def lock_for(path: Path, lock_dir: Path, timeout: float) -> FileLock:
    lock_dir.mkdir(parents=True, exist_ok=True)
    return FileLock(str(lock_dir / f"{path.name}.lock"), timeout=timeout)


def write_archive(path: Path, text: str, *, lock_dir: Path, timeout: float = 10) -> None:
    """One-shot atomic archive write, waiting for any live writer to finish."""
    try:
        with lock_for(path, lock_dir, timeout):
            atomic_write_text(path, text)
    except Timeout as ex:
        raise ArchiveLocked("Archive is being written by another process", path=path) from ex


class ArchiveWriter:
    """Owns one archive file while a session is live.

    The header is created atomically, turns are appended and fsynced, and the
    final whole-file replace is the only step that rewrites earlier bytes.
    """

    def __init__(self, path: Path, lock_dir: Path):
        self._path = path
        self._lock = lock_for(path, lock_dir, timeout=0)
        self._written = 0

    @property
    def path(self) -> Path:
        return self._path

    def open(self, record: SessionRecord) -> None:
        try:
            self._lock.acquire()
        except Timeout as ex:
            raise ArchiveLocked(
                "Archive is owned by another recorder",
                provider=record.provider,
                session_id=record.session_id,
                path=self._path,
            ) from ex
        atomic_write_text(self._path, render_archive(record))
        self._written = len(record.messages)
        logger.debug(f"Opened archive {self._path} with {self._written} message(s)")

    def sync(self, record: SessionRecord) -> int:
        """Append the record's messages beyond those already written."""
        new_messages = record.messages[self._written:]
        if new_messages:
            self.append(new_messages)
        return len(new_messages)

    def append(self, messages: tuple[Message, ...]) -> None:
        text = "".join(render_message(m) for m in messages)
        with open(self._path, "a", encoding="utf-8", newline="\n") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        self._written += len(messages)

    def finalize(self, text: str) -> None:
        atomic_write_text(self._path, text)

    def close(self) -> None:
        if self._lock.is_locked:
            self._lock.release()
