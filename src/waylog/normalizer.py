"""Pure conversion from vendor drafts to canonical records and archive text.

Nothing here reads the clock or the filesystem: the same draft always renders
to the same bytes, which is what makes the content hash a usable identity.
"""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime

import yaml

from waylog.models import ROLES, DraftMessage, Message, SessionDraft, SessionRecord

SCHEMA_VERSION = 2
TITLE_MAX_CHARS = 60
SLUG_MAX_CHARS = 50
UNTITLED = "Untitled Session"
HEADING_TIME_FORMAT = "%Y-%m-%d %H:%M:%S UTC"
# Every message is preceded by this line. The lengths let a reader slice the
# block back out without interpreting anything inside the message content.
MESSAGE_MARKER = "<!-- waylog:message {seq} length={length} content={content} -->"

ROLE_MARKERS = {
    "user": ("👤", "User"),
    "assistant": ("🤖", "Assistant"),
    "system": ("⚙️", "System"),
    "tool": ("🔧", "Tool"),
}


def normalize(draft: SessionDraft, *, closed: bool = True) -> SessionRecord:
    """Build the canonical record. Open (still recording) sessions get no end time."""
    ordered = _ordered(m for m in draft.messages if m.role in ROLES and m.content.rstrip())
    messages = tuple(
        Message(
            role=m.role,
            content=m.content.rstrip(),
            sequence_no=seq,
            timestamp=m.timestamp,
            tool_calls=m.tool_calls,
            thoughts=m.thoughts,
        )
        for seq, m in enumerate(ordered, start=1)
    )

    started_at = draft.started_at or next((m.timestamp for m in messages if m.timestamp), None)
    ended_at = None
    if closed:
        ended_at = draft.updated_at or next((m.timestamp for m in reversed(messages) if m.timestamp), None)

    total_tokens = sum(m.tokens.input + m.tokens.output for m in ordered if m.tokens is not None)
    return SessionRecord(
        session_id=draft.session_id,
        provider=draft.provider,
        project_path=draft.project_path,
        started_at=started_at,
        ended_at=ended_at,
        messages=messages,
        title=derive_title(messages),
        total_tokens=total_tokens,
        tags=("ai-session", draft.provider),
    )


def _ordered(messages) -> list[DraftMessage]:
    # Stable sort by timestamp; an undated message stays after the last dated one before it.
    keyed = []
    last_seen: datetime | None = None
    for index, message in enumerate(messages):
        if message.timestamp is not None:
            last_seen = message.timestamp
        keyed.append((last_seen, index, message))
    keyed.sort(key=lambda item: (item[0] is not None, item[0] or datetime.min.replace(tzinfo=UTC), item[1]))
    return [message for _, _, message in keyed]


def derive_title(messages: tuple[Message, ...]) -> str:
    first_user = next((m for m in messages if m.role == "user"), None)
    if first_user is None:
        return UNTITLED
    first_line = first_user.content.strip().splitlines()[0] if first_user.content.strip() else ""
    if not first_line:
        return UNTITLED
    if len(first_line) > TITLE_MAX_CHARS:
        return first_line[:TITLE_MAX_CHARS] + "..."
    return first_line


def slugify(text: str) -> str:
    chars = [c.lower() if c.isalnum() else "-" for c in text[:SLUG_MAX_CHARS]]
    slug = "-".join(part for part in "".join(chars).split("-") if part)
    return slug or "new-chat"


def archive_filename(record: SessionRecord) -> str:
    first_user = next((m for m in record.messages if m.role == "user"), None)
    slug = slugify(first_user.content) if first_user else slugify(record.session_id)
    stamp = record.started_at.astimezone(UTC).strftime("%Y-%m-%d_%H-%M-%SZ") if record.started_at else "undated"
    return f"{stamp}-{record.provider}-{slug}.md"


def format_iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="seconds")


def frontmatter_fields(record: SessionRecord) -> dict:
    fields: dict = {"provider": record.provider, "session_id": record.session_id}
    if record.project_path is not None:
        fields["project"] = record.project_path.as_posix()
    if record.started_at is not None:
        fields["started_at"] = format_iso(record.started_at)
    if record.ended_at is not None:
        fields["ended_at"] = format_iso(record.ended_at)
    fields["message_count"] = len(record.messages)
    if record.total_tokens > 0:
        fields["total_tokens"] = record.total_tokens
    fields["tags"] = list(record.tags)
    fields["schema_version"] = SCHEMA_VERSION
    return fields


def render_frontmatter(record: SessionRecord) -> str:
    body = yaml.safe_dump(
        frontmatter_fields(record),
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        width=4096,
    )
    return f"---\n{body}---\n"


def render_header(record: SessionRecord) -> str:
    return f"{render_frontmatter(record)}\n# {record.title}\n\n"


def render_message(message: Message) -> str:
    emoji, label = ROLE_MARKERS[message.role]
    heading = f"## {emoji} {label}"
    if message.timestamp is not None:
        heading += f" ({message.timestamp.astimezone(UTC).strftime(HEADING_TIME_FORMAT)})"

    parts = ["\n", message.content, "\n"]
    if message.tool_calls:
        parts.append("\n**Tools Used:**\n")
        parts.extend(f"- `{tool}`\n" for tool in message.tool_calls)
    if message.thoughts:
        parts.append("\n<details>\n<summary>💭 Thoughts</summary>\n\n")
        parts.extend(f"- {thought}\n" for thought in message.thoughts)
        parts.append("\n</details>\n")
    parts.append("\n")
    block = "".join(parts)
    marker = MESSAGE_MARKER.format(seq=message.sequence_no, length=len(block), content=len(message.content))
    return f"{marker}\n{heading}\n{block}"


def render_archive(record: SessionRecord) -> str:
    return render_header(record) + "".join(render_message(m) for m in record.messages)


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
