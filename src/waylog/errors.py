from __future__ import annotations

from pathlib import Path


class WaylogError(Exception):
    """Base error. Carries enough context (provider, session, path) for manual recovery."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        session_id: str | None = None,
        path: Path | str | None = None,
    ):
        self.provider = provider
        self.session_id = session_id
        self.path = Path(path) if path is not None else None
        super().__init__(self._with_context(message))

    def _with_context(self, message: str) -> str:
        context = []
        if self.provider:
            context.append(f"provider={self.provider}")
        if self.session_id:
            context.append(f"session={self.session_id}")
        if self.path is not None:
            context.append(f"path={self.path}")
        if not context:
            return message
        return f"{message} ({', '.join(context)})"


class UnknownProvider(WaylogError):
    pass


class UnreadableStore(WaylogError):
    """A vendor session store is missing or not accessible. Recoverable per provider."""


class MalformedRecord(WaylogError):
    """A vendor session file (or a line within it) could not be decoded. Skipped and counted."""


class SubprocessLaunchFailure(WaylogError):
    pass


class PartialTranscript(WaylogError):
    """The wrapped process ended before a clean finish. The flushed transcript is kept."""


class StateCorruption(WaylogError):
    pass


class ArchiveLocked(WaylogError):
    """Another writer currently owns the archive file."""
