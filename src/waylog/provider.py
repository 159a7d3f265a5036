from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from waylog.attribution import AttributionPolicy, AncestorPathPolicy
from waylog.errors import UnknownProvider
from waylog.models import SessionDraft

if TYPE_CHECKING:
    from waylog.providers.common import SessionScan

SUPPORTED_PROVIDERS = ("claude", "codex", "gemini")


@runtime_checkable
class ProviderAdapter(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def executable(self) -> str: ...

    @property
    def data_dir(self) -> Path: ...

    def is_installed(self) -> bool:
        """True when the vendor's session store exists on this machine."""
        ...

    def session_files(self, project: Path) -> list[Path]:
        """Session files attributed to project, newest first. Raises UnreadableStore."""
        ...

    def load_session(self, path: Path) -> SessionDraft:
        """Parse one session file. Raises MalformedRecord when nothing usable is found."""
        ...

    def scan(self, project: Path) -> SessionScan:
        """Lazy, restartable iteration over the project's session drafts."""
        ...

    def find_latest(self, project: Path, since: datetime | None = None) -> Path | None:
        """The most recently modified session file for project, optionally modified after since."""
        ...


def create_provider(
    provider_name: str,
    *,
    data_dir: Path | None = None,
    executable: str | None = None,
    policy: AttributionPolicy | None = None,
) -> ProviderAdapter:
    """Factory: create a ProviderAdapter by name."""
    name = provider_name.strip().lower()
    policy = policy or AncestorPathPolicy()
    if name == "claude":
        from waylog.providers.claude_provider import ClaudeProvider
        return ClaudeProvider(data_dir=data_dir, executable=executable, policy=policy)
    if name == "codex":
        from waylog.providers.codex_provider import CodexProvider
        return CodexProvider(data_dir=data_dir, executable=executable, policy=policy)
    if name == "gemini":
        from waylog.providers.gemini_provider import GeminiProvider
        return GeminiProvider(data_dir=data_dir, executable=executable, policy=policy)
    raise UnknownProvider(
        f"Unknown provider: {provider_name!r}. Supported: {', '.join(repr(p) for p in SUPPORTED_PROVIDERS)}"
    )
