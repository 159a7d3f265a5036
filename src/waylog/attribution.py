"""Project attribution policies.

Vendor stores do not always file sessions per project. These policies decide
whether a session recorded with a given working directory belongs to the
project being synced.
"""

from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import Protocol, runtime_checkable


def normalize_path(value: Path | str) -> PurePosixPath:
    text = str(value).replace("\\", "/")
    if len(text) > 1:
        text = text.rstrip("/") or "/"
    return PurePosixPath(text)


@runtime_checkable
class AttributionPolicy(Protocol):
    name: str

    def matches(self, session_cwd: Path | str, project: Path | str) -> bool: ...

    def includes_subdirectories(self) -> bool: ...


class ExactPathPolicy:
    name = "exact"

    def matches(self, session_cwd: Path | str, project: Path | str) -> bool:
        return normalize_path(session_cwd) == normalize_path(project)

    def includes_subdirectories(self) -> bool:
        return False


class AncestorPathPolicy(ExactPathPolicy):
    """Exact match, or the session ran somewhere below the project root."""

    name = "ancestor"

    def matches(self, session_cwd: Path | str, project: Path | str) -> bool:
        if super().matches(session_cwd, project):
            return True
        cwd = normalize_path(session_cwd)
        root = normalize_path(project)
        # The filesystem root is never an ancestor worth attributing to.
        if len(root.parts) <= 1:
            return False
        return root in cwd.parents

    def includes_subdirectories(self) -> bool:
        return True


class FuzzyPathPolicy(AncestorPathPolicy):
    """Ancestor match, falling back to comparing trailing path components.

    Covers stores that record the same directory from another OS view, for
    example ``C:\\Users\\me\\proj`` against ``/mnt/c/Users/me/proj``.
    """

    name = "fuzzy"

    def __init__(self, min_components: int = 2):
        self._min_components = max(1, min_components)

    def matches(self, session_cwd: Path | str, project: Path | str) -> bool:
        if super().matches(session_cwd, project):
            return True
        cwd_parts = [p.lower() for p in normalize_path(session_cwd).parts if p not in ("/", "")]
        project_parts = [p.lower() for p in normalize_path(project).parts if p not in ("/", "")]
        n = self._min_components
        if len(cwd_parts) < n or len(project_parts) < n:
            return False
        tail = project_parts[-n:]
        for end in range(n, len(cwd_parts) + 1):
            if cwd_parts[end - n:end] == tail:
                return True
        return False


_POLICIES: dict[str, type] = {
    "exact": ExactPathPolicy,
    "ancestor": AncestorPathPolicy,
    "fuzzy": FuzzyPathPolicy,
}


def create_policy(name: str) -> AttributionPolicy:
    """Factory: create an AttributionPolicy by name."""
    key = name.strip().lower()
    cls = _POLICIES.get(key)
    if cls is None:
        raise ValueError(f"Unknown attribution policy: {name!r}. Supported: {', '.join(sorted(_POLICIES))}")
    return cls()
