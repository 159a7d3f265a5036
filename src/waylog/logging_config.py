import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from waylog.paths import log_path


@runtime_checkable
class LogConsumer(Protocol):
    interactive_safe: bool

    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    # Writes to the terminal, which belongs to the wrapped CLI during `run`.
    interactive_safe = False

    def register(self, level: str) -> None:
        logger.add(
            sys.stderr,
            level=level,
            format="<level>{level:<8}</level> | <level>{message}</level>",
        )

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


class FileLogConsumer:
    interactive_safe = True

    def __init__(
        self,
        path: str | None = None,
        rotation: str = "5 MB",
        retention: int = 3,
        base_dir: Path | None = None,
    ):
        base = base_dir if base_dir is not None else Path.cwd()
        resolved = log_path(base) if path is None else Path(path)
        if not resolved.is_absolute():
            resolved = base / resolved
        self._path = resolved
        self._rotation = rotation
        self._retention = retention

    def register(self, level: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(self._path),
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {process} | {name}:{function}:{line} - {message}",
            rotation=self._rotation,
            retention=self._retention,
        )

    def describe(self, level: str) -> str:
        return f"file ({self._path}, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

_DEFAULT_CONSUMERS = [
    {"type": "console", "level": "WARNING"},
    {"type": "file"},
]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
    *,
    base_dir: Path | None = None,
    interactive: bool = False,
) -> list[str]:
    """Configure logging sinks. Returns a description of each registered consumer.

    Relative file sink paths resolve against ``base_dir`` (the project root).
    With ``interactive`` set, sinks that write to the terminal are skipped.
    """
    logger.remove()

    if consumers is None:
        consumers = _DEFAULT_CONSUMERS

    descriptions: list[str] = []

    for config in consumers:
        sink_type = config.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue
        if interactive and not cls.interactive_safe:
            continue

        kwargs = {k: v for k, v in config.items() if k not in ("type", "level")}
        if cls is FileLogConsumer:
            kwargs.setdefault("base_dir", base_dir)
        sink_level = str(config.get("level", level)).upper()

        consumer = cls(**kwargs)
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
