from __future__ import annotations

import os
import tempfile
from pathlib import Path

from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential


def _on_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason} replacing file. Retrying in {wait:.2f}s (attempt {attempt}/5)...")


# Windows refuses to replace a file another process holds open (e.g. an editor
# previewing an archive); those sharing violations surface as PermissionError.
@retry(
    retry=retry_if_exception_type(PermissionError),
    wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
    stop=stop_after_attempt(5),
    before_sleep=_on_retry,
    reraise=True,
)
def _replace(source: str, target: Path) -> None:
    os.replace(source, target)


def atomic_write_text(path: Path, text: str) -> None:
    """Write text to path via a temp file in the same directory and an atomic rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        _replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise
