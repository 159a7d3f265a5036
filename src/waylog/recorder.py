from __future__ import annotations

import asyncio
import signal
import sys
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable

from loguru import logger

from waylog.archive import ArchiveWriter
from waylog.errors import ArchiveLocked, PartialTranscript, SubprocessLaunchFailure, WaylogError
from waylog.models import SessionRecord
from waylog.normalizer import content_hash, normalize, render_archive
from waylog.provider import ProviderAdapter


@dataclass
class RecordingResult:
    exit_code: int
    record: SessionRecord | None = None
    archive_path: Path | None = None
    content_hash: str | None = None
    partial: bool = False


def exit_status(returncode: int) -> int:
    """Shell convention: a child killed by signal N exits 128+N."""
    if returncode < 0:
        return 128 - returncode
    return returncode


class TranscriptRecorder:
    """Runs a vendor CLI untouched while following its session log into an archive.

    The child inherits the terminal, environment and arguments. A poller reads
    the vendor's own session file for this project and appends each completed
    turn to the archive; the process wait and the poller are both awaited
    before the recording is finalized.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        project_dir: Path,
        *,
        lock_dir: Path,
        resolve_path: Callable[[SessionRecord], Path],
        poll_interval: float = 2.0,
    ):
        self._adapter = adapter
        self._project_dir = project_dir
        self._lock_dir = lock_dir
        self._resolve_path = resolve_path
        self._poll_interval = max(0.05, poll_interval)
        self._stop = asyncio.Event()
        self._source: Path | None = None
        self._baseline: tuple[Path, float] | None = None
        self._writer: ArchiveWriter | None = None
        self._capture_disabled = False
        self._forwarded: list[signal.Signals] = []

    async def record(self, args: list[str]) -> RecordingResult:
        self._baseline = self._snapshot_latest()
        launched_at = datetime.now(UTC)
        try:
            proc = await asyncio.create_subprocess_exec(self._adapter.executable, *args)
        except OSError as ex:
            raise SubprocessLaunchFailure(
                f"Cannot launch {self._adapter.executable!r}: {ex}", provider=self._adapter.name
            ) from ex
        logger.info(f"Launched {self._adapter.executable} (pid {proc.pid}) with {len(args)} argument(s)")

        self._install_signal_forwarding(proc)
        poller = asyncio.create_task(self._follow(launched_at))
        try:
            returncode = await proc.wait()
        finally:
            self._remove_signal_forwarding()
            self._stop.set()
            await poller

        exit_code = exit_status(returncode)
        result = RecordingResult(exit_code=exit_code, partial=returncode != 0)
        try:
            await self._finalize(launched_at, result)
        finally:
            if self._writer is not None:
                self._writer.close()
        return result

    async def _follow(self, since: datetime) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
            if self._stop.is_set():
                return
            try:
                await asyncio.to_thread(self._capture, since, False)
            except (WaylogError, OSError) as ex:
                logger.warning(f"Transcript poll failed: {ex}")

    async def _finalize(self, since: datetime, result: RecordingResult) -> None:
        try:
            record = await asyncio.to_thread(self._capture, since, True)
        except (WaylogError, OSError) as ex:
            logger.warning(f"Final transcript capture failed, keeping flushed messages: {ex}")
            return

        if record is None or self._writer is None:
            logger.info(f"No {self._adapter.name} session was captured for {self._project_dir}")
            return

        text = render_archive(record)
        self._writer.finalize(text)
        result.record = record
        result.archive_path = self._writer.path
        result.content_hash = content_hash(text)

        if result.partial:
            logger.warning(
                str(
                    PartialTranscript(
                        f"Process exited with status {result.exit_code}; archived {len(record.messages)} message(s)",
                        provider=record.provider,
                        session_id=record.session_id,
                        path=self._writer.path,
                    )
                )
            )
        else:
            logger.info(f"Archived {len(record.messages)} message(s) to {self._writer.path}")

    def _capture(self, since: datetime, closed: bool) -> SessionRecord | None:
        if self._capture_disabled:
            return None
        source = self._source or self._pick_source(since)
        if source is None:
            return None
        self._source = source

        record = normalize(self._adapter.load_session(source), closed=closed)
        if not record.messages:
            return None

        if self._writer is None:
            writer = ArchiveWriter(self._resolve_path(record), self._lock_dir)
            try:
                writer.open(record)
            except ArchiveLocked as ex:
                self._capture_disabled = True
                logger.error(f"Not recording: {ex}")
                return None
            self._writer = writer
            logger.info(f"Recording {record.provider} session {record.session_id} to {writer.path}")
        else:
            appended = self._writer.sync(record)
            if appended:
                logger.debug(f"Appended {appended} message(s) to {self._writer.path}")
        return record

    def _pick_source(self, since: datetime) -> Path | None:
        latest = self._adapter.find_latest(self._project_dir, since=since)
        if latest is None:
            return None
        if self._baseline is not None and latest == self._baseline[0]:
            try:
                if latest.stat().st_mtime <= self._baseline[1]:
                    return None
            except OSError:
                return None
        return latest

    def _snapshot_latest(self) -> tuple[Path, float] | None:
        latest = self._adapter.find_latest(self._project_dir)
        if latest is None:
            return None
        try:
            return latest, latest.stat().st_mtime
        except OSError:
            return None

    def _install_signal_forwarding(self, proc: asyncio.subprocess.Process) -> None:
        loop = asyncio.get_running_loop()
        forwarded = [signal.SIGTERM]
        if hasattr(signal, "SIGHUP"):
            forwarded.append(signal.SIGHUP)
        try:
            if sys.stdin.isatty():
                # The terminal delivers Ctrl-C to the child's process group itself.
                loop.add_signal_handler(signal.SIGINT, lambda: None)
                self._forwarded.append(signal.SIGINT)
            else:
                forwarded.append(signal.SIGINT)
            for sig in forwarded:
                loop.add_signal_handler(sig, self._forward, proc, sig)
                self._forwarded.append(sig)
        except (NotImplementedError, RuntimeError):
            # No loop signal handlers on Windows; the console delivers signals to both processes.
            logger.debug("Signal forwarding unavailable on this platform")

    def _remove_signal_forwarding(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._forwarded:
            loop.remove_signal_handler(sig)
        self._forwarded = []

    @staticmethod
    def _forward(proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass
