"""Output sinks: where captured bytes go."""

from __future__ import annotations

import os
import secrets
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from types import TracebackType
from typing import BinaryIO, Self

from loguru import logger

from rlexec.errors import SinkOpenError, SinkWriteError

STDOUT_NAMES = frozenset({"", "-"})
STAGING_ATTEMPTS = 100


class OutputSink(ABC):
    """Writable destination that is finalised exactly once."""

    name: str = "sink"

    def __init__(self, handle: BinaryIO, *, buffered: bool) -> None:
        self._handle = handle
        self.buffered = buffered
        self._finalized = False
        self.bytes_written = 0

    @property
    def finalized(self) -> bool:
        return self._finalized

    def write(self, data: bytes) -> None:
        if self._finalized:
            raise SinkWriteError(f"{self.name} is already finalized")
        try:
            self._handle.write(data)
            if not self.buffered:
                self._handle.flush()
        except OSError as exc:
            raise SinkWriteError(f"cannot write to {self.name}: {exc}") from exc
        self.bytes_written += len(data)

    def finalize(self, *, success: bool) -> None:
        """Commit or discard the output. Later calls are no-ops."""
        if self._finalized:
            return
        self._finalized = True
        self._finish(success)

    @abstractmethod
    def _finish(self, success: bool) -> None: ...

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.finalize(success=exc_type is None)


class StdoutSink(OutputSink):
    """The process's own standard output."""

    name = "<stdout>"

    def __init__(self, *, buffered: bool) -> None:
        super().__init__(sys.stdout.buffer, buffered=buffered)

    def _finish(self, success: bool) -> None:
        self._handle.flush()


class FileSink(OutputSink):
    """Writes straight to the destination; partial output is kept."""

    def __init__(self, path: Path, *, buffered: bool) -> None:
        try:
            handle = path.open("wb")
        except OSError as exc:
            raise SinkOpenError(f"cannot open {path}: {exc}") from exc
        super().__init__(handle, buffered=buffered)
        self.path = path
        self.name = str(path)

    def _finish(self, success: bool) -> None:
        try:
            self._handle.close()
        except OSError as exc:
            raise SinkWriteError(f"cannot close {self.path}: {exc}") from exc


class StagedFileSink(OutputSink):
    """Writes to a temp file next to the destination and renames it on success."""

    def __init__(self, path: Path, *, buffered: bool, prefix: str) -> None:
        try:
            fd, temp_path = _create_staging_file(path.parent, prefix)
        except OSError as exc:
            raise SinkOpenError(f"cannot create temp file for {path}: {exc}") from exc
        super().__init__(os.fdopen(fd, "wb"), buffered=buffered)
        self.path = path
        self.temp_path = temp_path
        self.name = str(path)

    def _finish(self, success: bool) -> None:
        if not success:
            self._discard()
            return
        try:
            self._handle.flush()
            os.fsync(self._handle.fileno())
            self._handle.close()
            os.replace(self.temp_path, self.path)
        except OSError as exc:
            self._discard()
            raise SinkWriteError(f"cannot commit {self.path}: {exc}") from exc
        logger.debug("sink.commit path={} bytes={}", self.path, self.bytes_written)

    def _discard(self) -> None:
        try:
            self._handle.close()
        except OSError:
            logger.opt(exception=True).warning("sink.discard.close_failed path={}", self.temp_path)
        self.temp_path.unlink(missing_ok=True)
        logger.debug("sink.discard path={} temp={}", self.path, self.temp_path)


def _create_staging_file(directory: Path, prefix: str) -> tuple[int, Path]:
    """Create ``<prefix><random>`` exclusively in ``directory``.

    The file is opened with mode 0o666 so the kernel applies the umask,
    giving the committed file the same mode a plain ``open`` would.
    """
    for _ in range(STAGING_ATTEMPTS):
        candidate = directory / f"{prefix}{secrets.token_hex(6)}"
        try:
            fd = os.open(candidate, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o666)
        except FileExistsError:
            continue
        return fd, candidate
    raise FileExistsError(f"no free staging name in {directory}")


def open_sink(output: str, *, buffered: bool = False, temp: bool = False, prefix: str = "rlexec-") -> OutputSink:
    """Open the output destination.

    Args:
        output: Destination path; empty or ``-`` selects standard output.
        buffered: Batch writes instead of flushing after each one.
        temp: Stage output in a temp file and commit it atomically on success.
        prefix: Name prefix for the staging file.
    """
    if output in STDOUT_NAMES:
        if temp:
            logger.warning("sink.temp.ignored reason=stdout")
        return StdoutSink(buffered=buffered)
    path = Path(output).expanduser()
    if temp:
        return StagedFileSink(path, buffered=buffered, prefix=prefix)
    return FileSink(path, buffered=buffered)
