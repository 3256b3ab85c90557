"""Child process lifecycle: spawn, feed stdin, drain stdout, wait."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Sequence
from types import TracebackType
from typing import Self

from loguru import logger

from rlexec.errors import ForwardError, SinkWriteError, SpawnError
from rlexec.sink import OutputSink
from rlexec.types import Aborted, ExitOutcome, outcome_from_returncode

CHUNK_SIZE = 64 * 1024
ENCODING = "utf-8"
DEFAULT_TERMINATE_TIMEOUT_SECONDS = 5.0


class ProcessRunner:
    """One child process whose stdin is fed line by line.

    The child's stdout is copied into ``sink`` by a drain task for as long as
    the child runs; its stderr stays attached to ours. Use it as an async
    context manager: leaving the block terminates a child that is still
    running, including when the surrounding task is cancelled.
    """

    def __init__(
        self,
        name: str,
        args: Sequence[str] = (),
        *,
        sink: OutputSink,
        terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT_SECONDS,
    ) -> None:
        self.name = name
        self.args = list(args)
        self.sink = sink
        self.terminate_timeout = terminate_timeout
        self._process: asyncio.subprocess.Process | None = None
        self._exit: asyncio.Future[int] | None = None
        self._drain: asyncio.Task[None] | None = None
        self._drain_error: SinkWriteError | None = None
        self._input_closed = False

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process is not None else None

    @property
    def exited(self) -> bool:
        return self._exit is not None and self._exit.done()

    @property
    def exit_waiter(self) -> asyncio.Future[int]:
        """Future that resolves with the return code when the child exits."""
        if self._exit is None:
            raise RuntimeError("process is not started")
        return self._exit

    async def start(self) -> None:
        if self._process is not None:
            raise RuntimeError("process is already started")
        logger.debug("process.start command={} args={}", self.name, self.args)
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.name,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=None,
            )
        except (OSError, ValueError) as exc:
            raise SpawnError(f"cannot start {self.name}: {exc}") from exc
        self._exit = asyncio.ensure_future(self._process.wait())
        self._drain = asyncio.create_task(self._drain_stdout(), name=f"rlexec-drain-{self._process.pid}")
        logger.info("process.started pid={} command={}", self._process.pid, self.name)

    async def feed(self, line: str) -> None:
        """Write one line plus newline to the child's stdin."""
        process = self._require_process()
        if self._input_closed or process.stdin is None:
            raise ForwardError(f"stdin of {self.name} is closed")
        try:
            process.stdin.write((line + "\n").encode(ENCODING, errors="surrogateescape"))
            await process.stdin.drain()
        except OSError as exc:
            raise ForwardError(f"cannot write to {self.name}: {exc}") from exc

    def close_input(self) -> None:
        process = self._require_process()
        if self._input_closed:
            return
        self._input_closed = True
        if process.stdin is not None:
            process.stdin.close()

    async def wait(self) -> ExitOutcome:
        """Close stdin, wait for exit and for all stdout to reach the sink."""
        self._require_process()
        self.close_input()
        returncode = await self.exit_waiter
        if self._drain is not None:
            await self._drain
        if self._drain_error is not None:
            return Aborted(str(self._drain_error))
        outcome = outcome_from_returncode(returncode)
        logger.info("process.exit pid={} returncode={} outcome={}", self.pid, returncode, outcome)
        return outcome

    async def aclose(self) -> None:
        """Terminate the child if it is still running and stop the drain."""
        process = self._process
        if process is None:
            return
        if process.returncode is None:
            await self._terminate(process)
        pending = [task for task in (self._exit, self._drain) if task is not None and not task.done()]
        if self._drain is not None and not self._drain.done():
            self._drain.cancel()
        if pending:
            await asyncio.wait(pending)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        logger.info("process.terminate pid={}", process.pid)
        if not self._input_closed:
            self.close_input()
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_timeout)
        except TimeoutError:
            logger.warning("process.kill pid={} reason=terminate_timeout", process.pid)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()

    async def _drain_stdout(self) -> None:
        process = self._require_process()
        if process.stdout is None:
            return
        while chunk := await process.stdout.read(CHUNK_SIZE):
            try:
                self.sink.write(chunk)
            except SinkWriteError as exc:
                self._drain_error = exc
                logger.error("process.drain.error pid={} error={}", process.pid, exc)
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                return

    def _require_process(self) -> asyncio.subprocess.Process:
        if self._process is None:
            raise RuntimeError("process is not started")
        return self._process

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()
