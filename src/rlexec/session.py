"""Session controller: read lines, relay them, finalize the output."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence

from loguru import logger

from rlexec.config import Settings
from rlexec.errors import ForwardError, SinkWriteError
from rlexec.history import HistoryStore
from rlexec.line_source import LineSource, open_line_source
from rlexec.process import ProcessRunner
from rlexec.sink import OutputSink, open_sink
from rlexec.types import (
    Aborted,
    EndOfInput,
    ExitOutcome,
    Interrupted,
    Line,
    Normal,
    ReadResult,
    SessionState,
)

type SourceFactory = Callable[[Settings, HistoryStore], LineSource]


def default_source_factory(settings: Settings, history: HistoryStore) -> LineSource:
    return open_line_source(history, prompt=settings.prompt, history_limit=settings.history_limit)


class Session:
    """One pass over the line source.

    Record mode (no command) writes every line to the output sink. Execute
    mode feeds every line to the child's stdin while the child's stdout
    drains into the sink. The sink is finalized on every exit path: it is
    committed only when the session ends without a fatal error.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        output: str,
        command: Sequence[str] | None = None,
        source_factory: SourceFactory | None = None,
        prefix: str = "rlexec-",
    ) -> None:
        self.settings = settings
        self.output = output
        self.command = list(command) if command else None
        self.prefix = prefix
        self._source_factory = source_factory or default_source_factory
        self.state = SessionState.IDLE
        self.lines_forwarded = 0
        self.source: LineSource | None = None

    @property
    def mode(self) -> str:
        return "execute" if self.command else "record"

    def interrupt(self) -> None:
        """Interrupt the pending read; the session resumes waiting for input."""
        logger.info("session.interrupt state={}", self.state)
        if self.source is not None:
            self.source.interrupt()

    async def run(self) -> ExitOutcome:
        """Run the session and return its exit outcome.

        Raises:
            SetupError: the sink, the line reader or the child could not be set up.
        """
        logger.info("session.start mode={} output={}", self.mode, self.output or "<stdout>")
        sink = open_sink(self.output, buffered=self.settings.buffered, temp=self.settings.temp, prefix=self.prefix)
        outcome: ExitOutcome | None = None
        try:
            source = self.source = self._source_factory(self.settings, HistoryStore(self.settings.history))
            if self.command:
                outcome = await self._forward(self.command, source, sink)
            else:
                outcome = await self._relay(source, sink)
        finally:
            outcome = self._finalize(sink, outcome)
        logger.info("session.done mode={} lines={} outcome={}", self.mode, self.lines_forwarded, outcome)
        return outcome

    async def _relay(self, source: LineSource, sink: OutputSink) -> ExitOutcome:
        self.state = SessionState.READING
        while True:
            result = await source.read()
            if isinstance(result, Interrupted):
                continue
            if isinstance(result, EndOfInput):
                return Normal(0)
            self.state = SessionState.RELAYING
            try:
                sink.write((result.text + "\n").encode("utf-8", errors="surrogateescape"))
            except SinkWriteError as exc:
                logger.error("session.relay.error output={} error={}", sink.name, exc)
                return Aborted(str(exc))
            self.lines_forwarded += 1
            source.remember(result.text)
            self.state = SessionState.READING

    async def _forward(self, command: Sequence[str], source: LineSource, sink: OutputSink) -> ExitOutcome:
        name, *args = command
        async with ProcessRunner(name, args, sink=sink) as process:
            self.state = SessionState.READING
            while True:
                result = await self._read_until_exit(source, process)
                if result is None:
                    logger.info("session.child_exited_first pid={}", process.pid)
                    break
                if isinstance(result, Interrupted):
                    continue
                if isinstance(result, EndOfInput):
                    break
                self.state = SessionState.FORWARDING
                try:
                    await process.feed(result.text)
                except ForwardError as exc:
                    logger.error("session.forward.error pid={} error={}", process.pid, exc)
                    return Aborted(str(exc))
                self.lines_forwarded += 1
                source.remember(result.text)
                self.state = SessionState.READING
            process.close_input()
            return await process.wait()

    @staticmethod
    async def _read_until_exit(source: LineSource, process: ProcessRunner) -> ReadResult | None:
        """Read the next line unless the child exits first; ``None`` means it did."""
        if process.exited:
            return None
        read_task = asyncio.ensure_future(source.read())
        try:
            await asyncio.wait({read_task, process.exit_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not read_task.done():
                read_task.cancel()
                await asyncio.wait({read_task})
        if read_task.cancelled():
            return None
        result = read_task.result()
        if isinstance(result, Line) and process.exited:
            logger.debug("session.line_dropped reason=child_exited")
            return None
        return result

    def _finalize(self, sink: OutputSink, outcome: ExitOutcome | None) -> ExitOutcome:
        self.state = SessionState.FINALIZING
        success = outcome is not None and not isinstance(outcome, Aborted)
        try:
            sink.finalize(success=success)
        except SinkWriteError as exc:
            logger.error("session.finalize.error output={} error={}", sink.name, exc)
            outcome = Aborted(str(exc))
        finally:
            self.state = SessionState.DONE
        return outcome if outcome is not None else Aborted("session did not complete")
