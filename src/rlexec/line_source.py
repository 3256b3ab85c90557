"""Interactive line sources."""

from __future__ import annotations

import asyncio
import sys
import threading
from abc import ABC, abstractmethod
from typing import BinaryIO, TextIO

from loguru import logger
from prompt_toolkit import PromptSession
from prompt_toolkit.history import InMemoryHistory
from prompt_toolkit.input import Input
from prompt_toolkit.output import Output

from rlexec.errors import HistoryError, LineReaderError
from rlexec.history import HistoryStore
from rlexec.types import EndOfInput, Interrupted, Line, ReadResult

ENCODING = "utf-8"

type _StreamItem = str | Interrupted | BaseException | None


class LineSource(ABC):
    """Yields one line at a time and owns the history store."""

    name: str = "base"

    def __init__(self, history: HistoryStore) -> None:
        self.history = history

    @abstractmethod
    async def read(self) -> ReadResult:
        """Wait for the next line, end of input or an interrupt."""

    def interrupt(self) -> None:
        """Make a pending ``read()`` return ``Interrupted``. Called from the event loop."""

    def remember(self, line: str) -> None:
        """Persist an accepted line. Failures are logged, never raised."""
        try:
            self.history.append(line)
        except HistoryError as exc:
            logger.warning("history.append.error source={} error={}", self.name, exc)


class PromptLineSource(LineSource):
    """Terminal line editor backed by prompt_toolkit."""

    name = "prompt"

    def __init__(
        self,
        history: HistoryStore,
        *,
        prompt: str,
        history_limit: int = 500,
        input: Input | None = None,
        output: Output | None = None,
    ) -> None:
        super().__init__(history)
        self.prompt = prompt
        try:
            self.session: PromptSession[str] = PromptSession(
                history=InMemoryHistory(history.load(history_limit)),
                input=input,
                output=output,
            )
        except Exception as exc:
            raise LineReaderError(f"cannot initialise line reader: {exc}") from exc

    async def read(self) -> ReadResult:
        try:
            text = await self.session.prompt_async(self.prompt)
        except KeyboardInterrupt:
            return Interrupted()
        except EOFError:
            return EndOfInput()
        except Exception as exc:
            logger.info("line_source.read.error source={} error={!r}", self.name, exc)
            return EndOfInput(error=exc)
        return Line(text)

    def interrupt(self) -> None:
        app = self.session.app
        if app.is_running and not app.is_done:
            app.exit(exception=KeyboardInterrupt())


class StreamLineSource(LineSource):
    """Reads newline-delimited lines from a non-terminal stream.

    A daemon thread does the blocking reads so a pending ``read()`` can be
    cancelled without leaving the event loop waiting on stdin. Lines are read
    as bytes and decoded with ``surrogateescape``, so undecodable input still
    reaches the output byte for byte.
    """

    name = "stream"

    def __init__(self, history: HistoryStore, stream: TextIO | BinaryIO | None = None) -> None:
        super().__init__(history)
        self._stream = stream
        self._queue: asyncio.Queue[_StreamItem] | None = None
        self._exhausted = False

    async def read(self) -> ReadResult:
        if self._exhausted:
            return EndOfInput()
        queue = self._ensure_queue()
        item = await queue.get()
        if isinstance(item, str):
            return Line(item)
        if isinstance(item, Interrupted):
            return item
        self._exhausted = True
        if item is None:
            return EndOfInput()
        logger.info("line_source.read.error source={} error={!r}", self.name, item)
        return EndOfInput(error=item)

    def interrupt(self) -> None:
        if self._exhausted:
            return
        self._ensure_queue().put_nowait(Interrupted())

    def _ensure_queue(self) -> asyncio.Queue[_StreamItem]:
        if self._queue is None:
            self._queue = asyncio.Queue()
            self._start_reader(asyncio.get_running_loop(), self._queue)
        return self._queue

    def _start_reader(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue[_StreamItem]) -> None:
        stream = self._stream if self._stream is not None else sys.stdin
        thread = threading.Thread(
            target=_pump_lines,
            args=(stream, loop, queue),
            name=f"rlexec-{self.name}-reader",
            daemon=True,
        )
        thread.start()


def _pump_lines(stream: TextIO | BinaryIO, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue[_StreamItem]) -> None:
    final: _StreamItem = None
    # Prefer the raw bytes underneath a text stream.
    source = getattr(stream, "buffer", stream)
    try:
        for raw in source:
            text = raw.decode(ENCODING, errors="surrogateescape") if isinstance(raw, bytes) else raw
            if not _post(loop, queue, text.removesuffix("\n").removesuffix("\r")):
                return
    except Exception as exc:
        final = exc
    _post(loop, queue, final)


def _post(loop: asyncio.AbstractEventLoop, queue: asyncio.Queue[_StreamItem], item: _StreamItem) -> bool:
    try:
        loop.call_soon_threadsafe(queue.put_nowait, item)
    except RuntimeError:
        # The loop is gone; nobody is waiting for more input.
        return False
    return True


def open_line_source(
    history: HistoryStore,
    *,
    prompt: str,
    history_limit: int = 500,
    stdin: TextIO | None = None,
) -> LineSource:
    """Pick the terminal editor for a TTY and the stream reader otherwise."""
    stream = stdin if stdin is not None else sys.stdin
    try:
        interactive = stream.isatty()
    except (AttributeError, ValueError):
        interactive = False
    if interactive:
        return PromptLineSource(history, prompt=prompt, history_limit=history_limit)
    return StreamLineSource(history, stream)
