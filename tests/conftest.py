from __future__ import annotations

import asyncio
import contextlib
import os
import sys
from collections import deque
from collections.abc import Iterator, Sequence
from pathlib import Path

import pytest
from loguru import logger

from rlexec import logging_utils
from rlexec.config import Settings
from rlexec.history import HistoryStore
from rlexec.line_source import LineSource
from rlexec.types import EndOfInput, Line, ReadResult

type ScriptItem = str | ReadResult


class ScriptedLineSource(LineSource):
    """Replays a fixed script of reads, then ends (or blocks) forever."""

    name = "scripted"

    def __init__(self, history: HistoryStore, items: Sequence[ScriptItem], *, block_at_end: bool = False) -> None:
        super().__init__(history)
        self._items: deque[ScriptItem] = deque(items)
        self._block_at_end = block_at_end
        self.reads = 0
        self.interrupts = 0

    def interrupt(self) -> None:
        self.interrupts += 1

    async def read(self) -> ReadResult:
        self.reads += 1
        if self._items:
            item = self._items.popleft()
            return Line(item) if isinstance(item, str) else item
        if self._block_at_end:
            await asyncio.Event().wait()
        return EndOfInput()


class ScriptedSourceFactory:
    def __init__(self, items: Sequence[ScriptItem], *, block_at_end: bool = False) -> None:
        self.items = list(items)
        self.block_at_end = block_at_end
        self.source: ScriptedLineSource | None = None

    def __call__(self, settings: Settings, history: HistoryStore) -> ScriptedLineSource:
        self.source = ScriptedLineSource(history, self.items, block_at_end=self.block_at_end)
        return self.source


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    for key in list(os.environ):
        if key.startswith(("RLEXEC_", "RLTEE_")):
            monkeypatch.delenv(key)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(logging_utils, "_CONFIGURED_LEVEL", None)
    yield
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture
def scripted() -> type[ScriptedSourceFactory]:
    return ScriptedSourceFactory


@pytest.fixture
def log_messages() -> Iterator[list[str]]:
    messages: list[str] = []

    def _sink(message) -> None:
        record = message.record
        messages.append(f"{record['level'].name} {record['message']}")

    handler_id = logger.add(_sink, level="DEBUG", format="{message}")
    yield messages
    with contextlib.suppress(ValueError):
        logger.remove(handler_id)
