"""Read results, exit outcomes and session states."""

from __future__ import annotations

import signal
from dataclasses import dataclass
from enum import StrEnum

ABORTED_EXIT_CODE = 1


@dataclass(frozen=True)
class Line:
    """One accepted line of input, terminator stripped."""

    text: str


@dataclass(frozen=True)
class EndOfInput:
    """The input stream is exhausted.

    ``error`` is set when a read failure was degraded into end of input.
    """

    error: BaseException | None = None


@dataclass(frozen=True)
class Interrupted:
    """The user interrupted the current read; the session keeps going."""


type ReadResult = Line | EndOfInput | Interrupted


@dataclass(frozen=True)
class Normal:
    """Child (or record session) finished with a numeric status."""

    code: int

    @property
    def exit_code(self) -> int:
        return self.code & 0xFF


@dataclass(frozen=True)
class Unknown:
    """Termination status that cannot be expressed as an exit code.

    Falls back to exit code 0. A child killed by a signal therefore looks
    successful to the invoking shell.
    """

    reason: str

    @property
    def exit_code(self) -> int:
        return 0


@dataclass(frozen=True)
class Aborted:
    """The session stopped on a fatal forwarding or output error."""

    reason: str

    @property
    def exit_code(self) -> int:
        return ABORTED_EXIT_CODE


type ExitOutcome = Normal | Unknown | Aborted


def outcome_from_returncode(returncode: int) -> ExitOutcome:
    """Decode an asyncio/subprocess return code."""
    if returncode >= 0:
        return Normal(returncode)
    try:
        name = signal.Signals(-returncode).name
    except ValueError:
        name = str(-returncode)
    return Unknown(f"terminated by signal {name}")


class SessionState(StrEnum):
    IDLE = "idle"
    READING = "reading"
    RELAYING = "relaying"
    FORWARDING = "forwarding"
    FINALIZING = "finalizing"
    DONE = "done"
