"""Application-level exception types for rlexec."""

from __future__ import annotations


class RlexecError(Exception):
    """Base exception for rlexec."""


class SetupError(RlexecError):
    """Base exception for failures before the first line is processed."""


class ConfigurationError(SetupError):
    """Raised when configuration cannot be loaded or is invalid."""


class SinkOpenError(SetupError):
    """Raised when the output destination cannot be opened."""


class SpawnError(SetupError):
    """Raised when the child command cannot be resolved or started."""


class LineReaderError(SetupError):
    """Raised when the interactive line reader cannot be initialised."""


class ForwardError(RlexecError):
    """Raised when a line cannot be written to the child's stdin."""


class SinkWriteError(RlexecError):
    """Raised when captured bytes cannot be written to the output sink."""


class HistoryError(RlexecError):
    """Raised when a line cannot be appended to the history file."""
