"""
LogMill Error Taxonomy

Every fatal condition raised by the daemon derives from LogMillError so the
entry point can log it and exit non-zero. Recoverable conditions (an HTTP
method mismatch, a single program failing to compile) never raise past the
component that detects them.
"""

from __future__ import annotations


class LogMillError(Exception):
    """Base class for fatal daemon errors."""


class ConfigError(LogMillError):
    """A required path or directory is missing from the configuration."""


class CollaboratorError(LogMillError):
    """The tailer or the program loader could not be constructed."""


class OneShotError(LogMillError):
    """Reading a one-shot input file failed. The batch is aborted."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{message} {path!r}")
        self.path = path


class SerializationError(LogMillError):
    """The final metrics snapshot could not be serialized."""


class ConduitClosedError(LogMillError):
    """
    The line conduit was closed twice, or written after close.

    This is a design fault, not an I/O condition: only the shutdown sequence
    closes the conduit and it does so exactly once.
    """


class ServeError(LogMillError):
    """The HTTP listener stopped before shutdown was requested."""
