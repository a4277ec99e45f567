"""Diagnostic sinks for malformed-input events.

Components that tolerate bad data (tree building, clock skew correction,
dependency linking) report what they did through a sink rather than a global
logger, so tests can assert on the exact events.
"""

from __future__ import annotations

import warnings
from enum import Enum
from typing import Callable


class Level(Enum):
    FINE = "FINE"
    INFO = "INFO"
    WARNING = "WARNING"


DiagnosticSink = Callable[[Level, str], None]


def warn_sink(level: Level, message: str) -> None:
    """Default sink: forward the event to ``warnings.warn``."""
    warnings.warn(f"{level.value}: {message}", stacklevel=3)


def null_sink(level: Level, message: str) -> None:
    pass


class CollectingSink:
    """Records ``(level, message)`` events in the order they were reported."""

    def __init__(self) -> None:
        self.events: list[tuple[Level, str]] = []

    def __call__(self, level: Level, message: str) -> None:
        self.events.append((level, message))

    @property
    def messages(self) -> list[str]:
        return [message for _, message in self.events]

    def clear(self) -> None:
        self.events.clear()
