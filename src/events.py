"""Provisioning progress events.

Provisioners report progress synchronously through an EventSink. The CLI
uses LoggingEventSink; any UI transport can implement the same protocol.
"""

import logging
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class EventSink(Protocol):
    """Receiver for step markers and streamed command output."""

    def on_step_started(self, owner, execution) -> None:
        ...

    def on_log_line(self, owner, execution, line: str) -> None:
        ...


class NullEventSink:
    """Discards all events."""

    def on_step_started(self, owner, execution) -> None:
        pass

    def on_log_line(self, owner, execution, line: str) -> None:
        pass


class LoggingEventSink:
    """Writes step labels at INFO and command output at DEBUG."""

    def on_step_started(self, owner, execution) -> None:
        logger.info(f"[{owner.ref}] {execution.label}")

    def on_log_line(self, owner, execution, line: str) -> None:
        logger.debug(f"[{owner.ref}]   {line}")


class RecordingEventSink:
    """Keeps every event in memory, in arrival order."""

    def __init__(self):
        self.steps: list[str] = []
        self.lines: list[str] = []

    def on_step_started(self, owner, execution) -> None:
        self.steps.append(execution.category)

    def on_log_line(self, owner, execution, line: str) -> None:
        self.lines.append(line)
