"""Outcome notification sink.

The engine reports what happened (draft created, saved, submitted, ...) to a
Notifier and knows nothing about how the messages are shown.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger("docvault_submit.notify")


class Notifier(ABC):
    """Abstract success/error sink. Implement to route outcomes to a UI."""

    @abstractmethod
    def success(self, message: str) -> None:
        ...

    @abstractmethod
    def error(self, message: str, exc: BaseException | None = None) -> None:
        ...


class LoggingNotifier(Notifier):
    """Default sink: writes outcomes to the docvault_submit.notify logger."""

    def success(self, message: str) -> None:
        logger.info(message)

    def error(self, message: str, exc: BaseException | None = None) -> None:
        if exc is not None:
            logger.error("%s: %s", message, exc)
        else:
            logger.error(message)


class RecordingNotifier(Notifier):
    """Keeps every message in memory (CLI summaries, tests)."""

    def __init__(self) -> None:
        self.successes: list[str] = []
        self.errors: list[str] = []

    def success(self, message: str) -> None:
        self.successes.append(message)

    def error(self, message: str, exc: BaseException | None = None) -> None:
        self.errors.append(f"{message}: {exc}" if exc is not None else message)
