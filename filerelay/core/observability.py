"""
Observability hooks for the ingestion pipeline.

Components receive an ``Observer`` through their constructor. The base class
is the no-op implementation, so callers never need to check for a missing
observer.
"""

import logging
from typing import Any

logger = logging.getLogger(__name__)


class Observer:
    """No-op observer. Subclass and override what you need."""

    def increment(self, name: str, value: int = 1, **tags: Any) -> None:
        pass

    def timing(self, name: str, millis: float, **tags: Any) -> None:
        pass

    def event(self, name: str, level: int = logging.INFO, **fields: Any) -> None:
        pass


class LoggingObserver(Observer):
    """Forwards metrics and events to the standard logger."""

    def __init__(self, log: logging.Logger = logger):
        self.log = log

    def increment(self, name: str, value: int = 1, **tags: Any) -> None:
        self.log.debug(f"[METRIC] {name} +{value} {tags}")

    def timing(self, name: str, millis: float, **tags: Any) -> None:
        self.log.debug(f"[METRIC] {name} {millis:.1f}ms {tags}")

    def event(self, name: str, level: int = logging.INFO, **fields: Any) -> None:
        self.log.log(level, f"[EVENT] {name} {fields}")


NULL_OBSERVER = Observer()
