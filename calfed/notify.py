# calfed/notify.py
"""
Notification sinks.

Components report state transitions (follow accepted, delivery failed,
...) to an injected sink, synchronously and in the order they happen.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class Notice:
    """
    A state transition worth telling the application about.

    Attributes:
        kind: What happened (e.g. "follow.accepted", "delivery.failed")
        subject_id: Relationship, activity or delivery concerned
        details: Extra context (no remote response bodies)
        at: When it happened
    """
    kind: str
    subject_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    at: float = field(default_factory=time.time)


class NotificationSink:
    """Receives notices. The base class discards them."""

    def notify(self, notice: Notice) -> None:
        pass


class LoggingNotificationSink(NotificationSink):
    """Writes every notice to the log."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def notify(self, notice: Notice) -> None:
        extra = ", ".join(f"{k}={v}" for k, v in notice.details.items())
        logger.log(self.level, f"{notice.kind} {notice.subject_id or ''} {extra}".rstrip())


class CollectingNotificationSink(NotificationSink):
    """Keeps notices in memory, in order."""

    def __init__(self):
        self.notices: List[Notice] = []

    def notify(self, notice: Notice) -> None:
        self.notices.append(notice)

    def kinds(self) -> List[str]:
        return [n.kind for n in self.notices]

    def clear(self):
        self.notices.clear()
