"""Notification primitives for KidSpend."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Mapping, Protocol, Sequence


class NotificationEvent(str, Enum):
    REQUEST_CREATED = "request_created"
    REQUEST_APPROVED = "request_approved"
    REQUEST_REJECTED = "request_rejected"
    REQUEST_EXPIRED = "request_expired"


_SUBJECTS: Dict[NotificationEvent, str] = {
    NotificationEvent.REQUEST_CREATED: "New spending request",
    NotificationEvent.REQUEST_APPROVED: "Spending request approved",
    NotificationEvent.REQUEST_REJECTED: "Spending request declined",
    NotificationEvent.REQUEST_EXPIRED: "Spending request expired",
}


class Notifier(Protocol):
    """Fire-and-forget delivery to a parent or child."""

    def send(self, recipient: str, event: NotificationEvent, payload: Mapping[str, str]) -> None:
        ...


@dataclass(slots=True)
class Notification:
    """Simple representation of a notification waiting to be delivered."""

    recipient: str
    event: NotificationEvent
    subject: str
    body: str
    metadata: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)

    def as_dict(self) -> Dict[str, str]:
        payload = {
            "recipient": self.recipient,
            "event": self.event.value,
            "subject": self.subject,
            "body": self.body,
            "created_at": self.created_at.isoformat(),
        }
        payload.update(self.metadata)
        return payload


class NotificationCenter:
    """In-memory notification inbox used for tests and integrations."""

    def __init__(self) -> None:
        self._queue: List[Notification] = []
        self._sent: List[Notification] = []
        self._lock = threading.Lock()

    def send(self, recipient: str, event: NotificationEvent, payload: Mapping[str, str]) -> None:
        metadata = {key: str(value) for key, value in payload.items()}
        self.queue(
            Notification(
                recipient=recipient,
                event=event,
                subject=_SUBJECTS[event],
                body=metadata.pop("message", ""),
                metadata=metadata,
            )
        )

    def queue(self, notification: Notification) -> None:
        with self._lock:
            self._queue.append(notification)

    def pending(
        self,
        *,
        event: NotificationEvent | None = None,
        recipient: str | None = None,
    ) -> Sequence[Notification]:
        items = self._queue
        if event is not None:
            items = [item for item in items if item.event is event]
        if recipient is not None:
            items = [item for item in items if item.recipient == recipient]
        return tuple(items)

    def pop_all(self) -> Sequence[Notification]:
        with self._lock:
            pending = tuple(self._queue)
            self._queue.clear()
            self._sent.extend(pending)
        return pending

    def pop_for(self, recipient: str) -> Sequence[Notification]:
        """Remove and return the queued notifications addressed to ``recipient``."""

        with self._lock:
            mine = tuple(item for item in self._queue if item.recipient == recipient)
            self._queue[:] = [item for item in self._queue if item.recipient != recipient]
            self._sent.extend(mine)
        return mine

    def history(self) -> Sequence[Notification]:
        return tuple(self._sent)


__all__ = [
    "Notification",
    "NotificationCenter",
    "NotificationEvent",
    "Notifier",
]
