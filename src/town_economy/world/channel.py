"""In-process notification channel between economy services and their consumers."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


@dataclass(frozen=True)
class ChannelMessage:
    kind: str
    payload: dict[str, Any]
    sequence: int
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "sequence": self.sequence, "timestamp": self.timestamp, **self.payload}


class EventChannel:
    """Bounded FIFO; the oldest messages drop first when full."""

    def __init__(self, maxlen: int = 1000) -> None:
        self._messages: deque[ChannelMessage] = deque(maxlen=max(1, maxlen))
        self._lock = threading.Lock()
        self._sequence = 0
        self.dropped = 0

    def publish(self, kind: str, payload: dict[str, Any]) -> ChannelMessage:
        with self._lock:
            self._sequence += 1
            if len(self._messages) == self._messages.maxlen:
                self.dropped += 1
            message = ChannelMessage(kind=kind, payload=dict(payload), sequence=self._sequence)
            self._messages.append(message)
            return message

    def drain(self, limit: int | None = None) -> list[ChannelMessage]:
        with self._lock:
            count = len(self._messages) if limit is None else max(0, min(limit, len(self._messages)))
            return [self._messages.popleft() for _ in range(count)]

    def __len__(self) -> int:
        return len(self._messages)
