"""Message source abstraction consumed by store jobs.

The archiver does not implement a messaging bus client. Store jobs pull
messages through :class:`MessageSource` and acknowledge them only after the
chunk holding them is durably stored; redelivery of unacknowledged messages is
a property of the bus and is absorbed by checkpoints and content keys.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Protocol, Sequence

logger = logging.getLogger(__name__)


class SourceUnavailable(Exception):
    """Transient failure while talking to the message source."""


@dataclass(frozen=True)
class Message:
    """A single stream message as delivered by the bus."""

    subject: str
    sequence: int
    data: bytes


class MessageSource(Protocol):
    """Pull/ack interface of the messaging bus."""

    def fetch(self, subject: str, max_messages: int, timeout: float) -> List[Message]: ...

    def ack(self, messages: Sequence[Message]) -> None: ...


class InMemorySource:
    """Thread-safe in-memory stream with pull/ack semantics.

    Fetched messages stay pending until acknowledged. :meth:`redeliver`
    moves pending messages back to the front of the queue, which is what a bus
    does when an ack deadline passes or a consumer restarts.
    """

    def __init__(self) -> None:
        self._lock = threading.Condition()
        self._queues: Dict[str, List[Message]] = defaultdict(list)
        self._pending: Dict[str, Dict[int, Message]] = defaultdict(dict)
        self._next_sequence: Dict[str, int] = defaultdict(lambda: 1)
        self.acked: List[Message] = []

    def publish(self, subject: str, data: bytes) -> Message:
        with self._lock:
            message = Message(subject=subject, sequence=self._next_sequence[subject], data=data)
            self._next_sequence[subject] += 1
            self._queues[subject].append(message)
            self._lock.notify_all()
        return message

    def publish_many(self, subject: str, payloads: Iterable[bytes]) -> List[Message]:
        return [self.publish(subject, data) for data in payloads]

    def fetch(self, subject: str, max_messages: int, timeout: float) -> List[Message]:
        deadline = time.monotonic() + max(timeout, 0.0)
        with self._lock:
            while not self._queues[subject]:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return []
                self._lock.wait(remaining)
            queue = self._queues[subject]
            batch = queue[:max_messages]
            del queue[: len(batch)]
            for message in batch:
                self._pending[subject][message.sequence] = message
        return batch

    def ack(self, messages: Sequence[Message]) -> None:
        with self._lock:
            for message in messages:
                if self._pending[message.subject].pop(message.sequence, None) is not None:
                    self.acked.append(message)

    def redeliver(self, subject: str) -> int:
        """Requeue every unacknowledged message for ``subject`` in sequence order."""

        with self._lock:
            pending = sorted(self._pending[subject].values(), key=lambda m: m.sequence)
            self._pending[subject].clear()
            self._queues[subject][:0] = pending
            if pending:
                self._lock.notify_all()
        logger.debug("Redelivering messages subject=%s count=%d", subject, len(pending))
        return len(pending)

    def pending(self, subject: str) -> int:
        with self._lock:
            return len(self._pending[subject])
