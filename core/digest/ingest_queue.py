"""
core/digest/ingest_queue.py — In-memory FIFO of messages waiting to be digested.

    enqueue()    append, safe under concurrent producers
    drain_all()  atomic swap-and-clear; items enqueued during a drain wait for the next one
    requeue()    put retried items back at the FRONT, keeping their order

Items that exhaust their drain attempts are parked in a dead-letter list
until an operator requeues them. Nothing here survives a process crash.

Logging marker: [DigestQueue]
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List

from core.digest.models import DigestMessage
from utils.logger import log_info, log_warn


@dataclass
class QueuedMessage:
    message: DigestMessage
    attempts: int = 0
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))
    last_error: str = ""

    @property
    def recipient_id(self) -> str:
        return self.message.recipient_id


class IngestQueue:
    """Unbounded, thread-safe FIFO."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: List[QueuedMessage] = []
        self._dead: List[QueuedMessage] = []

    def enqueue(self, recipient_id: str, subject: str, body: str) -> QueuedMessage:
        item = QueuedMessage(DigestMessage(recipient_id, subject, body))
        with self._lock:
            self._items.append(item)
        return item

    def drain_all(self) -> List[QueuedMessage]:
        with self._lock:
            items, self._items = self._items, []
        return items

    def requeue(self, items: List[QueuedMessage]) -> None:
        if not items:
            return
        with self._lock:
            self._items[0:0] = items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def size(self) -> int:
        return len(self)

    # ── Dead letters ──────────────────────────────────────────────────────

    def dead_letter(self, items: List[QueuedMessage]) -> None:
        if not items:
            return
        with self._lock:
            self._dead.extend(items)
        for item in items:
            log_warn(
                f"[DigestQueue] dead-letter recipient={item.recipient_id} "
                f"attempts={item.attempts} subject={item.message.subject[:60]!r} "
                f"error={item.last_error}"
            )

    def dead_letters(self) -> List[QueuedMessage]:
        with self._lock:
            return list(self._dead)

    def dead_letter_count(self) -> int:
        with self._lock:
            return len(self._dead)

    def requeue_dead_letters(self) -> int:
        """Move every dead letter back to the end of the queue with a fresh attempt count."""
        with self._lock:
            dead, self._dead = self._dead, []
            for item in dead:
                item.attempts = 0
                item.last_error = ""
            self._items.extend(dead)
        if dead:
            log_info(f"[DigestQueue] requeued dead letters count={len(dead)}")
        return len(dead)
