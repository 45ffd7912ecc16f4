"""
core/digest/service.py — DigestService: the public face of the digest pipeline.

Wires IngestQueue, DigestStore, DigestDrainer, DigestDispatcher, DigestMailer
and DigestWorker together. Producers call submit() (queue only) or ingest()
(queue while this process runs the worker, else file straight into the
store); administrators may manipulate records directly through
create_or_edit/commit/cancel/remove.

Singleton access for the admin API and the sidecar:
    from core.digest.service import get_service
    svc = get_service()
"""
from __future__ import annotations

import threading
import time
from typing import List, Optional

from core.digest.delivery import BaseDirectory, BaseSender, DigestMailer
from core.digest.dispatcher import DigestDispatcher
from core.digest.drain import RETRYABLE_ERRORS, DigestDrainer
from core.digest.errors import DigestInUseError
from core.digest.events import DigestEventLogger
from core.digest.ingest_queue import IngestQueue, QueuedMessage
from core.digest.models import DigestMessage, DigestRecord
from core.digest.periods import SystemClock
from core.digest.store import DigestEdit, DigestStore
from core.digest.worker import DigestWorker
from utils.logger import log_info, log_warn


class DigestService:
    """
    Args:
        store:          DigestStore (default: backend from config)
        sender:         BaseSender (default LoggingSender)
        directory:      BaseDirectory (default StaticDirectory)
        clock:          object with now() -> datetime, shared by every component
        tick_s / dispatch_every / max_attempts: override config
        persist_state:  write cycle summaries to the runtime state file
    """

    def __init__(
        self,
        store: Optional[DigestStore] = None,
        sender: Optional[BaseSender] = None,
        directory: Optional[BaseDirectory] = None,
        clock=None,
        tick_s: Optional[float] = None,
        dispatch_every: Optional[int] = None,
        max_attempts: Optional[int] = None,
        persist_state: bool = True,
    ) -> None:
        self.clock = clock if clock is not None else SystemClock()
        self.events = DigestEventLogger()
        self.store = store if store is not None else DigestStore(clock=self.clock, events=self.events)
        self.queue = IngestQueue()
        self.mailer = DigestMailer(sender=sender, directory=directory, events=self.events)
        self.drainer = DigestDrainer(self.store, self.queue, clock=self.clock, max_attempts=max_attempts)
        self.dispatcher = DigestDispatcher(self.store, self.mailer, clock=self.clock)
        self.worker = DigestWorker(
            self.drainer,
            self.dispatcher,
            tick_s=tick_s,
            dispatch_every=dispatch_every,
            persist_state=persist_state,
        )

    # ── Producers ─────────────────────────────────────────────────────────

    def submit(self, recipient_id: str, subject: str, body: str) -> QueuedMessage:
        """Queue a message for the recipient's digest. Never blocks on record locks."""
        if not recipient_id:
            raise ValueError("recipient_id must not be empty")
        return self.queue.enqueue(recipient_id, subject, body)

    def ingest(self, recipient_id: str, subject: str, body: str) -> dict:
        """
        Accept a message wherever it will actually be filed.

        With this process's worker running the message is queued for the drain
        loop. Otherwise (sidecar mode, or an inline worker that failed to
        start) nothing here would drain the queue, so the message is filed
        into the store directly and the sidecar dispatches it from there.

        Returns {"queued": True, "recipient_id", "enqueued_at"} or
                {"queued": False, "recipient_id", "period"}.
        """
        if self.worker.is_running():
            item = self.submit(recipient_id, subject, body)
            return {
                "queued":       True,
                "recipient_id": item.recipient_id,
                "enqueued_at":  item.enqueued_at.isoformat(),
            }
        period = self.file_now(recipient_id, subject, body)
        return {"queued": False, "recipient_id": recipient_id, "period": period}

    def file_now(
        self,
        recipient_id: str,
        subject: str,
        body: str,
        attempts: int = 5,
        backoff_s: float = 0.05,
    ) -> str:
        """
        Append one message to the recipient's current bucket, bypassing the queue.
        Retries lock contention `attempts` times; raises DigestInUseError after that.
        Returns the period key.
        """
        if not recipient_id:
            raise ValueError("recipient_id must not be empty")
        message = DigestMessage(recipient_id, subject, body)
        for attempt in range(1, max(1, attempts) + 1):
            try:
                return self.drainer.append(recipient_id, [message])
            except RETRYABLE_ERRORS as exc:
                log_warn(
                    f"[DigestService] file_now recipient={recipient_id} "
                    f"attempt={attempt}/{attempts}: {type(exc).__name__}"
                )
                if attempt < attempts:
                    time.sleep(backoff_s * attempt)
        raise DigestInUseError(recipient_id)

    # ── Read ──────────────────────────────────────────────────────────────

    def get(self, digest_id: str) -> DigestRecord:
        return self.store.get(digest_id)

    def list_all(self) -> List[DigestRecord]:
        return self.store.get_all()

    # ── Administrative edits ──────────────────────────────────────────────

    def create_or_edit(self, digest_id: str) -> DigestEdit:
        return self.store.create_or_edit(digest_id)

    def commit(self, edit: DigestEdit) -> None:
        self.store.commit(edit)

    def cancel(self, edit: DigestEdit) -> None:
        self.store.cancel(edit)

    def remove(self, edit: DigestEdit) -> None:
        self.store.remove(edit)

    # ── Dead letters ──────────────────────────────────────────────────────

    def dead_letters(self) -> List[QueuedMessage]:
        return self.queue.dead_letters()

    def requeue_dead_letters(self) -> int:
        return self.queue.requeue_dead_letters()

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def start(self) -> bool:
        return self.worker.start()

    def stop(self, timeout: Optional[float] = 10.0) -> bool:
        stopped = self.worker.stop(timeout)
        pending = len(self.queue)
        if pending:
            log_warn(f"[DigestService] stopping with {pending} undrained message(s) — they are lost")
        return stopped

    def run_loop(self) -> None:
        self.worker.run_loop()

    def run_once(self) -> dict:
        """One drain + dispatch tick, synchronously."""
        return self.worker.run_once()

    def status(self) -> dict:
        locked = self.store.locked_ids()
        return {
            "queue_depth":       len(self.queue),
            "dead_letter_count": self.queue.dead_letter_count(),
            "locked_ids":        locked,
            "locks":             {i: self.store.lock_status(i) for i in locked},
            "worker":            self.worker.status(),
        }


# ── Singleton ─────────────────────────────────────────────────────────────────

_service: Optional[DigestService] = None
_service_lock = threading.Lock()


def get_service() -> DigestService:
    """Process-wide DigestService built from config."""
    global _service
    if _service is None:
        with _service_lock:
            if _service is None:
                _service = DigestService()
                log_info("[DigestService] initialized")
    return _service


def reset_service() -> None:
    """Drop the singleton (tests). Stops its worker first."""
    global _service
    with _service_lock:
        if _service is not None:
            _service.worker.stop(timeout=1.0)
        _service = None
