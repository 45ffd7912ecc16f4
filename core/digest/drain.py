"""
core/digest/drain.py — Drain loop: IngestQueue → DigestStore.

One pass (run_once):
    1. items := queue.drain_all()
    2. group items per recipient, arrival order kept
    3. per recipient: create the record if missing, else edit it; append every
       message to the bucket of period_of(now); commit
    4. lock contention (InUse / lost create race / record vanished) or a
       persistence failure → the recipient's items go to the retry list
    5. retry list goes back to the FRONT of the queue; items past
       DIGEST_MAX_ATTEMPTS are dead-lettered instead

A committed item is never lost. Items only live in memory until their commit.

Logging marker: [DigestDrain]
"""
from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from core.digest.errors import (
    DigestExistsError,
    DigestInUseError,
    DigestNotFoundError,
    DigestPersistenceError,
)
from core.digest.ingest_queue import IngestQueue, QueuedMessage
from core.digest.models import DigestMessage
from core.digest.periods import SystemClock, period_of
from utils.logger import log_info, log_warn

RETRYABLE_ERRORS = (DigestInUseError, DigestExistsError, DigestNotFoundError)


def _max_attempts() -> int:
    try:
        from config import get_digest_max_attempts
        return get_digest_max_attempts()
    except Exception:
        return 600


class DigestDrainer:
    """
    Folds queued messages into the current-period bucket of each recipient.

    Args:
        store:        DigestStore
        queue:        IngestQueue
        clock:        object with now() -> datetime
        max_attempts: failed drain attempts before dead-lettering (0 = unbounded);
                      default from DIGEST_MAX_ATTEMPTS.
    """

    def __init__(self, store, queue: IngestQueue, clock=None, max_attempts: Optional[int] = None) -> None:
        self._store = store
        self._queue = queue
        self._clock = clock if clock is not None else SystemClock()
        self._max_attempts = _max_attempts() if max_attempts is None else max(0, int(max_attempts))

    def run_once(self) -> dict:
        items = self._queue.drain_all()
        summary = {
            "drained":       len(items),
            "appended":      0,
            "recipients":    0,
            "retried":       0,
            "dead_lettered": 0,
            "period":        None,
        }
        if not items:
            return summary

        period = period_of(self._clock.now())
        summary["period"] = period

        failed: List[QueuedMessage] = []
        for recipient_id, group in self._group(items).items():
            try:
                self.append(recipient_id, [i.message for i in group], period)
                summary["appended"] += len(group)
                summary["recipients"] += 1
            except RETRYABLE_ERRORS as exc:
                self._mark_failed(group, f"{type(exc).__name__}")
                failed.extend(group)
            except DigestPersistenceError as exc:
                log_warn(f"[DigestDrain] recipient={recipient_id} persistence error: {exc}")
                self._mark_failed(group, str(exc))
                failed.extend(group)
            except Exception as exc:
                log_warn(f"[DigestDrain] recipient={recipient_id} unexpected error: {exc}")
                self._mark_failed(group, str(exc))
                failed.extend(group)

        retry, dead = self._split_exhausted(failed)
        self._queue.requeue(retry)
        self._queue.dead_letter(dead)
        summary["retried"] = len(retry)
        summary["dead_lettered"] = len(dead)

        log_info(
            f"[DigestDrain] period={period} drained={summary['drained']} "
            f"appended={summary['appended']} recipients={summary['recipients']} "
            f"retried={summary['retried']} dead_lettered={summary['dead_lettered']}"
        )
        return summary

    # ── Internals ─────────────────────────────────────────────────────────

    @staticmethod
    def _group(items: List[QueuedMessage]) -> Dict[str, List[QueuedMessage]]:
        groups: Dict[str, List[QueuedMessage]] = {}
        for item in items:
            groups.setdefault(item.recipient_id, []).append(item)
        return groups

    def append(self, recipient_id: str, messages: List[DigestMessage], period: Optional[str] = None) -> str:
        """
        File `messages` into one bucket of the recipient's record under a single
        edit, creating the record if missing. Returns the period key used.
        Raises the store's contention errors (see RETRYABLE_ERRORS) and persistence errors.
        """
        if period is None:
            period = period_of(self._clock.now())
        if self._store.exists(recipient_id):
            edit = self._store.edit(recipient_id)
        else:
            edit = self._store.create(recipient_id)
        with edit:
            for message in messages:
                edit.add(message, period)
            self._store.commit(edit)
        return period

    @staticmethod
    def _mark_failed(group: List[QueuedMessage], error: str) -> None:
        for item in group:
            item.attempts += 1
            item.last_error = error

    def _split_exhausted(self, failed: List[QueuedMessage]) -> Tuple[List[QueuedMessage], List[QueuedMessage]]:
        if self._max_attempts <= 0:
            return failed, []
        retry = [i for i in failed if i.attempts < self._max_attempts]
        dead = [i for i in failed if i.attempts >= self._max_attempts]
        return retry, dead
