"""
core/digest/dispatcher.py — Dispatch loop: sends finished (non-current) buckets.

Per pass (run_once):
    1. current := period_of(now)
    2. new period since last pass → dispatching resumes for the day
    3. not dispatching → no-op
    4. for each record with a bucket of another period:
         candidates += 1
         edit (InUse / vanished / unreadable → skip until next pass)
         every non-current bucket: deliver if non-empty, then clear
         no buckets left → remove, else commit
         any error while holding the edit → cancel
    5. candidates == 0 → stop dispatching until the period changes

A record whose only bucket is the current period is never touched.
Delivery is one best-effort attempt: the bucket is cleared even if sending fails.

Logging markers:
    [DigestDispatch] period={period} status=skip|ok candidates=N sent=N removed=N
"""
from __future__ import annotations

from typing import Optional

from core.digest.delivery import DigestMailer
from core.digest.errors import DigestError
from core.digest.periods import SystemClock, period_bounds, period_of
from utils.logger import log_debug, log_info, log_warn


class DigestDispatcher:
    """
    Scans the store once per tick and mails completed daily buckets.

    Args:
        store:  DigestStore
        mailer: DigestMailer (sender + directory + rendering)
        clock:  object with now() -> datetime
    """

    def __init__(self, store, mailer: Optional[DigestMailer] = None, clock=None) -> None:
        self._store = store
        self._mailer = mailer if mailer is not None else DigestMailer()
        self._clock = clock if clock is not None else SystemClock()
        self.last_seen_period: Optional[str] = None
        self.still_dispatching_today = True

    @property
    def resumes_at(self) -> Optional[str]:
        """Start of the next period while idle (ISO), else None."""
        if self.still_dispatching_today or self.last_seen_period is None:
            return None
        return period_bounds(self.last_seen_period)[1].isoformat()

    def run_once(self) -> dict:
        current = period_of(self._clock.now())

        if current != self.last_seen_period:
            self.still_dispatching_today = True
            self.last_seen_period = current

        summary = {
            "period":     current,
            "scanned":    False,
            "candidates": 0,
            "skipped":    0,
            "sent":       0,
            "failed":     0,
            "cleared":    0,
            "removed":    0,
            "committed":  0,
        }

        if not self.still_dispatching_today:
            return summary

        log_debug(f"[DigestDispatch] period={current} checking for digests to send")
        summary["scanned"] = True

        for record in self._store.get_all():
            if not record.has_prior_periods(current):
                continue
            summary["candidates"] += 1
            self._dispatch_record(record.id, current, summary)

        if summary["candidates"] == 0:
            self.still_dispatching_today = False
            log_info(f"[DigestDispatch] period={current} status=idle — no candidates until next period")
        else:
            log_info(
                f"[DigestDispatch] period={current} status=ok candidates={summary['candidates']} "
                f"sent={summary['sent']} failed={summary['failed']} skipped={summary['skipped']} "
                f"removed={summary['removed']} committed={summary['committed']}"
            )
        return summary

    def _dispatch_record(self, digest_id: str, current: str, summary: dict) -> None:
        try:
            edit = self._store.edit(digest_id)
        except DigestError as exc:
            # in use, vanished or unreadable: next pass
            log_debug(f"[DigestDispatch] id={digest_id} status=skip reason={type(exc).__name__}")
            summary["skipped"] += 1
            return

        try:
            with edit:
                for period in edit.periods():
                    if period == current:
                        continue
                    msgs = edit.messages(period)
                    if msgs:
                        if self._mailer.deliver(digest_id, msgs, period):
                            summary["sent"] += 1
                        else:
                            summary["failed"] += 1
                    edit.clear(period)
                    summary["cleared"] += 1

                if not edit.periods():
                    self._store.remove(edit)
                    summary["removed"] += 1
                else:
                    self._store.commit(edit)
                    summary["committed"] += 1
        except Exception as exc:
            log_warn(f"[DigestDispatch] id={digest_id} status=error: {exc}")
            summary["skipped"] += 1
